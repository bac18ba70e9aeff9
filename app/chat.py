"""
Chat message store and service.

MessageStore owns the durable message log of one room kind: append,
cursor-range reads, lookup, delete and a few aggregate queries. It never
commits; ChatService wraps each operation in schema provisioning, the
membership gate, a deadline and a single transaction, and translates
storage failures into the error taxonomy in app.errors.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from sqlalchemy import and_, delete, distinct, extract, func, or_, select
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import ForbiddenError, NotFoundError, ValidationError
from app.identity import DisplayMeta, IdentityResolver, display_meta
from app.models import MAX_CONTENT_LENGTH, User
from app.pagination import Cursor, Page, fetch_page, format_timestamp, to_utc
from app.rooms import MembershipGate, RoomKind
from app.storage import Deadline, ensure_schema, statement_deadline, translate_errors

logger = logging.getLogger(__name__)


@dataclass
class ChatMessage:
    """A message with its sender's current display metadata."""
    id: int
    room_id: int
    sender_id: int
    sender_name: str
    sender_avatar_url: Optional[str]
    content: str
    created_at: datetime
    edited_at: Optional[datetime] = None


@dataclass
class RoomSummary:
    room_id: int
    message_count: int
    last_activity: Optional[datetime]


def validate_content(content) -> str:
    """
    Boundary check for message content.

    Strips surrounding whitespace and enforces 1 <= len <= 4000.

    Raises:
        ValidationError: content is missing, blank or too long.
    """
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("Message content is required")
    content = content.strip()
    if len(content) > MAX_CONTENT_LENGTH:
        raise ValidationError(f"Message too long (max {MAX_CONTENT_LENGTH} characters)")
    return content


class MessageStore:
    """Append-only message log for one room kind."""

    def __init__(self, room: RoomKind, identity: Optional[IdentityResolver] = None):
        self.room = room
        self.model = room.message_model
        self.identity = identity or IdentityResolver()

    def _to_message(self, row, meta: DisplayMeta) -> ChatMessage:
        return ChatMessage(
            id=row.id,
            room_id=row.room_id,
            sender_id=row.sender_id,
            sender_name=meta.name,
            sender_avatar_url=meta.avatar_url,
            content=row.content,
            created_at=to_utc(row.created_at),
            edited_at=to_utc(row.edited_at) if row.edited_at else None,
        )

    def _select_with_sender(self):
        model = self.model
        return (
            select(model, User.name, User.profile_photo_url)
            .join(User, User.id == model.sender_id)
        )

    def append(self, db: Session, room_id: int, sender_id: int, content: str) -> ChatMessage:
        """
        Insert one message and return it fully materialized.

        The row is flushed, not committed. Content is re-validated here and
        again by the table's CHECK constraint.

        Raises:
            ValidationError: content out of bounds.
            NotFoundError: sender does not exist.
            sqlalchemy.exc.IntegrityError: foreign key violation, classified
                by the caller.
        """
        content = validate_content(content)
        message = self.model(
            room_id=room_id,
            sender_id=sender_id,
            content=content,
            created_at=datetime.now(timezone.utc),
        )
        db.add(message)
        db.flush()
        logger.debug(f"Appended {self.room.table_name} id={message.id} room={room_id} sender={sender_id}")

        meta = self.identity.get_display_meta(db, sender_id)
        if meta is None:
            raise NotFoundError("Sender not found")
        return self._to_message(message, meta)

    def range(
        self,
        db: Session,
        room_id: int,
        before: Optional[Cursor],
        limit: int,
    ) -> Tuple[List[ChatMessage], bool]:
        """
        Return up to ``limit`` messages strictly older than ``before``.

        Scans limit + 1 rows newest-first along the (room_id, created_at DESC)
        index, then reverses so the caller gets oldest-first order. The extra
        row is dropped and only reported through ``has_more``.
        """
        model = self.model
        stmt = self._select_with_sender().where(model.room_id == room_id)

        if before is not None:
            if before.message_id is None:
                stmt = stmt.where(model.created_at < before.created_at)
            else:
                stmt = stmt.where(
                    or_(
                        model.created_at < before.created_at,
                        and_(model.created_at == before.created_at, model.id < before.message_id),
                    )
                )

        stmt = stmt.order_by(model.created_at.desc(), model.id.desc()).limit(limit + 1)
        rows = db.execute(stmt).all()

        has_more = len(rows) > limit
        rows = rows[:limit]
        messages = [
            self._to_message(row[0], display_meta(row.name, row.profile_photo_url))
            for row in rows
        ]
        messages.reverse()
        return messages, has_more

    def get(self, db: Session, room_id: int, message_id: int) -> Optional[ChatMessage]:
        model = self.model
        row = db.execute(
            self._select_with_sender().where(model.room_id == room_id, model.id == message_id)
        ).first()
        if row is None:
            return None
        return self._to_message(row[0], display_meta(row.name, row.profile_photo_url))

    def delete(self, db: Session, room_id: int, message_id: int) -> bool:
        model = self.model
        result = db.execute(
            delete(model).where(model.room_id == room_id, model.id == message_id)
        )
        return result.rowcount > 0

    def count(self, db: Session, room_id: int) -> int:
        model = self.model
        return db.execute(
            select(func.count(model.id)).where(model.room_id == room_id)
        ).scalar() or 0

    def last_activity(self, db: Session, room_id: int) -> Optional[datetime]:
        model = self.model
        value = db.execute(
            select(func.max(model.created_at)).where(model.room_id == room_id)
        ).scalar()
        if value is None:
            return None
        if isinstance(value, str):
            # SQLite returns aggregates over DATETIME columns as raw strings
            value = datetime.fromisoformat(value)
        return to_utc(value)

    def stats(self, db: Session, since: datetime) -> dict:
        """
        Message analytics for this room kind since ``since``.

        Computes:
        - total_messages, active_rooms, senders_count
        - messages_per_room: top 10 rooms by message count (desc)
        - messages_per_sender: top 10 senders by message count (desc), with
          the number of rooms each was active in
        - peak_usage: messages per hour of day (UTC)
        - daily_activity: messages, unique senders and active rooms per day
        - first/last message timestamps (null if no messages)
        - avg_message_length
        """
        model = self.model
        room_model = self.room.room_model
        window = model.created_at >= since

        logger.info(f"Computing {self.room.name} chat statistics since {format_timestamp(since)}")

        totals = db.execute(
            select(
                func.count(model.id),
                func.count(distinct(model.room_id)),
                func.count(distinct(model.sender_id)),
                func.avg(func.length(model.content)),
            ).where(window)
        ).one()
        total_messages, active_rooms, senders_count, avg_length = totals
        logger.debug(f"Totals: messages={total_messages}, rooms={active_rooms}, senders={senders_count}")

        per_room = db.execute(
            select(
                model.room_id,
                room_model.name,
                func.count(model.id).label("count"),
                func.count(distinct(model.sender_id)).label("unique_senders"),
            )
            .join(room_model, room_model.id == model.room_id)
            .where(window)
            .group_by(model.room_id, room_model.name)
            .order_by(func.count(model.id).desc(), model.room_id.asc())
            .limit(10)
        ).all()

        per_sender = db.execute(
            select(
                model.sender_id,
                User.name,
                User.email,
                func.count(model.id).label("count"),
                func.count(distinct(model.room_id)).label("rooms_active"),
            )
            .join(User, User.id == model.sender_id)
            .where(window)
            .group_by(model.sender_id, User.name, User.email)
            .order_by(func.count(model.id).desc(), model.sender_id.asc())
            .limit(10)
        ).all()

        hour = extract("hour", model.created_at)
        peak_usage = db.execute(
            select(hour.label("hour"), func.count(model.id).label("count"))
            .where(window)
            .group_by(hour)
            .order_by(hour)
        ).all()

        day = func.date(model.created_at)
        daily_activity = db.execute(
            select(
                day.label("date"),
                func.count(model.id).label("message_count"),
                func.count(distinct(model.sender_id)).label("unique_users"),
                func.count(distinct(model.room_id)).label("active_rooms"),
            )
            .where(window)
            .group_by(day)
            .order_by(day)
        ).all()

        first_last = db.execute(
            select(func.min(model.created_at), func.max(model.created_at)).where(window)
        ).one()

        def _ts(value) -> Optional[str]:
            if value is None:
                return None
            if isinstance(value, str):
                value = datetime.fromisoformat(value)
            return format_timestamp(value)

        def _day(value) -> str:
            # SQLite returns DATE() as text, PostgreSQL as a date
            return value.isoformat() if hasattr(value, "isoformat") else str(value)

        return {
            "room_kind": self.room.name,
            "total_messages": total_messages or 0,
            "active_rooms": active_rooms or 0,
            "senders_count": senders_count or 0,
            "messages_per_room": [
                {
                    "room_id": row.room_id,
                    "name": row.name,
                    "count": row.count,
                    "unique_senders": row.unique_senders,
                }
                for row in per_room
            ],
            "messages_per_sender": [
                {
                    "sender_id": row.sender_id,
                    "name": row.name or "User",
                    "email": row.email,
                    "count": row.count,
                    "rooms_active": row.rooms_active,
                }
                for row in per_sender
            ],
            "peak_usage": [
                {"hour": int(row.hour), "count": row.count}
                for row in peak_usage
            ],
            "daily_activity": [
                {
                    "date": _day(row.date),
                    "message_count": row.message_count,
                    "unique_users": row.unique_users,
                    "active_rooms": row.active_rooms,
                }
                for row in daily_activity
            ],
            "first_message_ts": _ts(first_last[0]),
            "last_message_ts": _ts(first_last[1]),
            "avg_message_length": float(avg_length or 0),
        }


class ChatService:
    """
    Membership-gated chat operations for one room kind.

    Every call provisions the message table (a no-op once it exists),
    checks membership of the requesting user against the target room,
    and only then touches the store. Membership is never cached.
    """

    def __init__(
        self,
        room: RoomKind,
        gate: Optional[MembershipGate] = None,
        identity: Optional[IdentityResolver] = None,
        default_timeout: Optional[float] = None,
    ):
        self.room = room
        self.gate = gate or MembershipGate(room)
        self.identity = identity or IdentityResolver()
        self.store = MessageStore(room, self.identity)
        self.default_timeout = (
            default_timeout if default_timeout is not None else settings.CHAT_QUERY_TIMEOUT_SECONDS
        )

    def _deadline(self, timeout: Optional[float]) -> Deadline:
        return Deadline(timeout if timeout is not None else self.default_timeout)

    def ensure_schema(self, db: Session, deadline: Optional[Deadline] = None) -> None:
        ensure_schema(db.get_bind(), [self.room.message_table], deadline)

    def _authorize(self, db: Session, user_id: int, room_id: int, deadline: Deadline) -> None:
        deadline.check("membership check")
        if not self.gate.is_member(db, user_id, room_id):
            logger.warning(f"User {user_id} is not a member of {self.room.name} {room_id}")
            raise ForbiddenError(f"You are not a member of this {self.room.name}")

    def post_message(
        self,
        db: Session,
        room_id: int,
        sender_id: int,
        content: str,
        timeout: Optional[float] = None,
    ) -> ChatMessage:
        content = validate_content(content)
        deadline = self._deadline(timeout)
        self.ensure_schema(db, deadline)

        with translate_errors(db, f"post {self.room.name} message"):
            with statement_deadline(db, deadline):
                self._authorize(db, sender_id, room_id, deadline)
                deadline.check("append")
                message = self.store.append(db, room_id, sender_id, content)
            db.commit()

        logger.info(f"Message {message.id} posted to {self.room.name} {room_id} by user {sender_id}")
        return message

    def list_messages(
        self,
        db: Session,
        room_id: int,
        requester_id: int,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Page:
        deadline = self._deadline(timeout)
        self.ensure_schema(db, deadline)

        with translate_errors(db, f"list {self.room.name} messages"):
            with statement_deadline(db, deadline):
                self._authorize(db, requester_id, room_id, deadline)
                deadline.check("range")
                page = fetch_page(db, self.store, room_id, limit, cursor)
            db.rollback()

        logger.info(
            f"Served {len(page.messages)} {self.room.name} messages for room {room_id} (has_more={page.has_more})"
        )
        return page

    def delete_message(
        self,
        db: Session,
        room_id: int,
        message_id: int,
        requester_id: int,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Delete one message. Allowed for its sender (while still a member)
        and for administrators.
        """
        deadline = self._deadline(timeout)
        self.ensure_schema(db, deadline)

        with translate_errors(db, f"delete {self.room.name} message"):
            with statement_deadline(db, deadline):
                is_admin = self.identity.is_admin(db, requester_id)
                if not is_admin:
                    self._authorize(db, requester_id, room_id, deadline)

                deadline.check("lookup")
                message = self.store.get(db, room_id, message_id)
                if message is None:
                    raise NotFoundError("Message not found")
                if message.sender_id != requester_id and not is_admin:
                    logger.warning(f"User {requester_id} may not delete message {message_id}")
                    raise ForbiddenError("Only the sender or an administrator can delete this message")

                self.store.delete(db, room_id, message_id)
            db.commit()

        logger.info(f"Message {message_id} deleted from {self.room.name} {room_id} by user {requester_id}")

    def room_summary(
        self,
        db: Session,
        room_id: int,
        requester_id: int,
        timeout: Optional[float] = None,
    ) -> RoomSummary:
        """Message count and last activity of one room, for its members."""
        deadline = self._deadline(timeout)
        self.ensure_schema(db, deadline)

        with translate_errors(db, f"{self.room.name} room summary"):
            with statement_deadline(db, deadline):
                self._authorize(db, requester_id, room_id, deadline)
                deadline.check("summary")
                summary = RoomSummary(
                    room_id=room_id,
                    message_count=self.store.count(db, room_id),
                    last_activity=self.store.last_activity(db, room_id),
                )
            db.rollback()
        return summary

    def room_stats(self, db: Session, days: int = 30, timeout: Optional[float] = None) -> dict:
        deadline = self._deadline(timeout)
        self.ensure_schema(db, deadline)
        since = datetime.now(timezone.utc) - timedelta(days=days)

        with translate_errors(db, f"{self.room.name} chat stats"):
            with statement_deadline(db, deadline):
                stats = self.store.stats(db, since)
            db.rollback()
        return stats
