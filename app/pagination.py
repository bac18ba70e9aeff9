"""
Cursor pagination for chat history.

A cursor marks the position of the chronologically-oldest message of the
page that was served. The next page holds messages strictly older than that
position, compared on (created_at, id) so that tied timestamps never cause
gaps or duplicates and later inserts never shift an issued cursor.

Cursor strings are opaque to clients. The server format is
``<ISO-8601 UTC timestamp>|<message id>``; a bare timestamp or a bare message
id is also accepted. Anything unparseable means "no cursor".
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy.orm import Session

if TYPE_CHECKING:
    from app.chat import ChatMessage, MessageStore

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
MIN_LIMIT = 1
MAX_LIMIT = 100

_SEPARATOR = "|"
_ID_PATTERN = re.compile(r"[0-9]{1,19}")
# Largest id a signed 64-bit INTEGER column can hold
MAX_MESSAGE_ID = 2**63 - 1


@dataclass(frozen=True)
class Cursor:
    """Exclusive upper bound of a history scan."""
    created_at: datetime
    message_id: Optional[int] = None


@dataclass
class Page:
    """One page of history, oldest message first."""
    messages: List["ChatMessage"] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False


def clamp_limit(limit: Optional[int]) -> int:
    """Clamp a requested page size into [1, 100]; missing means the default."""
    if limit is None:
        return DEFAULT_LIMIT
    return max(MIN_LIMIT, min(int(limit), MAX_LIMIT))


def to_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with microseconds and a Z suffix."""
    return to_utc(value).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_timestamp(raw: str) -> Optional[datetime]:
    try:
        return to_utc(datetime.fromisoformat(raw.strip().replace("Z", "+00:00")))
    except (ValueError, OverflowError):
        # OverflowError: offsets that push year 1 or year 9999 out of range
        return None


def parse_message_id(raw: str) -> Optional[int]:
    """ASCII digits only, within the 64-bit INTEGER range; otherwise None."""
    if not _ID_PATTERN.fullmatch(raw):
        return None
    value = int(raw)
    if value > MAX_MESSAGE_ID:
        return None
    return value


def encode_cursor(message: "ChatMessage") -> str:
    return f"{format_timestamp(message.created_at)}{_SEPARATOR}{message.id}"


def decode_cursor(raw: Optional[str]) -> Optional[Cursor]:
    """
    Parse a cursor string without touching storage.

    Returns None for a missing or malformed cursor. A bare integer is not
    resolved here; see resolve_cursor().
    """
    if not raw or not raw.strip():
        return None
    raw = raw.strip()

    if _SEPARATOR in raw:
        ts_part, _, id_part = raw.rpartition(_SEPARATOR)
        created_at = parse_timestamp(ts_part)
        message_id = parse_message_id(id_part)
        if created_at is None or message_id is None:
            logger.debug(f"Ignoring malformed cursor: {raw!r}")
            return None
        return Cursor(created_at=created_at, message_id=message_id)

    if parse_message_id(raw) is not None:
        return None

    created_at = parse_timestamp(raw)
    if created_at is None:
        logger.debug(f"Ignoring malformed cursor: {raw!r}")
        return None
    return Cursor(created_at=created_at)


def resolve_cursor(db: Session, store: "MessageStore", room_id: int, raw: Optional[str]) -> Optional[Cursor]:
    """
    Decode a cursor, looking up bare message ids in the same room.

    Unknown message ids fall back to "no cursor" like any other bad cursor.
    """
    cursor = decode_cursor(raw)
    if cursor is not None or not raw:
        return cursor
    message_id = parse_message_id(raw.strip())
    if message_id is None:
        return None

    message = store.get(db, room_id, message_id)
    if message is None:
        logger.debug(f"Cursor message {raw!r} not found in room {room_id}, serving newest page")
        return None
    return Cursor(created_at=message.created_at, message_id=message.id)


def fetch_page(
    db: Session,
    store: "MessageStore",
    room_id: int,
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
) -> Page:
    """
    Serve one page of a room's history.

    The store scans limit + 1 rows; the extra row only signals that older
    history exists and is never returned. No count query is issued.
    """
    limit = clamp_limit(limit)
    before = resolve_cursor(db, store, room_id, cursor)

    messages, has_more = store.range(db, room_id, before, limit)

    next_cursor = encode_cursor(messages[0]) if has_more and messages else None
    logger.debug(
        f"Page for room {room_id}: {len(messages)} messages, has_more={has_more}, next_cursor={next_cursor}"
    )
    return Page(messages=messages, next_cursor=next_cursor, has_more=has_more)
