"""
Room adapters and the membership gate.

A room kind binds the generic chat engine to one physical message table and
one membership table. Chapter chat and secret-group chat differ only in
those two tables.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import (
    Chapter,
    ChapterMembership,
    ChapterMessage,
    SecretGroup,
    SecretGroupMembership,
    SecretGroupMessage,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoomKind:
    name: str
    room_model: type
    message_model: type
    membership_model: type
    membership_room_column: str

    @property
    def table_name(self) -> str:
        return self.message_model.__tablename__

    @property
    def message_table(self):
        return self.message_model.__table__

    def is_member(self, db: Session, user_id: int, room_id: int) -> bool:
        """Membership predicate for this room kind. Read-only, never cached."""
        membership = self.membership_model
        room_column = getattr(membership, self.membership_room_column)
        found = db.execute(
            select(membership.id)
            .where(membership.user_id == user_id, room_column == room_id)
            .limit(1)
        ).first()
        return found is not None


CHAPTER_ROOM = RoomKind(
    name="chapter",
    room_model=Chapter,
    message_model=ChapterMessage,
    membership_model=ChapterMembership,
    membership_room_column="chapter_id",
)

GROUP_ROOM = RoomKind(
    name="group",
    room_model=SecretGroup,
    message_model=SecretGroupMessage,
    membership_model=SecretGroupMembership,
    membership_room_column="group_id",
)

ROOM_KINDS = {room.name: room for room in (CHAPTER_ROOM, GROUP_ROOM)}


class MembershipGate:
    """
    Answers "is this user a member of this room?" for a room kind.

    Evaluated once per request and never cached: membership can change
    between calls.
    """

    def __init__(self, room: RoomKind):
        self.room = room

    def is_member(self, db: Session, user_id: int, room_id: int) -> bool:
        result = self.room.is_member(db, user_id, room_id)
        logger.debug(f"Membership check: user={user_id} {self.room.name}={room_id} member={result}")
        return result
