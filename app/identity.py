"""
Identity resolver backed by the users table.

Sender display metadata is always resolved at read/write time, so a rename
or a new avatar shows up on every past message.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import User

logger = logging.getLogger(__name__)

DEFAULT_DISPLAY_NAME = "User"


@dataclass(frozen=True)
class DisplayMeta:
    name: str
    avatar_url: Optional[str]


def display_meta(name: Optional[str], avatar_url: Optional[str]) -> DisplayMeta:
    return DisplayMeta(name=name or DEFAULT_DISPLAY_NAME, avatar_url=avatar_url or None)


class IdentityResolver:
    """Reads display metadata and admin privilege for a user."""

    def get_display_meta(self, db: Session, user_id: int) -> Optional[DisplayMeta]:
        row = db.execute(
            select(User.name, User.profile_photo_url).where(User.id == user_id)
        ).first()
        if row is None:
            logger.debug(f"No user {user_id} for display metadata")
            return None
        return display_meta(row.name, row.profile_photo_url)

    def is_admin(self, db: Session, user_id: int) -> bool:
        value = db.execute(select(User.is_admin).where(User.id == user_id)).scalar()
        return bool(value)
