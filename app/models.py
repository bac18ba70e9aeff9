"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

Two groups of tables live here:
- collaborator tables (users, chapters, secret groups, memberships, posts)
  owned by the surrounding application and created by init_db();
- message tables (chapter_messages, secret_group_messages), owned by the
  chat engine and provisioned lazily by storage.ensure_schema().
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declared_attr

from app.storage import Base

MAX_CONTENT_LENGTH = 4000


# =============================================================================
# Collaborator tables
# =============================================================================

class User(Base):
    """Directory entry for a member; source of sender display metadata."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True, unique=True)
    profile_photo_url = Column(String, nullable=True)
    is_admin = Column(Boolean, nullable=False, default=False)


class Chapter(Base):
    __tablename__ = "chapters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    location_city = Column(String, nullable=True)


class ChapterMembership(Base):
    __tablename__ = "chapter_memberships"
    __table_args__ = (UniqueConstraint("user_id", "chapter_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    chapter_id = Column(Integer, ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False, index=True)


class SecretGroup(Base):
    __tablename__ = "secret_groups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)


class SecretGroupMembership(Base):
    __tablename__ = "secret_group_memberships"
    __table_args__ = (UniqueConstraint("user_id", "group_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    group_id = Column(Integer, ForeignKey("secret_groups.id", ondelete="CASCADE"), nullable=False, index=True)


class Post(Base):
    """
    Feed post. The scheduled-posts publisher flips status from
    'scheduled' to 'published' once scheduled_at has passed.
    """
    __tablename__ = "posts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    author_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="published", index=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=True, index=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)


# =============================================================================
# Message tables
# =============================================================================

class MessageMixin:
    """
    Shared message shape. Each concrete table supplies its own room_id
    foreign key; everything else is identical across room kinds.
    """

    id = Column(Integer, primary_key=True, autoincrement=True)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    edited_at = Column(DateTime(timezone=True), nullable=True)  # reserved, never set

    @declared_attr
    def sender_id(cls):
        return Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    @declared_attr
    def __table_args__(cls):
        return (
            CheckConstraint(
                f"length(content) > 0 AND length(content) <= {MAX_CONTENT_LENGTH}",
                name=f"ck_{cls.__tablename__}_content_length",
            ),
        )


class ChapterMessage(MessageMixin, Base):
    __tablename__ = "chapter_messages"

    room_id = Column(Integer, ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False)


class SecretGroupMessage(MessageMixin, Base):
    __tablename__ = "secret_group_messages"

    room_id = Column(Integer, ForeignKey("secret_groups.id", ondelete="CASCADE"), nullable=False)


def _message_indexes(model) -> None:
    # (room_id, created_at DESC, id DESC) serves the pagination scan; sender_id serves moderation
    table = model.__tablename__
    Index(f"ix_{table}_room_created_at_desc", model.room_id, model.created_at.desc(), model.id.desc())
    Index(f"ix_{table}_sender_id", model.sender_id)


_message_indexes(ChapterMessage)
_message_indexes(SecretGroupMessage)


MESSAGE_TABLES = [ChapterMessage.__table__, SecretGroupMessage.__table__]

COLLABORATOR_TABLES = [
    User.__table__,
    Chapter.__table__,
    ChapterMembership.__table__,
    SecretGroup.__table__,
    SecretGroupMembership.__table__,
    Post.__table__,
]
