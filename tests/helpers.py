"""
Seeding helpers for tests. The chat service never writes these
collaborator tables, so tests create rows directly.
"""

import os
from datetime import datetime
from typing import Optional

from app.models import (
    Chapter,
    ChapterMembership,
    Post,
    SecretGroup,
    SecretGroupMembership,
    User,
)
from app.security import create_access_token

TEST_JWT_SECRET = os.environ["JWT_SECRET"]


def auth_headers(user_id: int) -> dict:
    token = create_access_token(user_id, secret=TEST_JWT_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def create_user(db, name: Optional[str] = "Ada", avatar: Optional[str] = None, is_admin: bool = False) -> int:
    user = User(name=name, profile_photo_url=avatar, is_admin=is_admin)
    db.add(user)
    db.commit()
    return user.id


def create_chapter(db, name: str = "Lagos") -> int:
    chapter = Chapter(name=name, location_city=name)
    db.add(chapter)
    db.commit()
    return chapter.id


def create_group(db, name: str = "Founders Circle") -> int:
    group = SecretGroup(name=name)
    db.add(group)
    db.commit()
    return group.id


def join_chapter(db, user_id: int, chapter_id: int) -> None:
    db.add(ChapterMembership(user_id=user_id, chapter_id=chapter_id))
    db.commit()


def leave_chapter(db, user_id: int, chapter_id: int) -> None:
    db.query(ChapterMembership).filter(
        ChapterMembership.user_id == user_id,
        ChapterMembership.chapter_id == chapter_id,
    ).delete()
    db.commit()


def join_group(db, user_id: int, group_id: int) -> None:
    db.add(SecretGroupMembership(user_id=user_id, group_id=group_id))
    db.commit()


def create_post(
    db,
    author_id: int,
    status: str,
    scheduled_at: Optional[datetime] = None,
    published_at: Optional[datetime] = None,
) -> int:
    post = Post(
        author_id=author_id,
        content="Hello feed",
        status=status,
        scheduled_at=scheduled_at,
        published_at=published_at,
    )
    db.add(post)
    db.commit()
    return post.id
