"""
Scheduled posts publisher.

Promotes posts from 'scheduled' to 'published' once their scheduled time
has passed. The transition is a single conditional UPDATE guarded by the
current status, so any number of runs (overlapping, repeated, or on several
replicas) publish each post exactly once and never overwrite an existing
published_at.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from app.metrics import record_scheduled_posts_published
from app.models import Post
from app.pagination import to_utc
from app.storage import SessionLocal, translate_errors

logger = logging.getLogger(__name__)

STATUS_SCHEDULED = "scheduled"
STATUS_PUBLISHED = "published"


@dataclass
class PublishedPost:
    id: int
    published_at: Optional[datetime]


def publish_scheduled_posts(db: Session, now: Optional[datetime] = None) -> List[PublishedPost]:
    """
    Publish every scheduled post that is due.

    Args:
        db: Database session
        now: Reference time (defaults to current UTC time)

    Returns:
        The posts this call published; empty if none were due.
    """
    now = now or datetime.now(timezone.utc)

    stmt = (
        update(Post)
        .where(
            Post.status == STATUS_SCHEDULED,
            Post.scheduled_at.is_not(None),
            Post.scheduled_at <= now,
        )
        .values(
            status=STATUS_PUBLISHED,
            published_at=func.coalesce(Post.published_at, now),
        )
        .returning(Post.id, Post.published_at)
        .execution_options(synchronize_session=False)
    )

    with translate_errors(db, "publish scheduled posts"):
        rows = db.execute(stmt).all()
        db.commit()

    published = [
        PublishedPost(
            id=row.id,
            published_at=to_utc(row.published_at) if isinstance(row.published_at, datetime) else row.published_at,
        )
        for row in rows
    ]
    if published:
        logger.info(f"Published {len(published)} scheduled post(s) at {now.isoformat()}")
        record_scheduled_posts_published(len(published))
    else:
        logger.debug("No scheduled posts due")
    return published


class ScheduledPostsWorker:
    """Runs the publisher on a fixed interval in an asyncio task."""

    def __init__(
        self,
        interval_seconds: float,
        initial_delay_seconds: float = 0.0,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.session_factory = session_factory
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def run_once(self) -> List[PublishedPost]:
        with self.session_factory() as db:
            return publish_scheduled_posts(db)

    async def start(self) -> None:
        """Start the background loop (no-op if already running)."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Scheduled posts worker started, interval={self.interval_seconds}s")

    async def stop(self) -> None:
        """Cancel the background loop and wait for it to finish."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Scheduled posts worker stopped")

    async def _loop(self) -> None:
        await asyncio.sleep(self.initial_delay_seconds)
        while True:
            try:
                await asyncio.to_thread(self.run_once)
            except Exception:
                # one failed run must not kill the worker; the next tick retries
                logger.exception("Scheduled posts run failed")
            await asyncio.sleep(self.interval_seconds)
