"""
Tests for the scheduled posts publisher.

Tests cover:
- Due posts are published, future and already-published posts are untouched
- Re-runs are no-ops and never overwrite published_at
- POST /posts/publish-scheduled with valid, invalid and missing signatures
- The background worker publishes on its interval and survives failed runs
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.models import Post
from app.pagination import to_utc
from app.scheduler import STATUS_PUBLISHED, STATUS_SCHEDULED, ScheduledPostsWorker, publish_scheduled_posts
from app.storage import SessionLocal
from app.utils import compute_hmac_signature
from tests.helpers import create_post, create_user

TEST_PUBLISHER_SECRET = "test-publisher-secret"

NOW = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def author(db):
    return create_user(db, name="Author")


def post_row(db, post_id):
    db.expire_all()
    return db.get(Post, post_id)


class TestPublishScheduledPosts:

    def test_publishes_due_posts_only(self, db, author):
        due = create_post(db, author, STATUS_SCHEDULED, scheduled_at=NOW - timedelta(minutes=5))
        future = create_post(db, author, STATUS_SCHEDULED, scheduled_at=NOW + timedelta(hours=1))
        unscheduled = create_post(db, author, STATUS_SCHEDULED)

        published = publish_scheduled_posts(db, now=NOW)

        assert [p.id for p in published] == [due]
        assert post_row(db, due).status == STATUS_PUBLISHED
        assert to_utc(post_row(db, due).published_at) == NOW
        assert post_row(db, future).status == STATUS_SCHEDULED
        assert post_row(db, unscheduled).status == STATUS_SCHEDULED

    def test_already_published_posts_untouched(self, db, author):
        earlier = NOW - timedelta(days=1)
        post_id = create_post(
            db, author, STATUS_PUBLISHED,
            scheduled_at=NOW - timedelta(days=2),
            published_at=earlier,
        )

        assert publish_scheduled_posts(db, now=NOW) == []
        assert to_utc(post_row(db, post_id).published_at) == earlier

    def test_rerun_is_a_no_op(self, db, author):
        post_id = create_post(db, author, STATUS_SCHEDULED, scheduled_at=NOW - timedelta(minutes=1))

        first = publish_scheduled_posts(db, now=NOW)
        second = publish_scheduled_posts(db, now=NOW + timedelta(minutes=10))

        assert [p.id for p in first] == [post_id]
        assert second == []
        assert to_utc(post_row(db, post_id).published_at) == NOW

    def test_preset_published_at_is_kept(self, db, author):
        preset = NOW - timedelta(hours=3)
        post_id = create_post(
            db, author, STATUS_SCHEDULED,
            scheduled_at=NOW - timedelta(minutes=1),
            published_at=preset,
        )

        published = publish_scheduled_posts(db, now=NOW)

        assert [p.id for p in published] == [post_id]
        assert to_utc(post_row(db, post_id).published_at) == preset


class TestPublishEndpoint:

    def test_valid_signature(self, client, db, author):
        due = create_post(db, author, STATUS_SCHEDULED, scheduled_at=datetime.now(timezone.utc) - timedelta(minutes=1))
        body = b"{}"

        response = client.post(
            "/posts/publish-scheduled",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Signature": compute_hmac_signature(body, TEST_PUBLISHER_SECRET),
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["published"] == 1
        assert data["posts"][0]["id"] == due
        assert data["posts"][0]["published_at"].endswith("Z")

    def test_nothing_due(self, client):
        body = b""

        response = client.post(
            "/posts/publish-scheduled",
            content=body,
            headers={"X-Signature": compute_hmac_signature(body, TEST_PUBLISHER_SECRET)},
        )

        assert response.status_code == 200
        assert response.json()["published"] == 0

    def test_invalid_signature(self, client, db, author):
        due = create_post(db, author, STATUS_SCHEDULED, scheduled_at=datetime.now(timezone.utc) - timedelta(minutes=1))

        response = client.post(
            "/posts/publish-scheduled",
            content=b"{}",
            headers={"X-Signature": "deadbeef"},
        )

        assert response.status_code == 401
        assert response.json()["detail"] == "invalid signature"
        assert post_row(db, due).status == STATUS_SCHEDULED

    def test_missing_signature(self, client):
        response = client.post("/posts/publish-scheduled", content=b"{}")

        assert response.status_code == 401


class TestScheduledPostsWorker:

    def test_run_once(self, db, author):
        post_id = create_post(db, author, STATUS_SCHEDULED, scheduled_at=datetime.now(timezone.utc) - timedelta(seconds=1))
        worker = ScheduledPostsWorker(interval_seconds=60)

        published = worker.run_once()

        assert [p.id for p in published] == [post_id]

    def test_loop_publishes_and_stops(self, db, author):
        post_id = create_post(db, author, STATUS_SCHEDULED, scheduled_at=datetime.now(timezone.utc) - timedelta(seconds=1))
        worker = ScheduledPostsWorker(interval_seconds=0.01)

        async def scenario():
            await worker.start()
            assert worker.running
            for _ in range(500):
                if post_row(db, post_id).status == STATUS_PUBLISHED:
                    break
                await asyncio.sleep(0.01)
            await worker.stop()

        asyncio.run(scenario())

        assert not worker.running
        assert post_row(db, post_id).status == STATUS_PUBLISHED

    def test_failed_run_does_not_kill_loop(self, database):
        calls = []

        def flaky_session():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("database unavailable")
            return SessionLocal()

        worker = ScheduledPostsWorker(interval_seconds=0.01, session_factory=flaky_session)

        async def scenario():
            await worker.start()
            for _ in range(500):
                if len(calls) >= 3:
                    break
                await asyncio.sleep(0.01)
            assert worker.running
            await worker.stop()

        asyncio.run(scenario())

        assert len(calls) >= 3
        assert not worker.running
