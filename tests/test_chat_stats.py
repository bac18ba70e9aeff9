"""
Tests for the GET /admin/chat/stats endpoint.

Tests cover:
- Admin-only access
- Empty history returns zeros/nulls
- Totals, active rooms and unique senders
- Top rooms and top senders by message count
- First and last message timestamps
- Hourly histogram and daily activity
"""

from datetime import datetime, time, timedelta, timezone

import pytest

from app.chat import ChatService
from app.models import ChapterMessage
from app.rooms import CHAPTER_ROOM
from tests.helpers import (
    auth_headers,
    create_chapter,
    create_group,
    create_user,
    join_chapter,
    join_group,
)


@pytest.fixture
def admin(db):
    return create_user(db, name="Admin", is_admin=True)


@pytest.fixture
def seeded(client, db):
    """
    Two chapters:
    - Lagos: Alice x3, Bob x1
    - Accra: Bob x2
    """
    alice = create_user(db, name="Alice")
    bob = create_user(db, name="Bob")
    lagos = create_chapter(db, "Lagos")
    accra = create_chapter(db, "Accra")
    for user in (alice, bob):
        join_chapter(db, user, lagos)
    join_chapter(db, bob, accra)

    def post(chapter_id, user_id, content):
        response = client.post(
            f"/chapters/{chapter_id}/messages",
            json={"content": content},
            headers=auth_headers(user_id),
        )
        assert response.status_code == 200
        return response.json()["message"]

    first = post(lagos, alice, "one")
    post(lagos, alice, "two")
    post(lagos, bob, "three")
    post(accra, bob, "four")
    post(accra, bob, "five")
    last = post(lagos, alice, "six!")

    return {
        "alice": alice,
        "bob": bob,
        "lagos": lagos,
        "accra": accra,
        "first": first,
        "last": last,
    }


class TestStatsAccess:

    def test_requires_token(self, client):
        response = client.get("/admin/chat/stats")

        assert response.status_code == 401

    def test_non_admin_forbidden(self, client, db):
        user = create_user(db)

        response = client.get("/admin/chat/stats", headers=auth_headers(user))

        assert response.status_code == 403
        assert response.json()["detail"] == "Administrator privilege required"

    def test_invalid_days_rejected(self, client, admin):
        response = client.get("/admin/chat/stats", params={"days": 0}, headers=auth_headers(admin))

        assert response.status_code == 422


class TestStatsContent:

    def test_empty_history(self, client, admin):
        response = client.get("/admin/chat/stats", headers=auth_headers(admin))

        assert response.status_code == 200
        data = response.json()
        assert data["room_kind"] == "chapter"
        assert data["days"] == 30
        assert data["total_messages"] == 0
        assert data["active_rooms"] == 0
        assert data["senders_count"] == 0
        assert data["messages_per_room"] == []
        assert data["messages_per_sender"] == []
        assert data["first_message_ts"] is None
        assert data["last_message_ts"] is None

    def test_totals(self, client, admin, seeded):
        data = client.get("/admin/chat/stats", headers=auth_headers(admin)).json()

        assert data["total_messages"] == 6
        assert data["active_rooms"] == 2
        assert data["senders_count"] == 2
        assert data["avg_message_length"] == pytest.approx((3 + 3 + 5 + 4 + 4 + 4) / 6)

    def test_messages_per_room(self, client, admin, seeded):
        data = client.get("/admin/chat/stats", headers=auth_headers(admin)).json()

        assert data["messages_per_room"] == [
            {"room_id": seeded["lagos"], "name": "Lagos", "count": 4, "unique_senders": 2},
            {"room_id": seeded["accra"], "name": "Accra", "count": 2, "unique_senders": 1},
        ]

    def test_messages_per_sender(self, client, admin, seeded):
        data = client.get("/admin/chat/stats", headers=auth_headers(admin)).json()

        assert data["messages_per_sender"] == [
            {"sender_id": seeded["alice"], "name": "Alice", "email": None, "count": 3, "rooms_active": 1},
            {"sender_id": seeded["bob"], "name": "Bob", "email": None, "count": 3, "rooms_active": 2},
        ]

    def test_first_and_last_timestamps(self, client, admin, seeded):
        data = client.get("/admin/chat/stats", headers=auth_headers(admin)).json()

        assert data["first_message_ts"] == seeded["first"]["createdAt"]
        assert data["last_message_ts"] == seeded["last"]["createdAt"]

    def test_group_stats_are_separate(self, client, db, admin, seeded):
        group_id = create_group(db)
        join_group(db, seeded["alice"], group_id)
        client.post(
            f"/groups/{group_id}/messages",
            json={"content": "psst"},
            headers=auth_headers(seeded["alice"]),
        )

        data = client.get(
            "/admin/chat/stats",
            params={"room_kind": "group"},
            headers=auth_headers(admin),
        ).json()

        assert data["room_kind"] == "group"
        assert data["total_messages"] == 1
        assert data["messages_per_room"][0]["name"] == "Founders Circle"


@pytest.fixture
def timed_history(db):
    """
    Messages at fixed times two days and one day ago:
    - day 1: 10:15 Alice/Lagos, 10:45 Bob/Lagos, 11:05 Bob/Accra
    - day 2: 10:30 Alice/Lagos
    """
    alice = create_user(db, name="Alice")
    bob = create_user(db, name="Bob")
    lagos = create_chapter(db, "Lagos")
    accra = create_chapter(db, "Accra")
    ChatService(CHAPTER_ROOM).ensure_schema(db)

    day1 = (datetime.now(timezone.utc) - timedelta(days=2)).date()
    day2 = day1 + timedelta(days=1)

    def at(day, hour, minute):
        return datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)

    for room_id, sender_id, created_at in [
        (lagos, alice, at(day1, 10, 15)),
        (lagos, bob, at(day1, 10, 45)),
        (accra, bob, at(day1, 11, 5)),
        (lagos, alice, at(day2, 10, 30)),
    ]:
        db.add(ChapterMessage(room_id=room_id, sender_id=sender_id, content="hello", created_at=created_at))
    db.commit()
    return {"day1": day1.isoformat(), "day2": day2.isoformat()}


class TestStatsActivity:

    def test_empty_history(self, client, admin):
        data = client.get("/admin/chat/stats", headers=auth_headers(admin)).json()

        assert data["peak_usage"] == []
        assert data["daily_activity"] == []

    def test_peak_usage_by_hour(self, client, admin, timed_history):
        data = client.get("/admin/chat/stats", headers=auth_headers(admin)).json()

        assert data["peak_usage"] == [
            {"hour": 10, "count": 3},
            {"hour": 11, "count": 1},
        ]

    def test_daily_activity(self, client, admin, timed_history):
        data = client.get("/admin/chat/stats", headers=auth_headers(admin)).json()

        assert data["daily_activity"] == [
            {"date": timed_history["day1"], "message_count": 3, "unique_users": 2, "active_rooms": 2},
            {"date": timed_history["day2"], "message_count": 1, "unique_users": 1, "active_rooms": 1},
        ]
