"""
Tests for lazy, idempotent provisioning of the message tables.

Tests cover:
- Tables are absent until first use and present after
- Repeated and concurrent ensure_schema calls all succeed
- Missing parent tables raise SchemaError
- Provisioning honours the caller's deadline
- The readiness probe reflects the collaborator schema
"""

from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import create_engine, inspect

from app.errors import SchemaError, StorageTimeoutError
from app.models import COLLABORATOR_TABLES, MESSAGE_TABLES
from app.storage import Base, Deadline, ensure_schema
from tests.helpers import auth_headers, create_chapter, create_user, join_chapter

EXPECTED_INDEXES = {
    "chapter_messages": {"ix_chapter_messages_room_created_at_desc", "ix_chapter_messages_sender_id"},
    "secret_group_messages": {
        "ix_secret_group_messages_room_created_at_desc",
        "ix_secret_group_messages_sender_id",
    },
}


@pytest.fixture
def scratch_engine(tmp_path):
    """An engine on an empty SQLite file, separate from the app database."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'provision.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        pool_size=10,
        max_overflow=50,
    )
    yield engine
    engine.dispose()


def index_names(engine, table_name):
    return {ix["name"] for ix in inspect(engine).get_indexes(table_name)}


def fresh_inspect(engine):
    """Inspect through a new engine so no pooled connection's schema cache is reused."""
    scratch = create_engine(engine.url)
    try:
        insp = inspect(scratch)
        return {
            name: {ix["name"] for ix in insp.get_indexes(name)}
            for name in insp.get_table_names()
        }
    finally:
        scratch.dispose()


class TestEnsureSchema:

    def test_message_tables_created_on_first_use(self, client, db):
        user = create_user(db)
        chapter_id = create_chapter(db)
        join_chapter(db, user, chapter_id)
        assert "chapter_messages" not in fresh_inspect(db.get_bind())

        response = client.get(f"/chapters/{chapter_id}/messages", headers=auth_headers(user))

        assert response.status_code == 200
        schema = fresh_inspect(db.get_bind())
        assert schema["chapter_messages"] == EXPECTED_INDEXES["chapter_messages"]
        assert "secret_group_messages" not in schema

    def test_repeated_calls_are_no_ops(self, scratch_engine):
        Base.metadata.create_all(bind=scratch_engine, tables=COLLABORATOR_TABLES)

        for _ in range(5):
            ensure_schema(scratch_engine, MESSAGE_TABLES)

        for table_name, expected in EXPECTED_INDEXES.items():
            assert index_names(scratch_engine, table_name) == expected

    def test_concurrent_first_touch(self, scratch_engine):
        Base.metadata.create_all(bind=scratch_engine, tables=COLLABORATOR_TABLES)

        with ThreadPoolExecutor(max_workers=50) as pool:
            results = list(pool.map(lambda _: ensure_schema(scratch_engine, MESSAGE_TABLES), range(50)))

        assert results == [None] * 50
        tables = set(inspect(scratch_engine).get_table_names())
        assert {"chapter_messages", "secret_group_messages"} <= tables
        for table_name, expected in EXPECTED_INDEXES.items():
            assert index_names(scratch_engine, table_name) == expected

    def test_missing_parent_table(self, scratch_engine):
        with pytest.raises(SchemaError) as excinfo:
            ensure_schema(scratch_engine, MESSAGE_TABLES)

        assert "missing parent table" in str(excinfo.value)
        assert excinfo.value.public_message == "Internal error"
        assert not inspect(scratch_engine).has_table("chapter_messages")

    def test_expired_deadline_creates_nothing(self, scratch_engine):
        Base.metadata.create_all(bind=scratch_engine, tables=COLLABORATOR_TABLES)

        with pytest.raises(StorageTimeoutError):
            ensure_schema(scratch_engine, MESSAGE_TABLES, Deadline(0))

        assert not inspect(scratch_engine).has_table("chapter_messages")

    def test_unexpired_deadline_provisions(self, scratch_engine):
        Base.metadata.create_all(bind=scratch_engine, tables=COLLABORATOR_TABLES)

        ensure_schema(scratch_engine, MESSAGE_TABLES, Deadline(30))

        assert inspect(scratch_engine).has_table("secret_group_messages")


class TestHealth:

    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_schema(self, client, database):
        Base.metadata.drop_all(bind=database)

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"
