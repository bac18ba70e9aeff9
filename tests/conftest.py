"""
Pytest configuration and shared fixtures.

Environment variables may be provided from .env.test; defaults below point
the app at a throwaway SQLite file. They must be set before any app import,
and the settings cache is cleared so the test values are used.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_chat.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("PUBLISHER_SECRET", "test-publisher-secret")
os.environ.setdefault("SCHEDULED_POSTS_WORKER_ENABLED", "false")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from app.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient

from app.main import app
from app.storage import Base, SessionLocal, engine, init_db


@pytest.fixture(scope="function")
def database():
    """Fresh collaborator tables for each test; everything dropped afterwards."""
    init_db()
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(database):
    """A session on the test database."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(database):
    """Test client on a fresh database."""
    with TestClient(app) as test_client:
        yield test_client
