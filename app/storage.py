import logging
import sqlite3
import time
from contextlib import contextmanager
from typing import Generator, Iterable, Iterator, Optional

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.schema import CreateIndex, CreateTable, Table

from app.config import settings
from app.errors import (
    ChatError,
    NotFoundError,
    SchemaError,
    StorageError,
    StorageTimeoutError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Create SQLAlchemy engine with SQLite-specific settings
# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    """SQLite ignores foreign keys (and ON DELETE CASCADE) unless asked per connection."""
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def init_db() -> None:
    """
    Initialize the tables owned by the surrounding application
    (users, chapters, groups, memberships, posts).

    Message tables are deliberately skipped: they are provisioned lazily
    by ensure_schema() on first use.
    """
    logger.debug(f"Initializing database with URL: {engine.url.render_as_string(hide_password=True)}")
    try:
        from app.models import COLLABORATOR_TABLES

        logger.debug("Creating collaborator tables...")
        Base.metadata.create_all(bind=engine, tables=COLLABORATOR_TABLES)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and the collaborator schema is applied.

    Returns:
        True if DB is healthy and the users table exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            logger.debug("Testing database connectivity...")
            db.execute(text("SELECT 1"))
            logger.debug("Database connectivity OK")

            if not inspect(db.connection()).has_table("users"):
                logger.error("Database schema not applied: 'users' table not found")
                return False
            logger.debug("Users table found, schema is applied")
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Schema Provisioner
# =============================================================================

def _missing_objects(conn: Connection, table: Table) -> list:
    insp = inspect(conn)
    if not insp.has_table(table.name):
        return [table.name]
    existing = {ix["name"] for ix in insp.get_indexes(table.name)}
    return [ix.name for ix in table.indexes if ix.name not in existing]


def ensure_schema(bind: Engine, tables: Iterable[Table], deadline: Optional["Deadline"] = None) -> None:
    """
    Idempotently create message tables and their indexes.

    Uses CREATE ... IF NOT EXISTS for every object, so any number of
    concurrent callers (threads, processes or replicas) can race on first
    touch. There is no in-process "done" flag: the database itself decides
    whether each statement is a no-op.

    An optional deadline is checked before each table.

    Raises:
        SchemaError: a parent table referenced by a foreign key is missing,
            or the objects still do not exist after a failed attempt.
        StorageTimeoutError: the deadline passed before provisioning finished.
    """
    tables = list(tables)
    try:
        with bind.begin() as conn:
            insp = inspect(conn)
            for table in tables:
                if deadline is not None:
                    deadline.check(f"provisioning {table.name}")
                missing_parents = sorted(
                    {
                        fk.column.table.name
                        for fk in table.foreign_keys
                        if not insp.has_table(fk.column.table.name)
                    }
                )
                if missing_parents:
                    raise SchemaError(
                        f"cannot provision {table.name}: missing parent table(s) {', '.join(missing_parents)}"
                    )
                conn.execute(CreateTable(table, if_not_exists=True))
                for index in sorted(table.indexes, key=lambda ix: ix.name):
                    conn.execute(CreateIndex(index, if_not_exists=True))
    except SchemaError as e:
        logger.error(str(e))
        raise
    except SQLAlchemyError as e:
        # Concurrent DDL can still collide inside the catalog (e.g. pg_type on
        # PostgreSQL); the objects are fine if another caller won the race.
        logger.warning(f"Schema provisioning attempt failed, re-checking: {e}")
        try:
            with bind.connect() as conn:
                missing = [name for table in tables for name in _missing_objects(conn, table)]
        except SQLAlchemyError as check_error:
            logger.error(f"Schema re-check failed: {check_error}")
            raise SchemaError(f"schema provisioning failed: {e}") from e
        if missing:
            logger.error(f"Schema provisioning failed, missing objects: {missing}")
            raise SchemaError(f"schema provisioning failed: {e}") from e
    logger.debug(f"Schema ensured for tables: {[t.name for t in tables]}")


# =============================================================================
# Deadlines
# =============================================================================

class Deadline:
    """A time budget for one chat operation, measured on the monotonic clock."""

    def __init__(self, timeout: Optional[float]):
        self.timeout = timeout
        self.expires_at = None if timeout is None else time.monotonic() + timeout

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return self.expires_at - time.monotonic()

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, operation: str) -> None:
        if self.expired():
            logger.warning(f"Deadline exceeded before {operation} (timeout={self.timeout}s)")
            raise StorageTimeoutError(f"deadline exceeded before {operation}")


@contextmanager
def statement_deadline(db: Session, deadline: Deadline) -> Iterator[None]:
    """
    Enforce the deadline inside the database for statements run on this session.

    SQLite: a progress handler interrupts the running statement once the
    deadline passes. PostgreSQL: SET LOCAL statement_timeout for the current
    transaction. Other dialects only get the pre-call checks.
    """
    remaining = deadline.remaining()
    if remaining is None:
        yield
        return

    deadline.check("query")
    conn = db.connection()
    dialect = conn.dialect.name

    if dialect == "sqlite":
        raw = conn.connection.dbapi_connection
        raw.set_progress_handler(lambda: 1 if deadline.expired() else 0, 1000)
        try:
            yield
        finally:
            raw.set_progress_handler(None, 0)
        return

    if dialect == "postgresql":
        conn.execute(text(f"SET LOCAL statement_timeout = {max(int(remaining * 1000), 1)}"))

    yield


# =============================================================================
# Error classification
# =============================================================================

def _pgcode(exc: DBAPIError) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


def classify_db_error(exc: Exception) -> ChatError:
    """
    Translate a SQLAlchemy/DBAPI exception into the chat error taxonomy.

    The original exception is chained by the caller with ``raise ... from``.
    """
    if isinstance(exc, ChatError):
        return exc

    if isinstance(exc, PoolTimeoutError):
        return StorageTimeoutError("timed out waiting for a database connection")

    if isinstance(exc, IntegrityError):
        detail = str(exc.orig).lower()
        code = _pgcode(exc)
        if code == "23503" or "foreign key" in detail:
            return NotFoundError("Room or sender not found")
        if code in ("23514", "23502") or "check constraint" in detail or "not null" in detail:
            return ValidationError("Message content must be between 1 and 4000 characters")
        return StorageError(f"integrity error: {exc.orig}")

    if isinstance(exc, OperationalError):
        detail = str(exc.orig).lower()
        if _pgcode(exc) == "57014" or "interrupted" in detail or "statement timeout" in detail:
            return StorageTimeoutError("statement exceeded its deadline")

    return StorageError(f"database error: {exc}")


@contextmanager
def translate_errors(db: Session, operation: str) -> Iterator[None]:
    """
    Roll back and re-raise database failures as chat errors.

    ChatErrors raised inside the block pass through untouched (after a
    rollback); nothing is swallowed.
    """
    try:
        yield
    except ChatError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        error = classify_db_error(e)
        if error.status_code >= 500:
            logger.error(f"{operation} failed: {e}")
        else:
            logger.info(f"{operation} rejected by storage: {error.message}")
        raise error from e
