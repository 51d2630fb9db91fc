"""
Image2Sheet Backend — Test Configuration (conftest.py)
=======================================================

What:  Shared pytest fixtures for the entire test suite.
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.
Who:   Used by all test files in the tests/ directory.

Fixture Hierarchy:
    Function-scoped (created fresh for each test):
    ├── clock: Controllable "now" for window and expiry arithmetic
    ├── mock_db_session: Mock database session (no real DB needed)
    ├── db_engine: SQLite (aiosqlite) database in a temp dir, tables created
    │   ├── session_factory: async_sessionmaker bound to it
    │   ├── db_session: One AsyncSession for service tests
    │   └── make_user: Inserts and commits a User
    ├── test_client: HTTPX AsyncClient with get_db_session pointed at db_engine
    └── sample_image_b64: A tiny base64 payload that passes image validation
"""

import base64
import itertools
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

# Override settings for testing BEFORE any application imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"
os.environ["GEMINI_API_KEY"] = "test-key-not-real"
os.environ["JWT_SECRET"] = "test-secret-not-for-production"
os.environ["GOOGLE_CLIENT_ID"] = "test-client-id.apps.googleusercontent.com"
os.environ["DB_AUTO_CREATE"] = "false"
os.environ["RATE_LIMIT_REQUESTS"] = "10000"
os.environ["LOG_LEVEL"] = "WARNING"  # Reduce noise during tests

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from image2sheet.database import Base, get_db_session
from image2sheet.models import User


class FakeClock:
    """Callable clock whose time only moves when a test says so."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def mock_db_session():
    """
    Provides a mock async database session.

    What:    A MagicMock that simulates AsyncSession behavior.
    How:     Mocks execute, scalar(s), get, flush, commit, rollback and close;
             begin_nested() returns an async context manager so `atomic(db)`
             blocks run.

    Usage:
        async def test_quota_fails_closed(mock_db_session):
            mock_db_session.execute.side_effect = SQLAlchemyError("down")
    """
    session = AsyncMock()
    session.execute = AsyncMock()
    session.scalar = AsyncMock()
    session.scalars = AsyncMock()
    session.get = AsyncMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.add = MagicMock()

    nested = MagicMock()
    nested.__aenter__ = AsyncMock(return_value=nested)
    nested.__aexit__ = AsyncMock(return_value=False)
    session.begin_nested = MagicMock(return_value=nested)
    return session


# ══════════════════════════════════════════════════════════════════════════
# SQLite Database
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """
    A fresh SQLite database per test.

    The driver's own transaction handling is switched off so SQLAlchemy
    emits BEGIN itself; that is what makes SAVEPOINTs work on SQLite.
    Foreign keys are enabled so ON DELETE CASCADE behaves like PostgreSQL.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'image2sheet.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(db_session):
    """
    Factory for committed users.

    Usage:
        user = await make_user(daily_extractions_count=5, last_extraction_reset=now)
    """
    sequence = itertools.count(1)

    async def _make_user(**overrides) -> User:
        n = next(sequence)
        fields = {
            "google_id": f"google-uid-{n}",
            "email": f"user{n}@example.com",
            "name": f"User {n}",
        }
        fields.update(overrides)
        user = User(**fields)
        db_session.add(user)
        await db_session.commit()
        return user

    return _make_user


@pytest.fixture
def sample_image_b64():
    """Base64 of a few PNG-looking bytes. Gemini would reject it; validation passes."""
    return base64.b64encode(b"\x89PNG\r\n\x1a\n" + b"\x00" * 24).decode()


# ══════════════════════════════════════════════════════════════════════════
# HTTP Client
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def test_client(session_factory):
    """
    Provides an async HTTP test client for endpoint testing.

    Requests get their sessions from the per-test SQLite database, with the
    same commit-on-success / rollback-on-error behaviour as production.

    Usage:
        async def test_health(test_client):
            response = await test_client.get("/health")
            assert response.status_code == 200
    """
    from image2sheet.main import app

    async def _override_db_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_session] = _override_db_session
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
