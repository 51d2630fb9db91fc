"""
Image2Sheet Backend — Database Session Management
==================================================

What:  Async SQLAlchemy engine, session factory, declarative base and the
       FastAPI session dependency.
How:   Creates an async engine with connection pooling, provides a session
       dependency that auto-commits on success and auto-rolls-back on error.
Who:   Used by route handlers via FastAPI's dependency injection system and by
       the services, which receive the session as their first argument.

Transactions:
    A request runs inside one session transaction that commits when the
    handler returns. Operations that must land together (purchase +
    premium flag, subscription expiry + premium flag) additionally run
    inside `atomic(session)`, a SAVEPOINT: either every write inside it is
    kept or none is, and a failure there leaves the outer transaction usable.
"""

from datetime import datetime, timezone
from typing import AsyncGenerator, Optional

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from image2sheet.config import settings


# ── Engine Configuration ──────────────────────────────────────────────────
engine = create_async_engine(
    settings.database_url,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=settings.db_pool_pre_ping,
    pool_recycle=3600,
    echo=settings.log_level == "DEBUG",
)

# ── Session Factory ───────────────────────────────────────────────────────
# expire_on_commit=False: attributes stay readable after the mid-request
# commit performed by the quota window reset
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ── Base Model ────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models (shared metadata)."""
    pass


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp column that always round-trips as UTC.

    PostgreSQL keeps the offset natively; SQLite drops it, so values loaded
    without tzinfo are re-tagged as UTC. Quota and expiry arithmetic
    subtracts these values from `datetime.now(timezone.utc)` and would
    fail on naive datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime (the services' default clock)."""
    return datetime.now(timezone.utc)


def atomic(session: AsyncSession):
    """
    Open a SAVEPOINT on the request session.

    Usage:
        async with atomic(db):
            db.add(subscription)
            user.is_premium = True
    """
    return session.begin_nested()


# ── Session Dependency ────────────────────────────────────────────────────
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session per request.

    How it works:
        1. Creates a new session from the factory
        2. Yields it to the route handler
        3. On success: commits the transaction
        4. On error: rolls back the transaction and re-raises
        5. Always: closes the session (returns connection to pool)
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# ── Lifecycle Helpers ─────────────────────────────────────────────────────
async def create_tables() -> None:
    """Create any missing tables from the ORM metadata (startup helper)."""
    # Models must be imported so their tables are registered on Base.metadata
    from image2sheet import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Gracefully closes all connections in the pool (shutdown)."""
    await engine.dispose()
