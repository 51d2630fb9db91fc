"""
Image2Sheet Backend — User Quota Tracker Tests
===============================================

What:  Admission, increment and summary against a real (SQLite) users table.

What we test:
    ✅ 5 of 5 used one hour into the window → denied, 23 hours to go
    ✅ A stale window is reset and COMMITTED before the decision
    ✅ Premium callers are admitted without touching the database
    ✅ Datastore failure during admission fails closed (503)
    ✅ Increment is atomic and fails open
    ✅ The summary applies the window correction without writing it
"""

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from image2sheet.exceptions import NotFoundError, UpstreamUnavailableError
from image2sheet.models import User
from image2sheet.services.quota_window import UNLIMITED
from image2sheet.services.user_quota import DAILY_LIMIT_REASON, UserQuotaTracker


@pytest.fixture
def tracker(clock):
    return UserQuotaTracker(limit=5, clock=clock)


async def _stored_window(session_factory, user_id):
    async with session_factory() as session:
        row = (
            await session.execute(
                select(User.daily_extractions_count, User.last_extraction_reset).where(User.id == user_id)
            )
        ).one()
    return row.daily_extractions_count, row.last_extraction_reset


class TestCheckAndAdmit:
    @pytest.mark.asyncio
    async def test_exhausted_user_is_denied_with_countdown(self, tracker, clock, db_session, make_user):
        user = await make_user(daily_extractions_count=5, last_extraction_reset=clock.now)
        clock.advance(hours=1)

        decision = await tracker.check_and_admit(db_session, user.id, is_premium=False)

        assert decision.allowed is False
        assert decision.current == 5
        assert decision.limit == 5
        assert decision.remaining == 0
        assert decision.hours_until_reset == 23
        assert decision.reason == DAILY_LIMIT_REASON

    @pytest.mark.asyncio
    async def test_admits_with_current_usage(self, tracker, clock, db_session, make_user):
        user = await make_user(daily_extractions_count=2, last_extraction_reset=clock.now)
        clock.advance(hours=3)

        decision = await tracker.check_and_admit(db_session, user.id, is_premium=False)

        assert decision.allowed is True
        assert decision.current == 2
        assert decision.remaining == 3

    @pytest.mark.asyncio
    async def test_stale_window_reset_is_durable(
        self, tracker, clock, db_session, make_user, session_factory
    ):
        user = await make_user(
            daily_extractions_count=5,
            last_extraction_reset=clock.now - timedelta(hours=25),
        )

        decision = await tracker.check_and_admit(db_session, user.id, is_premium=False)
        assert decision.allowed is True
        assert decision.current == 0

        # Read back through a different session: the reset was committed
        count, reset_at = await _stored_window(session_factory, user.id)
        assert count == 0
        assert reset_at == clock.now

    @pytest.mark.asyncio
    async def test_premium_is_admitted_without_a_query(self, tracker, mock_db_session):
        decision = await tracker.check_and_admit(mock_db_session, 42, is_premium=True)

        assert decision.allowed is True
        assert decision.limit == UNLIMITED
        mock_db_session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_user_raises_not_found(self, tracker, db_session):
        with pytest.raises(NotFoundError):
            await tracker.check_and_admit(db_session, 999, is_premium=False)

    @pytest.mark.asyncio
    async def test_datastore_failure_fails_closed(self, tracker, mock_db_session):
        mock_db_session.execute.side_effect = SQLAlchemyError("connection reset")

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await tracker.check_and_admit(mock_db_session, 42, is_premium=False)
        assert exc_info.value.service == "database"


class TestIncrement:
    @pytest.mark.asyncio
    async def test_increment_adds_one(self, tracker, clock, db_session, make_user):
        user = await make_user(daily_extractions_count=2, last_extraction_reset=clock.now)

        await tracker.increment(db_session, user.id, is_premium=False)

        count = await db_session.scalar(
            select(User.daily_extractions_count).where(User.id == user.id)
        )
        assert count == 3

    @pytest.mark.asyncio
    async def test_premium_increment_is_noop(self, tracker, mock_db_session):
        await tracker.increment(mock_db_session, 42, is_premium=True)
        mock_db_session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_increment_failure_is_swallowed(self, tracker, mock_db_session):
        mock_db_session.execute.side_effect = SQLAlchemyError("deadlock detected")

        # Must not raise
        await tracker.increment(mock_db_session, 42, is_premium=False)
        mock_db_session.begin_nested.assert_called_once()


class TestUsageSummary:
    @pytest.mark.asyncio
    async def test_stale_window_reads_as_zero_without_writing(
        self, tracker, clock, db_session, make_user, session_factory
    ):
        user = await make_user(
            daily_extractions_count=4,
            last_extraction_reset=clock.now - timedelta(hours=30),
        )

        summary = await tracker.get_usage_summary(db_session, user.id, is_premium=False)
        assert summary.current == 0
        assert summary.remaining == 5
        assert summary.hours_until_reset == 0

        count, _ = await _stored_window(session_factory, user.id)
        assert count == 4

    @pytest.mark.asyncio
    async def test_premium_summary_is_unlimited(self, tracker, clock, db_session, make_user):
        user = await make_user(daily_extractions_count=7, last_extraction_reset=clock.now)

        summary = await tracker.get_usage_summary(db_session, user.id, is_premium=True)
        assert summary.limit == UNLIMITED
        assert summary.remaining == UNLIMITED
        assert summary.as_dict()["daily_usage"]["current"] == 7
