"""
Image2Sheet Backend — Entitlement Service Tests
================================================

What:  Premium resolution, reconciliation, lazy expiry and purchases,
       against a real (SQLite) database.

What we test:
    ✅ A live subscription overrides a false cached flag
    ✅ reconcile persists drift once and is a no-op the second time
    ✅ Expired subscriptions flip to 'expired' and clear the flag together
    ✅ Cancelled subscriptions keep premium until their own end date
    ✅ Duplicate purchase tokens return the original subscription (owner only)
    ✅ An insert race on the token is reported as a duplicate
    ✅ Product id → end date mapping (calendar months, lifetime)
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.exc import SQLAlchemyError

from image2sheet.exceptions import (
    DatabaseError,
    DuplicateTokenError,
    NotFoundError,
    ValidationError,
)
from image2sheet.models import Subscription, User
from image2sheet.services.entitlement_service import (
    EntitlementService,
    add_months,
    compute_end_date,
)


@pytest.fixture
def service(clock):
    return EntitlementService(clock=clock)


@pytest.fixture
def add_subscription(db_session, clock):
    sequence = iter(range(1, 1000))

    async def _add(user, status="active", end_date=None, created_at=None, **overrides):
        n = next(sequence)
        subscription = Subscription(
            user_id=user.id,
            product_id=overrides.pop("product_id", "premium_monthly"),
            purchase_token=f"token-{n}",
            status=status,
            start_date=clock.now - timedelta(days=40),
            end_date=end_date,
            created_at=created_at or clock.now - timedelta(days=40) + timedelta(minutes=n),
            **overrides,
        )
        db_session.add(subscription)
        await db_session.commit()
        return subscription

    return _add


@pytest.fixture
def update_statements(db_engine):
    """Collects every UPDATE statement executed on the test engine."""
    statements = []

    def _record(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith("UPDATE"):
            statements.append(statement)

    event.listen(db_engine.sync_engine, "before_cursor_execute", _record)
    yield statements
    event.remove(db_engine.sync_engine, "before_cursor_execute", _record)


class TestResolveAndReconcile:
    @pytest.mark.asyncio
    async def test_live_subscription_without_end_date_resolves_premium(
        self, service, db_session, make_user, add_subscription
    ):
        user = await make_user(is_premium=False)
        await add_subscription(user, end_date=None)

        assert await service.resolve_current_premium(db_session, user.id) is True

    @pytest.mark.asyncio
    async def test_reconcile_persists_resolved_status(
        self, service, db_session, make_user, add_subscription, session_factory
    ):
        user = await make_user(is_premium=False)
        await add_subscription(user, end_date=None)

        assert await service.reconcile(db_session, user.id) is True
        await db_session.commit()

        async with session_factory() as session:
            assert await session.scalar(select(User.is_premium).where(User.id == user.id)) is True

    @pytest.mark.asyncio
    async def test_second_reconcile_writes_nothing(
        self, service, db_session, make_user, add_subscription, update_statements
    ):
        user = await make_user(is_premium=False)
        await add_subscription(user, end_date=None)

        await service.reconcile(db_session, user.id)
        assert len(update_statements) == 1

        await service.reconcile(db_session, user.id)
        assert len(update_statements) == 1

    @pytest.mark.asyncio
    async def test_cached_flag_without_subscriptions_is_kept(self, service, db_session, make_user):
        user = await make_user(is_premium=True)

        assert await service.resolve_current_premium(db_session, user.id) is True
        assert await service.reconcile(db_session, user.id) is True

    @pytest.mark.asyncio
    async def test_free_user_stays_free(self, service, db_session, make_user, update_statements):
        user = await make_user(is_premium=False)

        assert await service.reconcile(db_session, user.id) is False
        assert update_statements == []

    @pytest.mark.asyncio
    async def test_missing_user(self, service, db_session):
        with pytest.raises(NotFoundError):
            await service.resolve_current_premium(db_session, 999)
        with pytest.raises(NotFoundError):
            await service.reconcile(db_session, 999)

    @pytest.mark.asyncio
    async def test_reconcile_datastore_failure_is_database_error(self, service, mock_db_session):
        mock_db_session.scalars.side_effect = SQLAlchemyError("connection refused")

        with pytest.raises(DatabaseError):
            await service.reconcile(mock_db_session, 42)


class TestLazyExpiry:
    @pytest.mark.asyncio
    async def test_past_end_date_expires_and_clears_flag(
        self, service, clock, db_session, make_user, add_subscription
    ):
        user = await make_user(is_premium=True)
        subscription = await add_subscription(user, end_date=clock.now - timedelta(days=1))

        assert await service.reconcile(db_session, user.id) is False

        await db_session.refresh(subscription)
        await db_session.refresh(user)
        assert subscription.status == "expired"
        assert subscription.auto_renewing is False
        assert user.is_premium is False

    @pytest.mark.asyncio
    async def test_flag_kept_when_another_subscription_is_live(
        self, service, clock, db_session, make_user, add_subscription
    ):
        user = await make_user(is_premium=True)
        old = await add_subscription(user, end_date=clock.now - timedelta(days=1))
        await add_subscription(user, end_date=clock.now + timedelta(days=20))

        expired = await service.expire_stale_subscriptions(db_session, user.id)

        assert expired == 1
        await db_session.refresh(old)
        await db_session.refresh(user)
        assert old.status == "expired"
        assert user.is_premium is True

    @pytest.mark.asyncio
    async def test_cancelled_subscription_keeps_access_until_end_date(
        self, service, clock, db_session, make_user
    ):
        user = await make_user()
        await service.verify_purchase(db_session, user.id, "gpa-token-1", "premium_monthly")
        await service.cancel_subscription(db_session, user.id)

        clock.advance(days=10)
        assert await service.reconcile(db_session, user.id) is True

        clock.advance(days=30)
        assert await service.reconcile(db_session, user.id) is False
        subscriptions = await service.list_subscriptions(db_session, user.id)
        assert [s.status for s in subscriptions] == ["expired"]

    @pytest.mark.asyncio
    async def test_cancelled_subscription_in_paid_period_survives_sibling_expiry(
        self, service, clock, db_session, make_user
    ):
        user = await make_user()
        await service.verify_purchase(db_session, user.id, "gpa-monthly", "premium_monthly")
        await service.verify_purchase(db_session, user.id, "gpa-yearly", "premium_yearly")
        await service.cancel_subscription(db_session, user.id)

        clock.advance(days=40)
        assert await service.reconcile(db_session, user.id) is True

        await db_session.refresh(user)
        assert user.is_premium is True
        statuses = {s.product_id: s.status for s in await service.list_subscriptions(db_session, user.id)}
        assert statuses == {"premium_monthly": "expired", "premium_yearly": "cancelled"}


class TestPurchases:
    @pytest.mark.asyncio
    async def test_monthly_purchase_grants_premium(self, service, clock, db_session, make_user):
        user = await make_user()

        subscription = await service.verify_purchase(
            db_session, user.id, "gpa-token-1", "premium_monthly", order_id="GPA.1234"
        )

        assert subscription.status == "active"
        assert subscription.auto_renewing is True
        assert subscription.end_date == datetime(2026, 4, 10, 9, 0, tzinfo=timezone.utc)
        assert user.is_premium is True
        assert user.premium_expires_at == subscription.end_date

    @pytest.mark.asyncio
    async def test_lifetime_purchase_never_expires(self, service, db_session, make_user):
        user = await make_user()

        subscription = await service.verify_purchase(db_session, user.id, "gpa-token-2", "premium_lifetime")

        assert subscription.end_date is None
        assert subscription.auto_renewing is False

    @pytest.mark.asyncio
    async def test_duplicate_token_returns_original(self, service, clock, db_session, make_user):
        user = await make_user()
        original = await service.verify_purchase(db_session, user.id, "gpa-token-1", "premium_monthly")
        await db_session.commit()

        clock.advance(days=3)
        with pytest.raises(DuplicateTokenError) as exc_info:
            await service.verify_purchase(db_session, user.id, "gpa-token-1", "premium_yearly")

        assert exc_info.value.subscription.id == original.id
        count = await db_session.scalar(select(func.count()).select_from(Subscription))
        assert count == 1
        await db_session.refresh(user)
        assert user.premium_expires_at == original.end_date

    @pytest.mark.asyncio
    async def test_token_of_another_user_is_not_disclosed(self, service, db_session, make_user):
        owner = await make_user()
        other = await make_user()
        await service.verify_purchase(db_session, owner.id, "gpa-token-1", "premium_monthly")
        await db_session.commit()

        with pytest.raises(DuplicateTokenError) as exc_info:
            await service.verify_purchase(db_session, other.id, "gpa-token-1", "premium_monthly")

        assert exc_info.value.subscription is None
        await db_session.refresh(other)
        assert other.is_premium is False

    @pytest.mark.asyncio
    async def test_insert_race_is_reported_as_duplicate(self, service, db_session, make_user):
        first = await make_user()
        second = await make_user()
        await service.verify_purchase(db_session, first.id, "gpa-token-1", "premium_monthly")
        await db_session.commit()

        lookup = service._find_by_token
        calls = []

        async def miss_first_lookup(db, purchase_token):
            calls.append(purchase_token)
            if len(calls) == 1:
                return None
            return await lookup(db, purchase_token)

        with patch.object(service, "_find_by_token", miss_first_lookup):
            with pytest.raises(DuplicateTokenError):
                await service.verify_purchase(db_session, second.id, "gpa-token-1", "premium_yearly")

        assert len(calls) == 2
        count = await db_session.scalar(select(func.count()).select_from(Subscription))
        assert count == 1
        await db_session.refresh(second)
        assert second.is_premium is False

    @pytest.mark.asyncio
    async def test_missing_purchase_data(self, service, db_session, make_user):
        user = await make_user()
        with pytest.raises(ValidationError):
            await service.verify_purchase(db_session, user.id, "", "premium_monthly")

    @pytest.mark.asyncio
    async def test_purchase_for_missing_user(self, service, db_session):
        with pytest.raises(NotFoundError):
            await service.verify_purchase(db_session, 999, "gpa-token-1", "premium_monthly")


class TestSubscriptionQueries:
    @pytest.mark.asyncio
    async def test_current_subscription_after_sweep(
        self, service, clock, db_session, make_user, add_subscription
    ):
        user = await make_user(is_premium=True)
        await add_subscription(user, end_date=clock.now - timedelta(hours=1))

        subscription, is_premium = await service.get_current_subscription(db_session, user.id)

        assert subscription is None
        assert is_premium is False

    @pytest.mark.asyncio
    async def test_cancel_without_active_subscription(self, service, db_session, make_user):
        user = await make_user()
        with pytest.raises(NotFoundError):
            await service.cancel_subscription(db_session, user.id)

    @pytest.mark.asyncio
    async def test_cancel_stops_auto_renew(self, service, clock, db_session, make_user, add_subscription):
        user = await make_user(is_premium=True)
        await add_subscription(user, end_date=clock.now + timedelta(days=5))

        cancelled = await service.cancel_subscription(db_session, user.id)

        assert len(cancelled) == 1
        assert cancelled[0].status == "cancelled"
        assert cancelled[0].auto_renewing is False

    @pytest.mark.asyncio
    async def test_list_is_newest_first(self, service, clock, db_session, make_user, add_subscription):
        user = await make_user()
        older = await add_subscription(user, status="expired", created_at=clock.now - timedelta(days=60))
        newer = await add_subscription(user, created_at=clock.now - timedelta(days=1))

        subscriptions = await service.list_subscriptions(db_session, user.id)
        assert [s.id for s in subscriptions] == [newer.id, older.id]


class TestProductDurations:
    def test_month_end_is_clamped(self):
        assert add_months(datetime(2026, 1, 31, tzinfo=timezone.utc), 1) == datetime(2026, 2, 28, tzinfo=timezone.utc)
        assert add_months(datetime(2024, 1, 31, tzinfo=timezone.utc), 1) == datetime(2024, 2, 29, tzinfo=timezone.utc)

    def test_product_ids(self):
        start = datetime(2026, 3, 10, tzinfo=timezone.utc)
        assert compute_end_date("premium_monthly", start) == datetime(2026, 4, 10, tzinfo=timezone.utc)
        assert compute_end_date("premium_yearly", start) == datetime(2027, 3, 10, tzinfo=timezone.utc)
        assert compute_end_date("premium_lifetime", start) is None
        assert compute_end_date("promo_pack", start) == datetime(2026, 4, 10, tzinfo=timezone.utc)
