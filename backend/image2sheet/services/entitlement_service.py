"""
Image2Sheet Backend — Entitlement Service
==========================================

What:  Premium status resolution, reconciliation and subscription lifecycle.
How:   The `subscriptions` table is the source of truth; `users.is_premium`
       is a cache of it. Reads go through `resolve_current_premium`
       (read-only) and authenticated touchpoints call `reconcile`, which
       sweeps expired subscriptions and writes the cache only on drift.
Who:   Auth flow (every sign-in / verify), extraction admission, usage
       reporting, history retention and the billing routes.

Resolution rule:
    premium = any live subscription  OR  users.is_premium
    where live = status 'active' AND (end_date IS NULL OR end_date > now).
    The cache can keep a user premium with no subscription rows at all
    (administrative grants); it is cleared only by the expiry sweep.

Expiry sweep (lazy, on read):
    Subscriptions still marked active (or cancelled, which keeps access
    until the end date) whose end_date has passed become 'expired', and
    the user's cached flag is set to whether any entitled subscription
    remains: active or cancelled, with end_date NULL or in the future.
    Both writes share one SAVEPOINT.

Product durations:
    product id containing 'monthly'  → +1 month
    product id containing 'yearly'   → +1 year
    product id containing 'lifetime' → no end date, not auto-renewing
    anything else                    → +1 month
"""

import calendar
import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy import exists, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from image2sheet.database import atomic, utcnow
from image2sheet.exceptions import (
    DatabaseError,
    DuplicateTokenError,
    NotFoundError,
    ValidationError,
)
from image2sheet.models.subscription import Subscription, SubscriptionStatus
from image2sheet.models.user import User

logger = logging.getLogger(__name__)

ACTIVE = SubscriptionStatus.ACTIVE.value
CANCELLED = SubscriptionStatus.CANCELLED.value
EXPIRED = SubscriptionStatus.EXPIRED.value


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day (Jan 31 + 1 month → Feb 28/29)."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def compute_end_date(product_id: str, start: datetime) -> Optional[datetime]:
    """Subscription end date for a product id; None means non-expiring."""
    if "monthly" in product_id:
        return add_months(start, 1)
    if "yearly" in product_id:
        return add_months(start, 12)
    if "lifetime" in product_id:
        return None
    return add_months(start, 1)


class EntitlementService:
    """
    Premium entitlement resolver and subscription manager.

    Args:
        clock: Returns the current aware UTC datetime (overridden in tests)
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    # ── Resolution ────────────────────────────────────────────────────────

    async def _has_live_subscription(
        self,
        db: AsyncSession,
        user_id: int,
        now: datetime,
        statuses: Tuple[str, ...] = (ACTIVE,),
    ) -> bool:
        live = await db.scalar(
            select(
                exists().where(
                    Subscription.user_id == user_id,
                    Subscription.status.in_(statuses),
                    or_(Subscription.end_date.is_(None), Subscription.end_date > now),
                )
            )
        )
        return bool(live)

    async def _has_entitled_subscription(
        self, db: AsyncSession, user_id: int, now: datetime
    ) -> bool:
        # Cancelled rows keep access until their end date
        return await self._has_live_subscription(db, user_id, now, statuses=(ACTIVE, CANCELLED))

    async def resolve_current_premium(self, db: AsyncSession, user_id: int) -> bool:
        """
        Effective premium status: any live subscription, else the cached flag.

        Read-only. Does not run the expiry sweep, so a stale cached flag is
        reported until the next `reconcile`.

        Raises:
            NotFoundError: The user does not exist
        """
        cached = await db.scalar(select(User.is_premium).where(User.id == user_id))
        if cached is None:
            raise NotFoundError("user", str(user_id))

        if await self._has_live_subscription(db, user_id, self.clock()):
            return True
        return bool(cached)

    async def expire_stale_subscriptions(self, db: AsyncSession, user_id: int) -> int:
        """
        Mark the user's past-end-date subscriptions expired and fix the cached flag.

        Returns:
            Number of subscriptions transitioned to 'expired'
        """
        now = self.clock()
        async with atomic(db):
            result = await db.scalars(
                select(Subscription).where(
                    Subscription.user_id == user_id,
                    Subscription.status.in_([ACTIVE, CANCELLED]),
                    Subscription.end_date.is_not(None),
                    Subscription.end_date <= now,
                )
            )
            stale = result.all()
            if not stale:
                return 0

            for subscription in stale:
                subscription.status = EXPIRED
                subscription.auto_renewing = False
            await db.flush()

            still_live = await self._has_entitled_subscription(db, user_id, now)
            user = await db.get(User, user_id)
            if user is not None and user.is_premium != still_live:
                user.is_premium = still_live

        logger.info(
            "Expired %d subscription(s) for user %s (still premium: %s)",
            len(stale),
            user_id,
            still_live,
        )
        return len(stale)

    async def reconcile(self, db: AsyncSession, user_id: int) -> bool:
        """
        Sweep expired subscriptions, resolve premium status, and persist
        the cached flag only if it drifted.

        Idempotent: a second call with no subscription change writes nothing.

        Returns:
            The resolved premium status

        Raises:
            NotFoundError: The user does not exist
            DatabaseError: Any datastore failure (stale entitlement must not pass silently)
        """
        try:
            async with atomic(db):
                await self.expire_stale_subscriptions(db, user_id)

                user = await db.get(User, user_id)
                if user is None:
                    raise NotFoundError("user", str(user_id))

                live = await self._has_live_subscription(db, user_id, self.clock())
                resolved = live or user.is_premium

                if user.is_premium != resolved:
                    user.is_premium = resolved
                    logger.info("Premium cache corrected for user %s → %s", user_id, resolved)

            return resolved
        except SQLAlchemyError as e:
            logger.error("Entitlement reconciliation failed for user %s: %s", user_id, str(e), exc_info=True)
            raise DatabaseError("Failed to verify premium status")

    # ── Purchases ─────────────────────────────────────────────────────────

    async def _find_by_token(self, db: AsyncSession, purchase_token: str) -> Optional[Subscription]:
        return await db.scalar(
            select(Subscription).where(Subscription.purchase_token == purchase_token)
        )

    def _duplicate(
        self, db: AsyncSession, existing: Optional[Subscription], user_id: int
    ) -> DuplicateTokenError:
        if existing is None:
            return DuplicateTokenError()
        if existing.user_id != user_id:
            # Another account's purchase record is never returned
            logger.warning(
                "Purchase token of user %s replayed by user %s", existing.user_id, user_id
            )
            return DuplicateTokenError()
        # Detached: the error handler reads it after the request session has rolled back
        db.expunge(existing)
        return DuplicateTokenError(subscription=existing)

    async def verify_purchase(
        self,
        db: AsyncSession,
        user_id: int,
        purchase_token: str,
        product_id: str,
        order_id: Optional[str] = None,
    ) -> Subscription:
        """
        Record a purchase and grant premium, atomically.

        A replayed token is never applied twice: the originally recorded
        subscription is returned inside DuplicateTokenError instead, but
        only to the user who owns it.

        Raises:
            ValidationError: Missing token or product id
            DuplicateTokenError: Token already recorded (also on an insert race)
            NotFoundError: The user does not exist
            DatabaseError: Any other datastore failure
        """
        if not purchase_token or not product_id:
            raise ValidationError("purchase_token and product_id are required")

        existing = await self._find_by_token(db, purchase_token)
        if existing is not None:
            logger.warning("Duplicate purchase token submitted by user %s", user_id)
            raise self._duplicate(db, existing, user_id)

        user = await db.get(User, user_id)
        if user is None:
            raise NotFoundError("user", str(user_id))

        start = self.clock()
        end_date = compute_end_date(product_id, start)
        subscription = Subscription(
            user_id=user_id,
            product_id=product_id,
            purchase_token=purchase_token,
            order_id=order_id,
            status=ACTIVE,
            start_date=start,
            end_date=end_date,
            auto_renewing="lifetime" not in product_id,
        )

        try:
            async with atomic(db):
                db.add(subscription)
                user.is_premium = True
                user.premium_expires_at = end_date
                await db.flush()
        except IntegrityError:
            # Another request recorded the same token between the check and the insert
            existing = await self._find_by_token(db, purchase_token)
            raise self._duplicate(db, existing, user_id)
        except SQLAlchemyError as e:
            logger.error("Failed to record purchase for user %s: %s", user_id, str(e), exc_info=True)
            raise DatabaseError("Failed to record purchase")

        logger.info(
            "Premium subscription activated for user %s: product=%s, ends=%s",
            user_id,
            product_id,
            end_date.isoformat() if end_date else "never",
        )
        return subscription

    # ── Queries & Cancellation ────────────────────────────────────────────

    async def get_current_subscription(
        self, db: AsyncSession, user_id: int
    ) -> Tuple[Optional[Subscription], bool]:
        """
        Latest active subscription (after the expiry sweep) and the resolved
        premium status.
        """
        await self.expire_stale_subscriptions(db, user_id)

        subscription = await db.scalar(
            select(Subscription)
            .where(Subscription.user_id == user_id, Subscription.status == ACTIVE)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .limit(1)
        )
        is_premium = await self.resolve_current_premium(db, user_id)
        return subscription, is_premium

    async def cancel_subscription(self, db: AsyncSession, user_id: int) -> List[Subscription]:
        """
        Cancel every active subscription of the user.

        Auto-renew is switched off; premium access continues until end_date.

        Raises:
            NotFoundError: The user has no active subscription
        """
        result = await db.scalars(
            select(Subscription)
            .where(Subscription.user_id == user_id, Subscription.status == ACTIVE)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        )
        active = result.all()
        if not active:
            raise NotFoundError("active subscription")

        for subscription in active:
            subscription.status = CANCELLED
            subscription.auto_renewing = False
        await db.flush()

        logger.info("Cancelled %d subscription(s) for user %s", len(active), user_id)
        return list(active)

    async def list_subscriptions(self, db: AsyncSession, user_id: int) -> List[Subscription]:
        """All of the user's subscriptions, newest first."""
        result = await db.scalars(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        )
        return list(result.all())


# ── Singleton Instance ────────────────────────────────────────────────────
entitlement_service = EntitlementService()
