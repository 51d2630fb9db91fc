"""
Image2Sheet Backend — User Quota Tracker
=========================================

What:  Daily extraction quota for authenticated free-tier users.
How:   The counter lives on the `users` row (daily_extractions_count,
       last_extraction_reset). Admission applies the window reset and
       COMMITS it before deciding; the increment is a single atomic
       `count = count + 1` UPDATE inside a savepoint.
Who:   ExtractionService (admission + increment) and UsageService (summary).

Failure policy:
    check_and_admit   fail CLOSED: datastore errors become a 503, never "allow"
    increment         fail OPEN:   errors are logged; the extraction stands
    get_usage_summary read-only:   the window correction is computed, not written

Concurrency:
    Two simultaneous requests from the same free user can both pass the
    admission check before either increments (read-check-then-increment).
    This is accepted; the increment itself never loses an update.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from image2sheet.config import settings
from image2sheet.database import atomic, utcnow
from image2sheet.exceptions import NotFoundError, UpstreamUnavailableError
from image2sheet.models.extraction import Extraction
from image2sheet.models.user import User
from image2sheet.services.quota_window import (
    UNLIMITED,
    QuotaDecision,
    WindowState,
    advance_window,
    decide,
    effective_count,
    hours_until_reset,
)

logger = logging.getLogger(__name__)

DAILY_LIMIT_REASON = "DAILY_LIMIT_REACHED"


@dataclass
class UsageSummary:
    """Read-only usage projection returned by the usage endpoints."""

    is_premium: bool
    current: int
    limit: Union[int, str]
    remaining: Union[int, str]
    hours_until_reset: int
    total_extractions: int
    last_reset: Optional[datetime] = None
    premium_expires_at: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "is_premium": self.is_premium,
            "daily_usage": {
                "current": self.current,
                "limit": self.limit,
                "remaining": self.remaining,
                "hours_until_reset": self.hours_until_reset,
            },
            "total_extractions": self.total_extractions,
            "last_reset": self.last_reset,
            "premium_expires_at": self.premium_expires_at,
        }


class UserQuotaTracker:
    """
    Persisted per-user daily counter with reset-on-read semantics.

    Args:
        limit: Free-tier extractions per window (default: settings.free_daily_extractions)
        window: Window length (default: settings.quota_window_hours)
        clock: Returns the current aware UTC datetime (overridden in tests)
    """

    def __init__(
        self,
        limit: Optional[int] = None,
        window: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.limit = limit if limit is not None else settings.free_daily_extractions
        self.window = window or timedelta(hours=settings.quota_window_hours)
        self.clock = clock

    async def _load_window(self, db: AsyncSession, user_id: int) -> WindowState:
        result = await db.execute(
            select(User.daily_extractions_count, User.last_extraction_reset).where(
                User.id == user_id
            )
        )
        row = result.one_or_none()
        if row is None:
            raise NotFoundError("user", str(user_id))
        return WindowState(count=row.daily_extractions_count, window_start=row.last_extraction_reset)

    async def check_and_admit(
        self, db: AsyncSession, user_id: int, is_premium: bool
    ) -> QuotaDecision:
        """
        Decide whether the user may run one more extraction.

        If the stored window has elapsed, the reset (count=0, window=now) is
        written and committed BEFORE the limit is evaluated.

        Raises:
            NotFoundError: The user row does not exist
            UpstreamUnavailableError: The datastore failed (admission fails closed)
        """
        if is_premium:
            return QuotaDecision.unlimited()

        now = self.clock()
        try:
            state = await self._load_window(db, user_id)
            state, was_reset = advance_window(state, now, self.window)

            if was_reset:
                await db.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(daily_extractions_count=0, last_extraction_reset=now)
                )
                await db.commit()
                logger.info("Daily quota window reset for user %s", user_id)
        except SQLAlchemyError as e:
            logger.error("Quota check failed for user %s: %s", user_id, str(e), exc_info=True)
            raise UpstreamUnavailableError(
                message="Unable to verify your usage quota right now. Please try again.",
                service="database",
            )

        decision = decide(state, now, self.window, self.limit, DAILY_LIMIT_REASON)
        if not decision.allowed:
            logger.info(
                "Daily quota exhausted for user %s: %d/%d, resets in %dh",
                user_id,
                decision.current,
                self.limit,
                decision.hours_until_reset,
            )
        return decision

    async def increment(self, db: AsyncSession, user_id: int, is_premium: bool) -> None:
        """
        Count one successful extraction for a free user.

        Runs in its own savepoint so a failure leaves the request
        transaction usable. Never raises.
        """
        if is_premium:
            return

        try:
            async with atomic(db):
                await db.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(daily_extractions_count=User.daily_extractions_count + 1)
                )
        except Exception as e:
            logger.error(
                "Failed to increment daily quota for user %s: %s",
                user_id,
                str(e),
                exc_info=True,
            )

    async def get_usage_summary(
        self, db: AsyncSession, user_id: int, is_premium: bool
    ) -> UsageSummary:
        """
        Usage as of now, with the window correction applied but never persisted.

        Raises:
            NotFoundError: The user row does not exist
        """
        now = self.clock()
        user = await db.get(User, user_id, populate_existing=True)
        if user is None:
            raise NotFoundError("user", str(user_id))

        state = WindowState(
            count=user.daily_extractions_count,
            window_start=user.last_extraction_reset,
        )
        current = effective_count(state, now, self.window)

        total = await db.scalar(
            select(func.count()).select_from(Extraction).where(Extraction.user_id == user_id)
        )

        if is_premium:
            limit: Union[int, str] = UNLIMITED
            remaining: Union[int, str] = UNLIMITED
        else:
            limit = self.limit
            remaining = max(0, self.limit - current)

        return UsageSummary(
            is_premium=is_premium,
            current=current,
            limit=limit,
            remaining=remaining,
            hours_until_reset=hours_until_reset(state, now, self.window),
            total_extractions=total or 0,
            last_reset=user.last_extraction_reset,
            premium_expires_at=user.premium_expires_at,
        )


# ── Singleton Instance ────────────────────────────────────────────────────
user_quota_tracker = UserQuotaTracker()
