"""
Image2Sheet Backend — Usage Reporting
======================================

What:  Usage summary for the profile and usage endpoints.
How:   Runs the lazy subscription expiry sweep, resolves premium status
       through the entitlement service, then asks the user quota tracker
       for its window-corrected summary (never written). Premium users
       get the "unlimited" sentinel for limit and remaining.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from image2sheet.services.entitlement_service import EntitlementService, entitlement_service
from image2sheet.services.user_quota import UsageSummary, UserQuotaTracker, user_quota_tracker

logger = logging.getLogger(__name__)


class UsageService:
    def __init__(
        self,
        entitlements: EntitlementService = entitlement_service,
        quota: UserQuotaTracker = user_quota_tracker,
    ):
        self.entitlements = entitlements
        self.quota = quota

    async def get_usage(self, db: AsyncSession, user_id: int) -> UsageSummary:
        """
        Raises:
            NotFoundError: The user no longer exists
        """
        await self.entitlements.expire_stale_subscriptions(db, user_id)
        is_premium = await self.entitlements.resolve_current_premium(db, user_id)
        summary = await self.quota.get_usage_summary(db, user_id, is_premium)
        logger.debug(
            "Usage for user %s: %s/%s (premium=%s)",
            user_id,
            summary.current,
            summary.limit,
            is_premium,
        )
        return summary


usage_service = UsageService()
