"""
Image2Sheet Backend — User Profile Service
==========================================

What:  Profile read / rename / account deletion for the signed-in user.
Who:   The /api/users routes.

Deleting a user cascades to their subscriptions and extraction history
(ON DELETE CASCADE on both foreign keys).
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from image2sheet.exceptions import NotFoundError, ValidationError
from image2sheet.models.subscription import Subscription, SubscriptionStatus
from image2sheet.models.user import User
from image2sheet.services.usage_service import UsageService, usage_service
from image2sheet.services.user_quota import UsageSummary

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 255


@dataclass
class UserProfile:
    user: User
    is_premium: bool
    premium_expires_at: Optional[datetime]
    usage: UsageSummary


class UserService:
    def __init__(self, usage: UsageService = usage_service):
        self.usage = usage

    async def _get_user(self, db: AsyncSession, user_id: int) -> User:
        user = await db.get(User, user_id)
        if user is None:
            raise NotFoundError("user", str(user_id))
        return user

    async def get_profile(self, db: AsyncSession, user_id: int) -> UserProfile:
        """
        Profile with resolved premium status and current usage.

        premium_expires_at is the end date of the latest active subscription,
        falling back to the cached column when there is none.
        """
        user = await self._get_user(db, user_id)
        summary = await self.usage.get_usage(db, user_id)

        latest_active = await db.scalar(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            )
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .limit(1)
        )
        expires_at = latest_active.end_date if latest_active else user.premium_expires_at

        return UserProfile(
            user=user,
            is_premium=summary.is_premium,
            premium_expires_at=expires_at,
            usage=summary,
        )

    async def update_profile(self, db: AsyncSession, user_id: int, name: str) -> User:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Name is required", field="name")
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"Name must be at most {MAX_NAME_LENGTH} characters", field="name")

        user = await self._get_user(db, user_id)
        user.name = name
        await db.flush()
        logger.info("User %s updated their name", user_id)
        return user

    async def delete_account(self, db: AsyncSession, user_id: int) -> None:
        user = await self._get_user(db, user_id)
        email = user.email
        await db.delete(user)
        await db.flush()
        logger.info("User account deleted: %s", email)


user_service = UserService()
