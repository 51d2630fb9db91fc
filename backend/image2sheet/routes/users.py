"""
Image2Sheet Backend — User Routes
==================================

Endpoints:
    GET    /api/users/me     → profile, resolved premium status and usage
    GET    /api/users/usage  → usage summary only
    PATCH  /api/users/me     → rename
    DELETE /api/users/me     → delete the account (history and subscriptions cascade)
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from image2sheet.database import get_db_session
from image2sheet.middleware.auth import CurrentUser, get_current_user
from image2sheet.routes.auth import user_response
from image2sheet.schemas.common import ErrorResponse, MessageResponse
from image2sheet.schemas.user import (
    ProfileResponse,
    UpdateProfileRequest,
    UsageEnvelope,
    UsageResponse,
    UserEnvelope,
)
from image2sheet.services.entitlement_service import entitlement_service
from image2sheet.services.usage_service import usage_service
from image2sheet.services.user_quota import UsageSummary
from image2sheet.services.user_service import user_service

router = APIRouter(prefix="/api/users", tags=["Users"])

NOT_FOUND = {404: {"description": "User no longer exists", "model": ErrorResponse}}


def usage_response(summary: UsageSummary) -> UsageResponse:
    return UsageResponse.model_validate(summary.as_dict())


@router.get("/me", response_model=ProfileResponse, responses=NOT_FOUND, summary="Current user profile")
async def get_me(
    current: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> ProfileResponse:
    profile = await user_service.get_profile(db, current.id)
    return ProfileResponse(
        user=user_response(profile.user, profile.is_premium),
        premium_expires_at=profile.premium_expires_at,
        total_extractions=profile.usage.total_extractions,
        usage=usage_response(profile.usage),
    )


@router.get("/usage", response_model=UsageEnvelope, responses=NOT_FOUND, summary="Daily usage summary")
async def get_usage(
    current: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> UsageEnvelope:
    summary = await usage_service.get_usage(db, current.id)
    return UsageEnvelope(usage=usage_response(summary))


@router.patch("/me", response_model=UserEnvelope, responses=NOT_FOUND, summary="Update profile")
async def update_me(
    body: UpdateProfileRequest,
    current: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> UserEnvelope:
    user = await user_service.update_profile(db, current.id, body.name)
    is_premium = await entitlement_service.resolve_current_premium(db, current.id)
    return UserEnvelope(message="Profile updated", user=user_response(user, is_premium))


@router.delete("/me", response_model=MessageResponse, responses=NOT_FOUND, summary="Delete account")
async def delete_me(
    current: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> MessageResponse:
    await user_service.delete_account(db, current.id)
    return MessageResponse(message="Account deleted")
