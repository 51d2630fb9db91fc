"""
Image2Sheet Backend — Billing Routes
=====================================

Endpoints:
    POST /api/billing/verify-purchase → record a store purchase, grant premium
    GET  /api/billing/subscription    → current subscription + premium status
    POST /api/billing/cancel          → stop auto-renew (access lasts until end date)
    GET  /api/billing/history         → every subscription, newest first

A replayed purchase token is answered with 409 and the subscription that
was originally recorded for it (details.subscription), so a client can
retry its billing flow safely.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from image2sheet.database import get_db_session
from image2sheet.middleware.auth import CurrentUser, get_current_user
from image2sheet.schemas.billing import (
    SubscriptionEnvelope,
    SubscriptionHistoryResponse,
    SubscriptionResponse,
    VerifyPurchaseRequest,
)
from image2sheet.schemas.common import ErrorResponse
from image2sheet.services.entitlement_service import entitlement_service

router = APIRouter(prefix="/api/billing", tags=["Billing"])


@router.post(
    "/verify-purchase",
    response_model=SubscriptionEnvelope,
    responses={409: {"description": "Purchase token already recorded", "model": ErrorResponse}},
    summary="Verify a purchase and activate premium",
)
async def verify_purchase(
    body: VerifyPurchaseRequest,
    current: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> SubscriptionEnvelope:
    subscription = await entitlement_service.verify_purchase(
        db,
        current.id,
        purchase_token=body.purchase_token,
        product_id=body.product_id,
        order_id=body.order_id,
    )
    return SubscriptionEnvelope(
        message="Premium subscription activated",
        subscription=SubscriptionResponse.model_validate(subscription),
        is_premium=True,
    )


@router.get("/subscription", response_model=SubscriptionEnvelope, summary="Current subscription")
async def get_subscription(
    current: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> SubscriptionEnvelope:
    subscription, is_premium = await entitlement_service.get_current_subscription(db, current.id)
    return SubscriptionEnvelope(
        subscription=SubscriptionResponse.model_validate(subscription) if subscription else None,
        is_premium=is_premium,
    )


@router.post(
    "/cancel",
    response_model=SubscriptionEnvelope,
    responses={404: {"description": "No active subscription", "model": ErrorResponse}},
    summary="Cancel the active subscription",
)
async def cancel_subscription(
    current: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> SubscriptionEnvelope:
    cancelled = await entitlement_service.cancel_subscription(db, current.id)
    return SubscriptionEnvelope(
        message="Subscription cancelled. Premium access continues until the end date.",
        subscription=SubscriptionResponse.model_validate(cancelled[0]),
    )


@router.get("/history", response_model=SubscriptionHistoryResponse, summary="Subscription history")
async def subscription_history(
    current: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> SubscriptionHistoryResponse:
    subscriptions = await entitlement_service.list_subscriptions(db, current.id)
    return SubscriptionHistoryResponse(
        subscriptions=[SubscriptionResponse.model_validate(s) for s in subscriptions]
    )
