"""
Image2Sheet Backend — Billing Schemas
======================================

What:  Purchase verification and subscription payloads for /api/billing.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class VerifyPurchaseRequest(BaseModel):
    purchase_token: str = Field(min_length=1, description="Store purchase token (globally unique)")
    product_id: str = Field(
        min_length=1,
        description="Product id; 'monthly', 'yearly' or 'lifetime' in the id selects the duration",
    )
    order_id: Optional[str] = None


class SubscriptionResponse(BaseModel):
    id: int
    product_id: str
    status: str
    start_date: datetime
    end_date: Optional[datetime] = Field(default=None, description="Null for lifetime purchases")
    auto_renewing: bool
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SubscriptionEnvelope(BaseModel):
    success: bool = True
    message: Optional[str] = None
    subscription: Optional[SubscriptionResponse] = None
    is_premium: Optional[bool] = None


class SubscriptionHistoryResponse(BaseModel):
    success: bool = True
    subscriptions: List[SubscriptionResponse]
