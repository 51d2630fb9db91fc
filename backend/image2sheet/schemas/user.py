"""
Image2Sheet Backend — User & Usage Schemas
===========================================

What:  Profile and usage payloads for /api/auth and /api/users.
"""

from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, Field


class UserResponse(BaseModel):
    """Public view of a user; `is_premium` is always the resolved value."""
    id: int
    email: str
    name: Optional[str] = None
    picture: Optional[str] = Field(default=None, description="Profile picture URL")
    is_premium: bool
    created_at: Optional[datetime] = None


class DailyUsage(BaseModel):
    current: int = Field(description="Extractions counted in the current window")
    limit: Union[int, str] = Field(description='Daily limit, or "unlimited" for premium')
    remaining: Union[int, str] = Field(description='Extractions left, or "unlimited"')
    hours_until_reset: int = Field(description="Whole hours (rounded up) until the window resets")


class UsageResponse(BaseModel):
    """
    Read-only usage summary.

    Example (free user, 2 of 5 used):
        {"is_premium": false,
         "daily_usage": {"current": 2, "limit": 5, "remaining": 3, "hours_until_reset": 14},
         "total_extractions": 41, "last_reset": "...", "premium_expires_at": null}
    """
    is_premium: bool
    daily_usage: DailyUsage
    total_extractions: int
    last_reset: Optional[datetime] = None
    premium_expires_at: Optional[datetime] = None


class UsageEnvelope(BaseModel):
    success: bool = True
    usage: UsageResponse


class ProfileResponse(BaseModel):
    success: bool = True
    user: UserResponse
    premium_expires_at: Optional[datetime] = None
    total_extractions: int
    usage: UsageResponse


class UpdateProfileRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class UserEnvelope(BaseModel):
    success: bool = True
    message: Optional[str] = None
    user: UserResponse
