"""
Image2Sheet Backend — Authentication Schemas
=============================================
"""

from pydantic import BaseModel, Field

from image2sheet.schemas.user import UserResponse


class GoogleLoginRequest(BaseModel):
    credential: str = Field(
        min_length=1,
        description="Firebase ID token (mobile) or Google OAuth ID token (web)",
    )


class LoginResponse(BaseModel):
    success: bool = True
    message: str = "Authentication successful"
    token: str = Field(description="Application bearer token (JWT)")
    user: UserResponse
