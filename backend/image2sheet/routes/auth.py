"""
Image2Sheet Backend — Authentication Routes
============================================

What:  Sign-in with Google / Firebase, session verification and logout.

Endpoints:
    POST /api/auth/google  → {credential} → application JWT + profile
    POST /api/auth/verify  → reload the profile for a bearer token
    POST /api/auth/logout  → acknowledgement (tokens are stateless)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from image2sheet.database import get_db_session
from image2sheet.middleware.auth import CurrentUser, get_current_user, get_optional_user
from image2sheet.models.user import User
from image2sheet.schemas.auth import GoogleLoginRequest, LoginResponse
from image2sheet.schemas.common import ErrorResponse, MessageResponse
from image2sheet.schemas.user import UserEnvelope, UserResponse
from image2sheet.services.auth_service import auth_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Auth"])


def user_response(user: User, is_premium: bool) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        picture=user.picture_url,
        is_premium=is_premium,
        created_at=user.created_at,
    )


@router.post(
    "/google",
    response_model=LoginResponse,
    responses={
        401: {"description": "Credential rejected", "model": ErrorResponse},
        503: {"description": "Identity verifier unreachable", "model": ErrorResponse},
    },
    summary="Sign in with a Google or Firebase ID token",
)
async def login_with_google(
    body: GoogleLoginRequest,
    db: AsyncSession = Depends(get_db_session),
) -> LoginResponse:
    token, user, is_premium = await auth_service.login_with_google(db, body.credential)
    return LoginResponse(token=token, user=user_response(user, is_premium))


@router.post(
    "/verify",
    response_model=UserEnvelope,
    responses={
        401: {"description": "Missing or invalid token", "model": ErrorResponse},
        404: {"description": "User no longer exists", "model": ErrorResponse},
    },
    summary="Verify a bearer token and return the current profile",
)
async def verify_session(
    current: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> UserEnvelope:
    user, is_premium = await auth_service.verify_session(db, current.id)
    return UserEnvelope(user=user_response(user, is_premium))


@router.post(
    "/logout",
    response_model=MessageResponse,
    summary="Log out",
    description="Tokens are stateless; the client discards its token. Always succeeds.",
)
async def logout(current: Optional[CurrentUser] = Depends(get_optional_user)) -> MessageResponse:
    if current is not None:
        logger.info("User %s logged out", current.id)
    return MessageResponse(message="Logged out successfully")
