"""
Image2Sheet Backend — Bearer Token Dependencies
================================================

What:  FastAPI dependencies that turn an `Authorization: Bearer <jwt>`
       header into the calling user's identity.
How:   HTTPBearer(auto_error=False) extracts the token; AuthService
       validates it. Failures raise AuthenticationError, which the global
       handler renders as 401 with `WWW-Authenticate: Bearer`.

Usage:
    @router.get("/protected")
    async def handler(user: CurrentUser = Depends(get_current_user)):
        ...
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from image2sheet.exceptions import AuthenticationError
from image2sheet.services.auth_service import auth_service

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    """
    Identity carried by a valid token.

    `token_is_premium` is the status at issue time only; handlers that
    need premium status resolve it from the database.
    """

    id: int
    email: str
    token_is_premium: bool = False


def _user_from_token(token: str) -> CurrentUser:
    claims = auth_service.decode_token(token)
    return CurrentUser(
        id=claims["user_id"],
        email=claims.get("email", ""),
        token_is_premium=bool(claims.get("is_premium", False)),
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> CurrentUser:
    """Requires a valid application token."""
    if credentials is None:
        raise AuthenticationError("Authentication token required")
    return _user_from_token(credentials.credentials)


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[CurrentUser]:
    """The caller's identity if a valid token is presented, else None."""
    if credentials is None:
        return None
    try:
        return _user_from_token(credentials.credentials)
    except AuthenticationError:
        return None
