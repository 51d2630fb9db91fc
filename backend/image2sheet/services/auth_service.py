"""
Image2Sheet Backend — Authentication Service
=============================================

What:  Exchanges a Google / Firebase ID token for an application JWT.
How:   1. Verify the credential (Firebase ID token first, then a Google
          OAuth ID token) with google-auth, off the event loop
       2. Find-or-create the user by its stable external id, refreshing
          name and picture for returning users
       3. Reconcile premium entitlement
       4. Sign an HS256 JWT (python-jose) with sub, email, is_premium, exp
Who:   The /api/auth routes and the bearer-token dependencies.

Token claims:
    sub         user id as a string (RFC 7519 StringOrURI)
    email       user email
    is_premium  premium status at issue time (informational only; every
                quota decision re-resolves entitlement from the database)
    exp         issue time + jwt_expires_days (default 7)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from google.auth import exceptions as google_auth_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from image2sheet.config import settings
from image2sheet.database import utcnow
from image2sheet.exceptions import (
    AuthenticationError,
    DatabaseError,
    InvalidCredentialError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationError,
)
from image2sheet.models.user import User
from image2sheet.services.entitlement_service import EntitlementService, entitlement_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedIdentity:
    """What the identity verifier vouches for."""

    external_id: str
    email: str
    name: Optional[str]
    picture_url: Optional[str]
    email_verified: bool


def _identity_from_claims(claims: Dict[str, Any]) -> VerifiedIdentity:
    email = claims.get("email")
    if not claims.get("sub") or not email:
        raise InvalidCredentialError("Credential is missing the subject or email claim")
    return VerifiedIdentity(
        external_id=claims.get("user_id") or claims["sub"],
        email=email,
        name=claims.get("name") or email.split("@")[0],
        picture_url=claims.get("picture"),
        email_verified=bool(claims.get("email_verified", False)),
    )


class AuthService:
    """
    Identity verification, JWT issuance and the sign-in / verify flows.

    Args:
        entitlements: Resolver used to reconcile premium status at sign-in
        clock: Returns the current aware UTC datetime (overridden in tests)
    """

    def __init__(
        self,
        entitlements: EntitlementService = entitlement_service,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.entitlements = entitlements
        self.clock = clock
        self._transport = google_requests.Request()

    # ── Identity Verification ─────────────────────────────────────────────

    def _verify_firebase(self, credential: str) -> Dict[str, Any]:
        return id_token.verify_firebase_token(
            credential, self._transport, audience=settings.firebase_project_id
        )

    def _verify_google(self, credential: str) -> Dict[str, Any]:
        return id_token.verify_oauth2_token(
            credential, self._transport, audience=settings.google_client_id or None
        )

    async def verify_identity(self, credential: str) -> VerifiedIdentity:
        """
        Verify an opaque sign-in credential.

        Tries a Firebase ID token (mobile app) first, then a Google OAuth
        ID token (web).

        Raises:
            InvalidCredentialError: Neither verifier accepts the token
            UpstreamUnavailableError: Google's signing certificates could not be fetched
        """
        if not credential:
            raise ValidationError("Google credential is required", field="credential")

        errors = []
        for kind, verifier in (("firebase", self._verify_firebase), ("google", self._verify_google)):
            try:
                claims = await run_in_threadpool(verifier, credential)
            except google_auth_exceptions.TransportError as e:
                logger.error("Could not fetch %s signing certificates: %s", kind, str(e))
                raise UpstreamUnavailableError(
                    message="Sign-in is temporarily unavailable. Please try again.",
                    service="identity",
                )
            except (ValueError, google_auth_exceptions.GoogleAuthError) as e:
                errors.append(f"{kind}: {e}")
                continue

            logger.info("Verified %s identity token", kind)
            return _identity_from_claims(claims)

        logger.warning("Credential rejected by every verifier: %s", "; ".join(errors))
        raise InvalidCredentialError()

    # ── Application Tokens ────────────────────────────────────────────────

    def issue_token(self, user: User, is_premium: bool) -> str:
        expires = self.clock() + timedelta(days=settings.jwt_expires_days)
        claims = {
            "sub": str(user.id),
            "email": user.email,
            "is_premium": is_premium,
            "exp": expires,
        }
        return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)

    def decode_token(self, token: str) -> Dict[str, Any]:
        """
        Validate an application JWT and return its claims.

        Raises:
            AuthenticationError: Expired, tampered, or missing a numeric subject
        """
        try:
            claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        except ExpiredSignatureError:
            raise AuthenticationError("Token has expired")
        except JWTError:
            raise AuthenticationError("Invalid or expired token")

        try:
            claims["user_id"] = int(claims["sub"])
        except (KeyError, TypeError, ValueError):
            raise AuthenticationError("Invalid token subject")
        return claims

    # ── Flows ─────────────────────────────────────────────────────────────

    async def _upsert_user(self, db: AsyncSession, identity: VerifiedIdentity) -> User:
        user = await db.scalar(select(User).where(User.google_id == identity.external_id))
        if user is None:
            user = User(
                google_id=identity.external_id,
                email=identity.email,
                name=identity.name,
                picture_url=identity.picture_url,
                last_extraction_reset=self.clock(),
            )
            db.add(user)
            await db.flush()
            logger.info("New user created: %s", user.email)
        else:
            user.name = identity.name
            user.picture_url = identity.picture_url
            await db.flush()
            logger.info("Returning user signed in: %s", user.email)
        return user

    async def login_with_google(
        self, db: AsyncSession, credential: str
    ) -> Tuple[str, User, bool]:
        """
        Returns:
            (application JWT, user, resolved premium status)
        """
        identity = await self.verify_identity(credential)
        try:
            user = await self._upsert_user(db, identity)
        except SQLAlchemyError as e:
            logger.error("Failed to persist user %s: %s", identity.email, str(e), exc_info=True)
            raise DatabaseError("Failed to sign in")

        is_premium = await self.entitlements.reconcile(db, user.id)
        return self.issue_token(user, is_premium), user, is_premium

    async def verify_session(self, db: AsyncSession, user_id: int) -> Tuple[User, bool]:
        """
        Reload the token's user and reconcile entitlement.

        Raises:
            NotFoundError: The account was deleted after the token was issued
        """
        user = await db.get(User, user_id)
        if user is None:
            raise NotFoundError("user", str(user_id))
        is_premium = await self.entitlements.reconcile(db, user_id)
        return user, is_premium


# ── Singleton Instance ────────────────────────────────────────────────────
auth_service = AuthService()
