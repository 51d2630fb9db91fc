"""
Image2Sheet Backend — Custom Exception Hierarchy
=================================================

What:  Application-specific exceptions for every error scenario.
How:   Each exception carries a user-facing message and an optional context
       dict. Global exception handlers (registered in main.py) turn them into
       structured JSON error responses with the right HTTP status code.
Who:   Raised by services, dependencies and middleware.

Exception Hierarchy:
    Image2SheetError (base)
    ├── ValidationError           → 400 Bad Request
    ├── InvalidCredentialError    → 401 Unauthorized (identity token rejected)
    ├── AuthenticationError       → 401 Unauthorized (missing/bad app JWT)
    ├── NotFoundError             → 404 Not Found
    ├── DuplicateTokenError       → 409 Conflict (purchase token replay)
    ├── QuotaExceededError        → 429 Too Many Requests (extraction quota)
    ├── RateLimitExceededError    → 429 Too Many Requests (request throttle)
    ├── DatabaseError             → 500 Internal Server Error
    ├── ExtractionFailedError     → 502 Bad Gateway (AI returned no usable table)
    ├── UpstreamUnavailableError  → 503 Service Unavailable
    └── CircuitBreakerOpenError   → 503 Service Unavailable (circuit open)
"""

from typing import Any, Dict, Optional


class Image2SheetError(Exception):
    """
    Base exception for all Image2Sheet application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional info; handlers decide what reaches the client
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(Image2SheetError):
    """
    Raised when client input fails a business-rule check.

    When:    Missing image, invalid base64, image too large, missing purchase data.
    HTTP:    400 Bad Request
    """

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class InvalidCredentialError(Image2SheetError):
    """
    Raised when a Google / Firebase identity token cannot be verified.

    HTTP:    401 Unauthorized
    """

    def __init__(
        self,
        message: str = "Invalid sign-in credential",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class AuthenticationError(Image2SheetError):
    """
    Raised when the application bearer token is missing, malformed or expired.

    HTTP:    401 Unauthorized (with WWW-Authenticate: Bearer)
    """

    def __init__(
        self,
        message: str = "Authentication required",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class NotFoundError(Image2SheetError):
    """
    Raised when a requested resource does not exist.

    When:    User deleted since the token was issued, unknown extraction id,
             cancelling without an active subscription.
    HTTP:    404 Not Found
    """

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class DuplicateTokenError(Image2SheetError):
    """
    Raised when a purchase token has already been recorded.

    The previously-recorded subscription travels with the error so the
    client's billing flow can retry idempotently: the response body returns
    it instead of an opaque failure.

    HTTP:    409 Conflict
    """

    def __init__(
        self,
        subscription: Any = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message="This purchase has already been registered",
            context=context,
        )
        self.subscription = subscription


class QuotaExceededError(Image2SheetError):
    """
    Raised when an admission check denies an extraction.

    Carries the guidance a client needs to render a countdown:
    current usage, limit, remaining (always 0) and hours until reset.

    HTTP:    429 Too Many Requests (Retry-After in seconds)
    """

    def __init__(
        self,
        message: str = "Daily extraction limit reached",
        current: int = 0,
        limit: int = 0,
        hours_until_reset: int = 0,
        reason: str = "DAILY_LIMIT_REACHED",
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx.update(
            {
                "current": current,
                "limit": limit,
                "remaining": 0,
                "hours_until_reset": hours_until_reset,
            }
        )
        super().__init__(message=message, context=ctx)
        self.current = current
        self.limit = limit
        self.hours_until_reset = hours_until_reset
        self.reason = reason

    @property
    def retry_after(self) -> int:
        """Seconds until the quota window resets (Retry-After header)."""
        return self.hours_until_reset * 3600


class RateLimitExceededError(Image2SheetError):
    """
    Raised when a client exceeds the per-IP request throttle.

    HTTP:    429 Too Many Requests
    """

    def __init__(
        self,
        retry_after: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Rate limit exceeded. Please wait {retry_after} seconds before making more requests."
        )
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class DatabaseError(Image2SheetError):
    """
    Raised when database operations fail unexpectedly.

    The message returned to the client is always generic; details are
    logged server-side only.

    HTTP:    500 Internal Server Error
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class ExtractionFailedError(Image2SheetError):
    """
    Raised when the AI provider fails to produce a usable table.

    When:    Retries exhausted, unparseable JSON, missing headers/rows.
    HTTP:    502 Bad Gateway
    """

    def __init__(
        self,
        reason: str = "Table extraction failed",
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if retry_after:
            ctx["retry_after"] = retry_after
        super().__init__(message=reason, context=ctx)
        self.reason = reason
        self.retry_after = retry_after


class UpstreamUnavailableError(Image2SheetError):
    """
    Raised when a collaborator the request depends on is unreachable.

    When:    Datastore error during an admission check (fail closed), identity
             verifier certificate fetch failure.
    HTTP:    503 Service Unavailable
    """

    def __init__(
        self,
        message: str = "A required service is temporarily unavailable. Please try again.",
        service: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if service:
            ctx["service"] = service
        super().__init__(message=message, context=ctx)
        self.service = service


class CircuitBreakerOpenError(Image2SheetError):
    """
    Raised when the Gemini circuit breaker is in OPEN state.

    How circuit breaker works:
        CLOSED (normal) → failures increment counter
        → After N failures → OPEN (reject all calls for M seconds)
        → After M seconds → HALF-OPEN (allow one test call)
        → Test succeeds → CLOSED; test fails → OPEN again

    HTTP:    503 Service Unavailable
    """

    def __init__(
        self,
        recovery_time: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"AI service is temporarily unavailable due to repeated failures. "
            f"The service will automatically retry in approximately {recovery_time} seconds."
        )
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(message=message, context=ctx)
        self.recovery_time = recovery_time
