"""
Image2Sheet Backend — FastAPI Application Factory
==================================================

What:  Creates and configures the FastAPI application instance.
How:   Factory pattern: create_app() returns a configured FastAPI instance.
Who:   uvicorn (uvicorn image2sheet.main:app).
When:  Once at server startup.

Application Architecture:
    ┌──────────────────────────────────────────────────────────┐
    │                       FastAPI App                        │
    │                                                          │
    │  Middleware: GZip → CORS → Request ID → Logging → Rate   │
    │                                                          │
    │  Routes:                                                 │
    │   /api/auth   /api/users   /api/extractions              │
    │   /api/billing   /health                                 │
    │                                                          │
    │  Exception Handlers: Image2SheetError subclasses →       │
    │   {error, message, details, request_id}                  │
    └──────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:
    1. Initialize logging
    2. Validate configuration (logged, not fatal)
    3. Create missing tables when DB_AUTO_CREATE is set
    4. Start the guest quota sweeper
    5. Warn operators that guest quotas are per process

    Shutdown:
    1. Stop the guest quota sweeper
    2. Dispose the database engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from image2sheet import __version__
from image2sheet.config import settings
from image2sheet.database import create_tables, dispose_engine
from image2sheet.exceptions import (
    AuthenticationError,
    CircuitBreakerOpenError,
    DatabaseError,
    DuplicateTokenError,
    ExtractionFailedError,
    Image2SheetError,
    InvalidCredentialError,
    NotFoundError,
    QuotaExceededError,
    RateLimitExceededError,
    UpstreamUnavailableError,
    ValidationError,
)
from image2sheet.middleware.logging import RequestLoggingMiddleware
from image2sheet.middleware.rate_limit import RateLimitMiddleware
from image2sheet.middleware.request_id import RequestIDMiddleware, request_id_var
from image2sheet.routes import auth, billing, extractions, health, users
from image2sheet.schemas.billing import SubscriptionResponse
from image2sheet.services.guest_quota import guest_quota_tracker

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure the root logger once, at startup.

    Format: 2024-01-15T12:00:00 [INFO] image2sheet.services.user_quota: message
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("Image2Sheet Backend %s starting up...", __version__)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        # Not fatal: /health keeps answering so the problem is visible
        logger.error("Configuration error: %s", str(e))

    if settings.db_auto_create:
        await create_tables()
        logger.info("Database tables verified")

    guest_quota_tracker.start_sweeper(settings.guest_sweep_interval_seconds)
    logger.warning(
        "Guest quotas are kept in this process's memory: they reset on restart "
        "and are NOT shared between instances or workers."
    )

    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("Image2Sheet Backend shutting down...")
    await guest_quota_tracker.stop_sweeper()
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error_response(
    status_code: int,
    error: str,
    message: str,
    details: Optional[dict] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "message": message,
            "details": details or None,
            "request_id": request_id_var.get("") or None,
        },
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map the exception hierarchy to HTTP responses.

    Handler hierarchy:
        ValidationError           → 400
        InvalidCredentialError    → 401
        AuthenticationError       → 401 (+ WWW-Authenticate: Bearer)
        NotFoundError             → 404
        DuplicateTokenError       → 409 (details.subscription = original record, owner only)
        QuotaExceededError        → 429 (+ Retry-After)
        RateLimitExceededError    → 429 (+ Retry-After)
        DatabaseError             → 500 (generic message)
        ExtractionFailedError     → 502
        UpstreamUnavailableError  → 503
        CircuitBreakerOpenError   → 503 (+ Retry-After)
        Image2SheetError (base)   → 500
        Exception (fallback)      → 500

    Internal details (stack traces, SQL) are logged, never returned.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("[%s] Validation error: %s", request_id_var.get(""), exc.message)
        return _error_response(400, "validation_error", exc.message, exc.context)

    @app.exception_handler(InvalidCredentialError)
    async def handle_invalid_credential(request: Request, exc: InvalidCredentialError):
        return _error_response(401, "invalid_credential", exc.message)

    @app.exception_handler(AuthenticationError)
    async def handle_authentication_error(request: Request, exc: AuthenticationError):
        return _error_response(
            401,
            "authentication_required",
            exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return _error_response(404, "not_found", exc.message, exc.context)

    @app.exception_handler(DuplicateTokenError)
    async def handle_duplicate_token(request: Request, exc: DuplicateTokenError):
        details = dict(exc.context)
        if exc.subscription is not None:
            details["subscription"] = SubscriptionResponse.model_validate(
                exc.subscription
            ).model_dump(mode="json")
        return _error_response(409, "duplicate_purchase", exc.message, details)

    @app.exception_handler(QuotaExceededError)
    async def handle_quota_exceeded(request: Request, exc: QuotaExceededError):
        details = {"reason": exc.reason, **exc.context}
        return _error_response(
            429,
            "quota_exceeded",
            exc.message,
            details,
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(RateLimitExceededError)
    async def handle_rate_limit(request: Request, exc: RateLimitExceededError):
        return _error_response(
            429,
            "rate_limit_exceeded",
            exc.message,
            exc.context,
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        logger.error("[%s] Database error: %s | Context: %s", request_id_var.get(""), exc.message, exc.context)
        return _error_response(500, "server_error", "An internal error occurred. Please try again later.")

    @app.exception_handler(ExtractionFailedError)
    async def handle_extraction_failed(request: Request, exc: ExtractionFailedError):
        logger.error("[%s] Extraction failed: %s", request_id_var.get(""), exc.message)
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
        return _error_response(502, "extraction_failed", exc.message, exc.context, headers=headers)

    @app.exception_handler(UpstreamUnavailableError)
    async def handle_upstream_unavailable(request: Request, exc: UpstreamUnavailableError):
        logger.error("[%s] Upstream unavailable (%s): %s", request_id_var.get(""), exc.service, exc.message)
        return _error_response(503, "service_unavailable", exc.message, exc.context)

    @app.exception_handler(CircuitBreakerOpenError)
    async def handle_circuit_breaker(request: Request, exc: CircuitBreakerOpenError):
        logger.warning("[%s] Circuit breaker open: %s", request_id_var.get(""), exc.message)
        return _error_response(
            503,
            "service_unavailable",
            exc.message,
            {"recovery_time": exc.recovery_time},
            headers={"Retry-After": str(exc.recovery_time)},
        )

    @app.exception_handler(Image2SheetError)
    async def handle_app_error(request: Request, exc: Image2SheetError):
        logger.error("[%s] Unhandled application error: %s", request_id_var.get(""), exc.message)
        return _error_response(500, "server_error", exc.message)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("[%s] Unexpected error: %s", request_id_var.get(""), str(exc), exc_info=True)
        return _error_response(
            500,
            "internal_server_error",
            "An unexpected error occurred. Please try again or contact support.",
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    app = FastAPI(
        title="Image2Sheet API",
        description=(
            "Extract tables from photos and screenshots with Google Gemini. "
            "Guests get a small daily allowance per IP; signed-in users get a daily "
            "quota and history; premium subscribers are unlimited."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Register Middleware ───────────────────────────────────────────────
    # Last added = outermost. Execution: GZip → CORS → RequestID → Logging → RateLimit
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    # Base64 tables and CSV renderings compress well
    app.add_middleware(GZipMiddleware, minimum_size=500)

    register_exception_handlers(app)

    # ── Register Routes ───────────────────────────────────────────────────
    app.include_router(auth.router)
    app.include_router(users.router)
    app.include_router(extractions.router)
    app.include_router(billing.router)
    app.include_router(health.router)

    return app


app = create_app()
