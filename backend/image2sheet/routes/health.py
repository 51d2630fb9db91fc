"""
Image2Sheet Backend — Health Check Route
=========================================

What:  GET /health for container health checks and load balancers.
How:   SELECT 1 against the database, circuit breaker state (or a
       list_models probe) for Gemini, and the guest quota map size.

Status levels:
    healthy:   everything operational (HTTP 200)
    degraded:  Gemini unavailable or circuit open (HTTP 200)
    unhealthy: database unreachable (HTTP 503)
"""

import logging
import time

from fastapi import APIRouter, Response
from sqlalchemy import text

from image2sheet import __version__
from image2sheet.database import engine
from image2sheet.schemas.common import HealthResponse
from image2sheet.services.gemini_service import CircuitBreaker, gemini_service
from image2sheet.services.guest_quota import guest_quota_tracker

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get("/health", response_model=HealthResponse, summary="Service health check")
async def health_check(response: Response) -> HealthResponse:
    db_status = "connected"
    gemini_status = "available"
    overall = "healthy"

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", str(e))

    if gemini_service.circuit_breaker.state == CircuitBreaker.OPEN:
        gemini_status = "circuit_open"
    elif not await gemini_service.health_check():
        gemini_status = "unavailable"
    if gemini_status != "available" and overall == "healthy":
        overall = "degraded"

    if overall == "unhealthy":
        response.status_code = 503

    return HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        gemini=gemini_status,
        guest_quota_entries=await guest_quota_tracker.tracked_ips(),
        uptime_seconds=round(time.time() - _start_time, 2),
    )
