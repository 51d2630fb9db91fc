"""
Image2Sheet Backend — Shared Response Schemas
==============================================

What:  Response models used across routers: the error envelope, the
       health check and the plain acknowledgement.
"""

from typing import Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """
    Standardized error body for every API error.

    Example (quota denial):
        {
            "error": "quota_exceeded",
            "message": "Guest limit reached. Try again in 5 hours or sign in for more extractions.",
            "details": {"reason": "GUEST_LIMIT_REACHED", "current": 3, "limit": 3,
                        "remaining": 0, "hours_until_reset": 5},
            "request_id": "550e8400-e29b-41d4-a716-446655440000"
        }
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class HealthResponse(BaseModel):
    """
    Health check response showing service and dependency status.

    status: healthy (all good), degraded (Gemini down, HTTP 200) or
    unhealthy (database down).
    """
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="Database connectivity: connected, disconnected")
    gemini: str = Field(description="Gemini API status: available, unavailable, circuit_open")
    guest_quota_entries: int = Field(description="IPs currently tracked by the guest quota")
    uptime_seconds: float = Field(description="Seconds since service started")
