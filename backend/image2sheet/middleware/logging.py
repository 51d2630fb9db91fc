"""
Image2Sheet Backend — Request Logging Middleware
=================================================

What:  One access log line per request on the `image2sheet.access` logger.
How:   Times the request, then logs method, path, status, duration, request
       id and client IP. 5xx logs at ERROR, 4xx at WARNING, else INFO.

Never logged: request bodies (base64 images, credentials) and the
Authorization header.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from image2sheet.middleware.request_id import request_id_var
from image2sheet.services.guest_quota import resolve_client_ip

logger = logging.getLogger("image2sheet.access")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    # Probed every few seconds by load balancers
    QUIET_PATHS = {"/health"}

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in self.QUIET_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        client_ip = resolve_client_ip(request)
        method = request.method
        path = request.url.path

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000
        rid = request_id_var.get("")
        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        logger.log(
            log_level,
            "%s %s %d %.1fms [%s] from %s",
            method,
            path,
            status,
            duration_ms,
            rid,
            client_ip,
            extra={
                "request_id": rid,
                "method": method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
            },
        )
        return response
