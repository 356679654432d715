"""
Exposure Backend — Request Logging Middleware
===============================================

What:  One access log line per HTTP request.
How:   Measures the request from middleware entry to response, logs it on the
       "exposure.access" logger with the request ID for correlation.
When:  After RequestIDMiddleware (uses request ID for correlation).

Log line:
    POST /api/admin/places/3/photos 201 412.7ms [a1b2c3d4] from 192.168.1.100 (5242880 bytes in)

Levels:
    5xx → ERROR, 4xx → WARNING, everything else → INFO. Photo file
    requests (/api/files/...) are logged at DEBUG: a single place page
    loads dozens of them.

Never logged: request bodies, photo contents, cookies.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.middleware.request_id import request_id_var

logger = logging.getLogger("exposure.access")

QUIET_PATHS = {"/health"}
QUIET_PREFIXES = ("/api/files/",)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Access logging with duration and request ID."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in QUIET_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "unknown"
        rid = request_id_var.get("")

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000
        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        elif path.startswith(QUIET_PREFIXES):
            log_level = logging.DEBUG
        else:
            log_level = logging.INFO

        message = "%s %s %d %.1fms [%s] from %s"
        args = [request.method, path, status, duration_ms, rid, client_ip]
        content_length = request.headers.get("content-length")
        if content_length and content_length != "0":
            message += " (%s bytes in)"
            args.append(content_length)

        logger.log(
            log_level,
            message,
            *args,
            extra={
                "request_id": rid,
                "method": request.method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
            },
        )
        return response
