"""
Exposure Backend — Request ID Middleware
==========================================

What:  Assigns an ID to each request and returns it in X-Request-ID.
Why:   Error bodies carry the same ID, so an admin reporting a failed upload
       can be matched to the server-side log lines of that request.
How:   Takes the client's X-Request-ID when it is a short token, otherwise
       generates 8 hex characters, and stores it in a ContextVar readable by
       loggers and exception handlers.
When:  Right after rate limiting, before everything else.
"""

import re
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Coroutine-local: concurrent requests share a thread
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Client IDs end up in log lines
_CLIENT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def new_request_id() -> str:
    return uuid.uuid4().hex[:8]


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Propagate or generate X-Request-ID."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        supplied = request.headers.get("X-Request-ID", "")
        rid = supplied if _CLIENT_ID_PATTERN.match(supplied) else new_request_id()

        request_id_var.set(rid)
        request.state.request_id = rid

        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response
