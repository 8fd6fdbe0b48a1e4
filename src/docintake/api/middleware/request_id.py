"""Request ID middleware.

Every request gets an X-Request-ID: the client's if provided, a new one
otherwise. The same value is used as the audit correlation id of whatever
the request triggers, so audit records can be joined with access logs.
"""

from __future__ import annotations

import uuid
from contextvars import ContextVar
from typing import TYPE_CHECKING

from starlette.middleware.base import BaseHTTPMiddleware

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from starlette.requests import Request
    from starlette.responses import Response

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

REQUEST_ID_HEADER = "X-Request-ID"

# Longer client-supplied ids are replaced
MAX_REQUEST_ID_LENGTH = 100


def get_request_id() -> str | None:
    """Request ID of the current request, or None outside a request."""
    return request_id_ctx.get()


def _new_request_id() -> str:
    return f"corr-{uuid.uuid4().hex[:16]}"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Ensures every request and response carries an X-Request-ID."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER)
        if not request_id or len(request_id) > MAX_REQUEST_ID_LENGTH:
            request_id = _new_request_id()

        token = request_id_ctx.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
