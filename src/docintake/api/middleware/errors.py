"""Error handling middleware for consistent JSON error responses.

Service exceptions are converted to:
- error: machine-readable code
- message: human-readable description
- detail: structured context (threats, validation errors, missing categories)
- request_id: correlation id of the request

Business rejections map to 4xx, infrastructure failures to 503.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from docintake.api.middleware.request_id import get_request_id
from docintake.services.errors import (
    AccessDeniedError,
    BusinessRejection,
    CategoryNotFoundError,
    DocumentNotFoundError,
    InfrastructureFailure,
    IntakeError,
    KycIncompleteError,
    ScanUnavailableError,
    StageTimeoutError,
    ThreatDetectedError,
    ValidationFailedError,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from starlette.requests import Request
    from starlette.responses import Response

logger = logging.getLogger(__name__)

# Most specific class first
STATUS_BY_ERROR: tuple[tuple[type[IntakeError], int], ...] = (
    (AccessDeniedError, 403),
    (DocumentNotFoundError, 404),
    (CategoryNotFoundError, 404),
    (ThreatDetectedError, 422),
    (ValidationFailedError, 422),
    (KycIncompleteError, 409),
    (StageTimeoutError, 503),
    (ScanUnavailableError, 503),
    (BusinessRejection, 400),
    (InfrastructureFailure, 503),
)


def status_for(exc: IntakeError) -> int:
    """HTTP status code for a service exception."""
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def build_error_response(
    error: str,
    message: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> JSONResponse:
    """Build a standardized error response."""
    body: dict[str, Any] = {
        "error": error,
        "message": message,
    }

    request_id = get_request_id()
    if request_id:
        body["request_id"] = request_id

    if detail:
        body["detail"] = detail

    return JSONResponse(status_code=status_code, content=body)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catches service exceptions and returns consistent JSON errors."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        try:
            return await call_next(request)
        except IntakeError as exc:
            status_code = status_for(exc)
            if isinstance(exc, InfrastructureFailure):
                logger.error(
                    "Infrastructure failure on %s %s: %s",
                    request.method,
                    request.url.path,
                    exc.message,
                )
            return build_error_response(
                error=exc.code,
                message=exc.message,
                status_code=status_code,
                detail=exc.detail(),
            )
        except ValidationError as exc:
            return build_error_response(
                error="validation_error",
                message="Request validation failed",
                status_code=422,
                detail={"errors": exc.errors(include_url=False)},
            )
        except Exception:
            logger.exception(
                "Unexpected error processing request: %s %s",
                request.method,
                request.url.path,
            )
            return build_error_response(
                error="internal_error",
                message="An internal error occurred",
                status_code=500,
            )
