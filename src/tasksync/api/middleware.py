"""API error handling: map the sync error taxonomy onto HTTP responses.

Every error is rendered as ``{"error": {"code": ..., "message": ...,
"provider": ...}}``.  Messages carried by sync errors are already
sanitized (token-redacted, truncated) where they are raised.

Status code mapping:
- ``NotConnectedError`` → 400
- ``TokenRefreshError`` → 400
- ``ProviderNotConfiguredError`` → 503
- ``ProviderAPIError`` / ``PushSyncError`` → 502
- ``ValueError`` → 400
- ``HTTPException`` → its own status
- Any other ``Exception`` → 500
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from tasksync.api.models import ErrorDetail, ErrorResponse
from tasksync.errors import (
    NotConnectedError,
    ProviderAPIError,
    ProviderNotConfiguredError,
    PushSyncError,
    TaskSyncError,
    TokenRefreshError,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type[TaskSyncError], int, str]] = [
    (NotConnectedError, 400, "NOT_CONNECTED"),
    (TokenRefreshError, 400, "TOKEN_REFRESH_FAILED"),
    (ProviderNotConfiguredError, 503, "PROVIDER_NOT_CONFIGURED"),
    (ProviderAPIError, 502, "PROVIDER_API_FAILED"),
    (PushSyncError, 502, "SYNC_EVENT_FAILED"),
]


def _error_response(status_code: int, code: str, message: str, provider: str | None = None):
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, provider=provider))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_sync_error(request: Request, exc: TaskSyncError) -> JSONResponse:
    status_code, code = 500, "SYNC_ERROR"
    for error_type, mapped_status, mapped_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code, code = mapped_status, mapped_code
            break
    provider = getattr(exc, "provider", None)
    log = logger.warning if status_code >= 500 else logger.info
    log("%s on %s %s: %s", code, request.method, request.url.path, exc)
    return _error_response(status_code, code, str(exc), provider)


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error_response(400, "VALIDATION_ERROR", str(exc))


async def _handle_http_exception(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    code = {401: "UNAUTHORIZED", 404: "NOT_FOUND", 503: "UNAVAILABLE"}.get(
        exc.status_code, "HTTP_ERROR"
    )
    return _error_response(exc.status_code, code, str(exc.detail))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Convert any unhandled exception into the standard 500 envelope."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error_response(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(TaskSyncError, _handle_sync_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
