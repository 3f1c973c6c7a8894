"""Global exception handlers for consistent error responses.

Errors leave the API in the storefront envelope:

    {"success": false, "message": "...", "code": "...", "request_id": "..."}

Design:
- RateLimitExceededError → the limiter's configured status (default 429)
  and the bare ``{"success": false, "message": ...}`` throttling body
- Other AppError subclasses → 400 (client fault)
- Unexpected Exception → generic 500 (safety net, no details leaked)
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.errors import AppError, RateLimitExceededError
from app.core.logging import get_request_id

logger = logging.getLogger(__name__)


def _error_body(code: str, message: str, details: dict | None = None) -> dict:
    body = {
        "success": False,
        "message": message,
        "code": code,
        "request_id": get_request_id(),
    }
    if details:
        body["details"] = details
    return body


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render domain errors.

    Throttled requests get exactly ``{"success": false, "message": ...}``, the
    same body the rate limit middleware returns.

    Args:
        request: FastAPI request object.
        exc: AppError instance (or subclass).

    Returns:
        JSONResponse with the mapped status code.
    """
    status_code = 400
    headers = None
    content = _error_body(exc.code, exc.message, dict(exc.details) if exc.details else None)
    if isinstance(exc, RateLimitExceededError):
        status_code = exc.status_code
        headers = exc.headers
        content = {"success": False, "message": exc.message}

    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "status_code": status_code,
            "path": request.url.path,
            "has_details": bool(exc.details),
        },
    )

    return JSONResponse(
        status_code=status_code,
        content=content,
        headers=headers,
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors.

    Logs the failure for debugging while returning a generic message; stack
    traces never reach the client.
    """
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
        },
    )

    return JSONResponse(
        status_code=500,
        content=_error_body(
            "internal_server_error",
            "An unexpected error occurred. Please try again later.",
        ),
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app.

    Specific handlers are registered before the general fallback.
    """
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
