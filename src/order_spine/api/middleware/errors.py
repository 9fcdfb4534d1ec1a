"""
Error-handling middleware — maps order-spine errors to JSON responses.

Every non-2xx body has the shape of
:class:`~order_spine.api.schemas.ErrorResponse`:
``{"error": ..., "message": ..., "details": [...]}``.
"""

from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from order_spine.api.schemas import ErrorResponse
from order_spine.core.errors import (
    DuplicateOrderError,
    EngineShutdownError,
    OrderNotFoundError,
    OrderSpineError,
    OrderValidationError,
)
from order_spine.core.logging import get_logger

logger = get_logger(__name__)

# ── Error type → HTTP status mapping ─────────────────────────────────────

ERROR_TYPE_TO_STATUS: dict[type[OrderSpineError], int] = {
    OrderValidationError: 400,
    OrderNotFoundError: 404,
    DuplicateOrderError: 409,
    EngineShutdownError: 503,
}


def status_for_error(exc: OrderSpineError) -> int:
    """Resolve an error to an HTTP status, defaulting to 500."""
    for error_type, status in ERROR_TYPE_TO_STATUS.items():
        if isinstance(exc, error_type):
            return status
    return 500


def error_response(
    *,
    status: int,
    error: str,
    message: str = "",
    details: list[Any] | None = None,
    order_id: str | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=error, message=message, details=details or [], order_id=order_id)
    return JSONResponse(status_code=status, content=body.model_dump(exclude_none=True))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Schema violations are reported as 400, not FastAPI's default 422."""
    details = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg", ""),
            "type": err.get("type", ""),
        }
        for err in exc.errors()
    ]
    return error_response(status=400, error="Validation failed", details=details)


async def order_spine_error_handler(request: Request, exc: OrderSpineError) -> JSONResponse:
    status = status_for_error(exc)
    if status >= 500:
        logger.error("api.error", path=request.url.path, **exc.to_dict())

    if isinstance(exc, OrderValidationError):
        return error_response(status=status, error="Order validation failed", message=exc.message, details=exc.errors)
    if isinstance(exc, OrderNotFoundError):
        return error_response(status=status, error="Order not found", order_id=exc.order_id)
    return error_response(status=status, error=exc.category.value, message=exc.message)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions — returns 500."""
    logger.error("api.unhandled_exception", path=request.url.path, error=str(exc), error_type=type(exc).__name__)
    return error_response(
        status=500,
        error="Internal Server Error",
        message=str(exc) if request.app.state.settings.debug else "An unexpected error occurred.",
    )
