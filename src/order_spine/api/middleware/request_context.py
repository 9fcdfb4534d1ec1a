"""Request-context middleware — request id, timing header, log correlation.

Manifesto:
    Every request gets a unique ID bound into the structlog context so
    the log lines of one request (and the orders it submits) can be
    correlated.  Server-side latency is exposed as ``X-Process-Time-Ms``.

Tags:
    order-spine, api, middleware, request-id, timing, correlation

Doc-Types:
    api-reference
"""

from __future__ import annotations

import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from order_spine.core.logging import LogContext, get_logger

logger = get_logger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach a request ID and processing time to every HTTP request."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id

        start = time.perf_counter()
        async with LogContext(request_id=request_id):
            response = await call_next(request)
            elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
            logger.debug(
                "http.request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                elapsed_ms=elapsed_ms,
            )

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time-Ms"] = str(elapsed_ms)
        return response
