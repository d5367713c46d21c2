"""
Request Context Middleware.

Every request gets a request_id (taken from X-Request-ID or generated),
bound into the structlog context and echoed back with the elapsed time.
Current-state reads are expected well under SLOW_REQUEST_MS; requests over
it are logged as warnings so latency regressions show up in the logs.
"""

import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from levelrisk.config import settings

logger = structlog.get_logger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """request_id binding, timing headers and slow-request logging."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{elapsed_ms}ms"

        if elapsed_ms > settings.slow_request_ms:
            logger.warning(
                "request_slow",
                status=response.status_code,
                elapsed_ms=elapsed_ms,
                threshold_ms=settings.slow_request_ms,
            )
        else:
            logger.info("request_completed", status=response.status_code, elapsed_ms=elapsed_ms)
        return response
