"""
Global Error Handling.

Two layers:
- Domain errors (LevelRiskError) map to typed JSON bodies with a stable
  ``error`` code via ``register_exception_handlers``
- Everything else is caught by ErrorHandlerMiddleware and returned as a
  generic 500 with an ``error_id``; the traceback only goes to the log
"""

import traceback
import uuid

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from levelrisk.config import settings
from levelrisk.errors import (
    ErrorCode,
    InvalidTransitionError,
    LevelRiskError,
    NotFoundError,
    ReplayDivergenceError,
    ValidationError,
)

logger = structlog.get_logger(__name__)


STATUS_BY_ERROR: dict[type, int] = {
    ValidationError: 422,
    InvalidTransitionError: 409,
    NotFoundError: 404,
    ReplayDivergenceError: 500,
}


def status_for(exc: LevelRiskError) -> int:
    for error_type, status_code in STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


async def _domain_error_handler(request: Request, exc: LevelRiskError) -> JSONResponse:
    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.info
    log(
        "request_failed",
        path=request.url.path,
        method=request.method,
        status=status_code,
        error=exc.error_code.value,
        message=exc.message,
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = jsonable_encoder(exc.errors())
    first = errors[0] if errors else {}
    logger.info(
        "request_rejected",
        path=request.url.path,
        method=request.method,
        errors=len(errors),
    )
    return JSONResponse(
        status_code=422,
        content={
            "error": ErrorCode.VALIDATION_ERROR.value,
            "message": first.get("msg", "invalid request"),
            "details": {"errors": errors},
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LevelRiskError, _domain_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Outermost middleware — catches everything the handlers did not.

    Returns structured error responses:
    {
      "error": "unknown_error",
      "message": "human-readable message",
      "error_id": "uuid for log correlation"
    }

    NEVER includes: stack traces, exception types, DB errors, internal paths.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        try:
            response = await call_next(request)
            return response

        except Exception as exc:
            error_id = str(uuid.uuid4())

            # Log full traceback server-side with error_id for correlation
            logger.error(
                "unhandled_exception",
                error_id=error_id,
                path=request.url.path,
                method=request.method,
                error=str(exc),
                traceback=traceback.format_exc(),
            )

            body: dict = {
                "error": ErrorCode.UNKNOWN_ERROR.value,
                "message": "An internal error occurred. Please try again later.",
                "error_id": error_id,
            }

            # In debug mode, add type hint ONLY (not full traceback)
            if settings.debug:
                body["debug_hint"] = type(exc).__name__

            return JSONResponse(status_code=500, content=body)
