from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from freeme.api.schemas import ErrorBody
from freeme.logging import get_correlation_id, get_logger, scrub_error_message
from freeme.service.errors import RateLimitedError, ServerError, ServiceError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "INVALID_INPUT",
    401: "AUTH_REQUIRED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    413: "PAYLOAD_TOO_LARGE",
    422: "INVALID_INPUT",
    429: "RATE_LIMIT_EXCEEDED",
    500: "SERVER_ERROR",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "SERVER_ERROR")


def error_response(
    status_code: int,
    error: str,
    *,
    code: Optional[str] = None,
    details: Any = None,
    message: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Render the error envelope ``{error, code, details?, message?, requestId}``."""
    body = ErrorBody(
        error=error,
        code=code or _error_code_for_status(status_code),
        details=details,
        message=message if message and message != error else None,
        request_id=get_correlation_id(),
    )
    return JSONResponse(status_code=status_code, content=body.render(), headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Install the handlers that turn every failure into the error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = exc.result.headers()
        return error_response(
            exc.status_code,
            exc.error,
            code=exc.error_code,
            details=exc.detail if exc.expose_detail else None,
            message=exc.message,
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()
        ]
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            errors=errors,
        )
        return error_response(400, "Invalid input", details=errors)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "http_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            detail=exc.detail,
        )
        message = scrub_error_message(exc.detail) if isinstance(exc.detail, str) else "http error"
        return error_response(
            exc.status_code, message, headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        err = ServerError()
        return error_response(err.status_code, err.error, code=err.error_code)
