from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from freeme.service.rate_limit import RateLimitResult


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code``, a stable ``error_code`` and a
    short public ``error`` title. ``message`` is a caller-facing sentence and
    ``detail`` holds structured context. Only validation-class errors expose
    ``detail`` to the caller (see ``expose_detail``); everything else keeps
    it for the logs.
    """

    status_code: int = 500
    error_code: str = "SERVER_ERROR"
    error: str = "Internal server error"
    expose_detail: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Any] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message = message or self.error
        super().__init__(self.message)
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail


class UnauthorizedError(ServiceError):
    """No authenticated identity (401)."""
    status_code = 401
    error_code = "AUTH_REQUIRED"
    error = "Unauthorized"


class PayloadTooLargeError(ServiceError):
    """Declared request size over the limit (413)."""
    status_code = 413
    error_code = "PAYLOAD_TOO_LARGE"
    error = "Request too large"
    expose_detail = True


class InvalidInputError(ServiceError):
    """Prompt, schema or field validation failed (400)."""
    status_code = 400
    error_code = "INVALID_INPUT"
    error = "Invalid input"
    expose_detail = True


class RateLimitedError(ServiceError):
    """Rate budget exhausted (429)."""
    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"
    error = "Rate limit exceeded"

    def __init__(self, result: "RateLimitResult", message: Optional[str] = None) -> None:
        super().__init__(message)
        self.result = result


class ModelFailureError(ServiceError):
    """Completion call errored or timed out (503)."""
    status_code = 503
    error_code = "AI_ERROR"
    error = "AI processing failed"


class ParseFailureError(ServiceError):
    """Model output could not be recovered into an intent (502)."""
    status_code = 502
    error_code = "AI_PARSE_ERROR"
    error = "AI response could not be understood"


class NotFoundError(ServiceError):
    """Owner-scoped lookup miss (404).

    Raised both when the record does not exist and when it belongs to another
    user, so callers cannot discover other users' event ids.
    """
    status_code = 404
    error_code = "NOT_FOUND"
    error = "Resource not found"


class StorageFailureError(ServiceError):
    """Persistence operation errored (500)."""
    status_code = 500
    error_code = "DB_ERROR"
    error = "Database operation failed"


class ServerError(ServiceError):
    """Anything unanticipated (500)."""
    status_code = 500
    error_code = "SERVER_ERROR"
    error = "Internal server error"


__all__ = [
    "ServiceError",
    "UnauthorizedError",
    "PayloadTooLargeError",
    "InvalidInputError",
    "RateLimitedError",
    "ModelFailureError",
    "ParseFailureError",
    "NotFoundError",
    "StorageFailureError",
    "ServerError",
]
