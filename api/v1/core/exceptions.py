import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from api.config.logging import add_request_context, get_logger

logger = get_logger(__name__)


class StreamVibeException(Exception):
    """
    Base exception for the StreamVibe job service.

    ``error_type`` is a stable machine-readable name carried in the error
    envelope next to the HTTP status.
    """

    error_type = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(StreamVibeException):
    """Input rejected by a service-level check (log levels, progress range, params)."""

    error_type = "VALIDATION_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_422_UNPROCESSABLE_ENTITY, details)


class NotFoundError(StreamVibeException):
    error_type = "NOT_FOUND"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_404_NOT_FOUND, details)


class UnauthorizedError(StreamVibeException):
    """Bad or missing credentials, including webhook signatures."""

    error_type = "UNAUTHORIZED"

    def __init__(
        self, message: str = "Unauthorized", details: dict[str, Any] | None = None
    ):
        super().__init__(message, status.HTTP_401_UNAUTHORIZED, details)


class ForbiddenError(StreamVibeException):
    """Authenticated, but not the owner and not a service caller."""

    error_type = "FORBIDDEN"

    def __init__(
        self, message: str = "Forbidden", details: dict[str, Any] | None = None
    ):
        super().__init__(message, status.HTTP_403_FORBIDDEN, details)


class QuotaExceededError(StreamVibeException):
    """Raised when an owner already has the maximum number of active jobs."""

    error_type = "QUOTA_EXCEEDED"

    def __init__(self, limit: int, active: int):
        super().__init__(
            f"Maximum {limit} concurrent jobs per user",
            status.HTTP_429_TOO_MANY_REQUESTS,
            {"code": "QUOTA_EXCEEDED", "limit": limit, "active": active},
        )
        self.limit = limit
        self.active = active


def create_error_response(
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
    error_type: str | None = None,
) -> dict[str, Any]:
    """Create standardized error response envelope."""
    return {
        "ok": False,
        "error": {
            "message": message,
            "code": status_code,
            "type": error_type,
            "details": details or {},
        },
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def create_success_response(
    data: Any, message: str | None = None, request_id: str | None = None
) -> dict[str, Any]:
    """Create standardized success response envelope."""
    return {
        "ok": True,
        "data": data,
        "message": message,
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _error_json(
    request_id: str,
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
    error_type: str | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=create_error_response(
            status_code=status_code,
            message=message,
            details=details,
            request_id=request_id,
            error_type=error_type,
        ),
    )


async def streamvibe_exception_handler(
    request: Request, exc: StreamVibeException
) -> JSONResponse:
    """Render application exceptions; client errors log at warning level."""
    request_id = _request_id(request)

    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "Application exception",
        exception=exc.__class__.__name__,
        error_type=exc.error_type,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        request_id=request_id,
    )
    return _error_json(
        request_id, exc.status_code, exc.message, exc.details, exc.error_type
    )


async def request_validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Body, path and query validation failures in the standard envelope."""
    request_id = _request_id(request)
    errors = jsonable_encoder(exc.errors())

    logger.info(
        "Request validation failed",
        path=request.url.path,
        errors=len(errors),
        request_id=request_id,
    )
    return _error_json(
        request_id,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Request validation failed",
        {"errors": errors},
        ValidationError.error_type,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions."""
    request_id = _request_id(request)

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
    )
    return _error_json(request_id, exc.status_code, str(exc.detail))


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    request_id = _request_id(request)

    logger.error(
        "Unhandled exception",
        exception=exc.__class__.__name__,
        message=str(exc),
        request_id=request_id,
        exc_info=True,
    )
    return _error_json(
        request_id,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error",
        error_type=StreamVibeException.error_type,
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a correlation ID to the request and echo it on the response."""

    async def dispatch(self, request: Request, call_next):
        # Honour an upstream correlation ID when one is supplied
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        add_request_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response
