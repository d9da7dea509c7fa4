import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from erp_gateway.config.logging import get_logger

logger = get_logger(__name__)


class GatewayException(Exception):
    """Base exception for the ERP job gateway.

    ``status_code`` doubles as the retry classification signal: 429 and 5xx
    mark an error as transient (see ``erp_gateway.v1.erp.retry``).
    """

    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
        code: str | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        if code:
            self.code = code
        super().__init__(self.message)


class ValidationError(GatewayException):
    """Raised when input validation fails."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_422_UNPROCESSABLE_ENTITY, details)


class JobPayloadError(ValidationError):
    """A queued job is missing the identifiers its handler needs."""

    code = "INVALID_JOB_PAYLOAD"


class NotFoundError(GatewayException):
    """Raised when a resource is not found."""

    code = "NOT_FOUND"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_404_NOT_FOUND, details)


class UnauthorizedError(GatewayException):
    """Raised when authentication fails."""

    code = "UNAUTHORIZED"

    def __init__(
        self, message: str = "Unauthorized", details: dict[str, Any] | None = None
    ):
        super().__init__(message, status.HTTP_401_UNAUTHORIZED, details)


class RateLimitedError(GatewayException):
    """Admission or ERP protection cap hit; retry after the given delay."""

    code = "RATE_LIMITED"

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after_seconds: int = 1,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.retry_after_seconds = max(1, int(retry_after_seconds))
        super().__init__(
            message,
            status.HTTP_429_TOO_MANY_REQUESTS,
            {**(details or {}), "retry_after_seconds": self.retry_after_seconds},
            code,
        )


class UpstreamError(GatewayException):
    """Non-2xx answer from the ERP. ``status_code`` is the upstream status."""

    code = "UPSTREAM_ERROR"

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_502_BAD_GATEWAY,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, status_code, details)


class UpstreamTimeoutError(UpstreamError):
    """An upstream call outlived its per-operation timeout."""

    code = "UPSTREAM_TIMEOUT"

    def __init__(self, operation: str, timeout_s: float):
        super().__init__(
            f"ERP timeout after {int(timeout_s * 1000)}ms ({operation})",
            status.HTTP_504_GATEWAY_TIMEOUT,
            {"operation": operation, "timeout_ms": int(timeout_s * 1000)},
        )


class QueuePublishError(GatewayException):
    """The job message could not be handed to the queue."""

    code = "QUEUE_UNAVAILABLE"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_503_SERVICE_UNAVAILABLE, details)


class UnsupportedJobTypeError(GatewayException):
    code = "UNSUPPORTED_JOB_TYPE"

    def __init__(self, job_type: str):
        super().__init__(
            f"Unsupported job type: {job_type}",
            status.HTTP_400_BAD_REQUEST,
            {"type": job_type},
        )


class MalformedMessageError(GatewayException):
    code = "MALFORMED_MESSAGE"

    def __init__(self, message: str = "Invalid queue message shape"):
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class DuplicateKeyError(Exception):
    """A uniqueness constraint rejected a concurrent writer."""


def _public_status(exc: GatewayException) -> int:
    """Map an exception onto the HTTP status returned to gateway callers."""
    if not isinstance(exc, UpstreamError):
        return exc.status_code
    if exc.status_code == status.HTTP_429_TOO_MANY_REQUESTS:
        return status.HTTP_429_TOO_MANY_REQUESTS
    if exc.status_code == status.HTTP_504_GATEWAY_TIMEOUT:
        return status.HTTP_504_GATEWAY_TIMEOUT
    if exc.status_code >= 500:
        return status.HTTP_502_BAD_GATEWAY
    if exc.status_code in (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN):
        # Upstream credential problems are ours, not the caller's
        return status.HTTP_502_BAD_GATEWAY
    return exc.status_code


def create_error_response(
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
    category: str = "INTERNAL_ERROR",
) -> dict[str, Any]:
    """Create standardized error response envelope."""
    return {
        "ok": False,
        "error": {
            "message": message,
            "code": status_code,
            "category": category,
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


async def gateway_exception_handler(
    request: Request, exc: GatewayException
) -> JSONResponse:
    """Handle gateway specific exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))
    status_code = _public_status(exc)

    log = logger.warning if status_code < 500 else logger.error
    log(
        "Application exception",
        exception=exc.__class__.__name__,
        message=exc.message,
        status_code=status_code,
        category=exc.code,
        details=exc.details,
        request_id=request_id,
    )

    headers = {}
    if isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(exc.retry_after_seconds)

    return JSONResponse(
        status_code=status_code,
        content=create_error_response(
            status_code=status_code,
            message=exc.message,
            details=exc.details,
            request_id=request_id,
            category=exc.code,
        ),
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=str(exc.detail),
            request_id=request_id,
            category="HTTP_ERROR",
        ),
        headers=getattr(exc, "headers", None),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.error(
        "Unhandled exception",
        exception=exc.__class__.__name__,
        message=str(exc),
        request_id=request_id,
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            message="Internal server error",
            request_id=request_id,
        ),
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to add request context and correlation IDs."""

    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        from erp_gateway.config.logging import add_request_context

        add_request_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        return response
