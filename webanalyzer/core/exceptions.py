import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from webanalyzer.config.logging import get_logger

logger = get_logger(__name__)


class ErrorMessages:
    """User-facing error messages shared by the API and the worker."""

    INVALID_URL_FORMAT = "Invalid URL format"
    URL_SSRF_DETECTED = "URLs pointing to private networks are not allowed"
    JOB_NOT_FOUND = "Job not found"
    QUEUE_UNAVAILABLE = "Queue system is down, please try again later"
    STORAGE_UNAVAILABLE = "Storage system is unavailable"
    INTERNAL_ERROR = "Internal server error"
    INVALID_JOB_ID = "Invalid job ID format"
    UNKNOWN_JOB_STATUS = "Unknown job status"


class WebAnalyzerException(Exception):
    """Base exception for the web analyzer application."""

    # Whether the queue should redeliver work that failed with this error
    retryable = False

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: str | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)


class ValidationError(WebAnalyzerException):
    """Raised when input validation fails."""

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message, status.HTTP_400_BAD_REQUEST, details)


class InvalidJobIdError(ValidationError):
    """Raised when a job id is not a well-formed 19-digit identifier."""

    def __init__(
        self,
        message: str = ErrorMessages.INVALID_JOB_ID,
        details: str | None = "Job ID must be a 19-digit numeric string",
    ):
        super().__init__(message, details)


class NotFoundError(WebAnalyzerException):
    """Raised when a resource is not found."""

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message, status.HTTP_404_NOT_FOUND, details)


class JobNotFoundError(NotFoundError):
    """Raised when a job record does not exist or has expired."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(
            ErrorMessages.JOB_NOT_FOUND, f"No job found with ID: {job_id}"
        )


class JobAlreadyExistsError(WebAnalyzerException):
    """Raised when creating a job whose id is already stored."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(
            "Job already exists", status.HTTP_409_CONFLICT, f"Job ID: {job_id}"
        )


class StorageUnavailableError(WebAnalyzerException):
    """Raised when the job store keeps failing after local retries."""

    retryable = True

    def __init__(
        self,
        details: str | None = None,
        original_error: Exception | None = None,
    ):
        self.original_error = original_error
        super().__init__(
            ErrorMessages.STORAGE_UNAVAILABLE,
            status.HTTP_503_SERVICE_UNAVAILABLE,
            details,
        )


class QueueUnavailableError(WebAnalyzerException):
    """Raised when the work queue cannot accept work."""

    retryable = True

    def __init__(
        self,
        details: str | None = None,
        original_error: Exception | None = None,
    ):
        self.original_error = original_error
        super().__init__(
            ErrorMessages.QUEUE_UNAVAILABLE,
            status.HTTP_503_SERVICE_UNAVAILABLE,
            details,
        )


class UnknownJobStatusError(WebAnalyzerException):
    """Raised when a stored job carries a status outside the state machine."""

    def __init__(self, job_id: str, job_status: Any):
        self.job_id = job_id
        self.job_status = job_status
        super().__init__(
            ErrorMessages.UNKNOWN_JOB_STATUS,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            f"Job {job_id} has unrecognised status {job_status!r}",
        )


def create_error_response(
    message: str,
    details: str | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Create standardized error response envelope."""
    body: dict[str, Any] = {"error": message}
    if details:
        body["details"] = details
    body["request_id"] = request_id
    body["timestamp"] = datetime.now(UTC).isoformat()
    return body


async def web_analyzer_exception_handler(
    request: Request, exc: WebAnalyzerException
) -> JSONResponse:
    """Handle application specific exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Application exception",
        exception=exc.__class__.__name__,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            message=exc.message,
            details=exc.details,
            request_id=request_id,
        ),
    )


async def request_validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render malformed request bodies as 400 instead of FastAPI's 422."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")

    logger.warning(
        "Request validation failed",
        errors=len(errors),
        location=location,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=create_error_response(
            message="Invalid request",
            details=f"{location}: {first.get('msg')}" if location else first.get("msg"),
            request_id=request_id,
        ),
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
            message=str(exc.detail),
            request_id=request_id,
        ),
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
            message=ErrorMessages.INTERNAL_ERROR,
            request_id=request_id,
        ),
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to add request context, correlation IDs and security headers."""

    async def dispatch(self, request: Request, call_next):
        # Generate correlation ID for request tracking
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        from webanalyzer.config.logging import add_request_context

        add_request_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains"
        )

        return response
