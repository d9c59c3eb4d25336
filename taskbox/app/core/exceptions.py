"""
Custom exceptions and error handlers for consistent error responses.

Provides the task error taxonomy used by the enqueue API, the handlers
and the dispatcher, plus the global exception handlers for the ops API.
"""

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger("taskbox.api")


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class TaskValidationError(AppException):
    """
    Raised when a payload does not match the schema of its task type.

    Always a programmer error: never retried.
    """

    def __init__(self, task_type: str, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=f"Invalid payload for task '{task_type}': {message}",
            error_code="ERR_TASK_VALIDATION",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"task_type": task_type, **(details or {})}
        )
        self.task_type = task_type


class UnknownTaskTypeError(TaskValidationError):
    """Raised when a task type tag has no registered definition."""

    def __init__(self, task_type: str):
        AppException.__init__(
            self,
            message=f"Unknown task type '{task_type}'",
            error_code="ERR_TASK_UNKNOWN_TYPE",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"task_type": task_type}
        )
        self.task_type = task_type


class FatalTaskError(AppException):
    """Raised by a handler when retrying cannot possibly help."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_TASK_FATAL",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details
        )


class TransientTaskError(AppException):
    """Raised for failures that are expected to clear up on a later attempt."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_TASK_TRANSIENT",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details
        )


class ProviderError(TransientTaskError):
    """Raised when an external provider (Twilio, Mailchimp, ...) call fails."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(
            message=f"{provider}: {message}",
            details={"provider": provider, "status": status_code, "detail": detail}
        )
        self.provider = provider
        self.provider_status = status_code
        self.detail = detail

    @property
    def is_network_error(self) -> bool:
        """True when the provider never answered (connect/read failure, timeout)."""
        return self.provider_status is None


class PaymentDeclinedError(AppException):
    """Raised when a charge is declined or the payer has no usable payment method."""

    def __init__(self, message: str, decline_code: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="ERR_PAYMENT_DECLINED",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"decline_code": decline_code}
        )
        self.decline_code = decline_code


class DispatcherAlreadyStartedError(AppException):
    """Raised when a second dispatcher loop would be started in one process."""

    def __init__(self):
        super().__init__(
            message="Dispatcher is already running in this process",
            error_code="ERR_DISPATCHER_STARTED",
            status_code=status.HTTP_409_CONFLICT
        )


class AuthenticationError(AppException):
    """Raised for authentication failures."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            message=message,
            error_code="ERR_AUTH_001",
            status_code=status.HTTP_401_UNAUTHORIZED
        )


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": str(resource_id) if resource_id else None}
        )


def describe_error(error: BaseException) -> str:
    """Short, storable description of an error for `last_error`."""
    message = str(error)
    if not message:
        return type(error).__name__
    return message


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": exc.errors()
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s", type(exc).__name__)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
