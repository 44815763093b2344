"""
Error types and helpers shared across the sync core.

Every failure is recoverable: an operation that fails leaves the local views
stale but consistent and signals the failure to the caller of that operation.
"""

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from canvass.config.logging_config import get_logger

T = TypeVar("T")
logger = get_logger(__name__)


class ErrorSeverity(Enum):
    """Severity levels for application errors."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AppError(Exception):
    """Base class for all errors raised by the sync core."""

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        cause: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.cause = cause
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert the error to a dictionary."""
        result = {
            "error_type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
        }
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        return self.message


class StoreError(AppError):
    """Errors reported by an entity store."""

    def __init__(self, message: str, path: Optional[str] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.path = path
        if path is not None:
            self.details.setdefault("path", path)


class NotFoundError(StoreError):
    """The referenced document was absent at read time."""

    def __init__(self, path: str, **kwargs: Any):
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        super().__init__(f"Document not found: {path}", path=path, **kwargs)


class WriteFailedError(StoreError):
    """A create, update, delete or batch write was rejected or never acknowledged."""

    def __init__(self, message: str, path: Optional[str] = None, code: Optional[str] = None, **kwargs: Any):
        super().__init__(message, path=path, **kwargs)
        self.code = code
        if code is not None:
            self.details.setdefault("code", code)


class SubscriptionInterruptedError(StoreError):
    """The transport carrying live snapshots dropped."""

    def __init__(self, message: str = "Subscription stream interrupted", **kwargs: Any):
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        super().__init__(message, **kwargs)


class ExportError(AppError):
    """The visit report could not be written."""

    def __init__(self, message: str, path: Optional[Any] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.path = path
        if path is not None:
            self.details.setdefault("path", str(path))


class ServiceError(AppError):
    """An optional external service (address lookup) failed."""

    def __init__(self, message: str, service: str = "", operation: str = "", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.service = service
        self.operation = operation


class ValidationRejected(AppError):
    """Input that is dropped without a user-visible error (e.g. an empty label)."""

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("severity", ErrorSeverity.INFO)
        super().__init__(message, **kwargs)


async def safe_execute(
    operation: Callable[..., Awaitable[T]],
    *args: Any,
    default: Optional[T] = None,
    error_types: tuple = (AppError,),
    on_error: Optional[Callable[[AppError], None]] = None,
    **kwargs: Any
) -> Optional[T]:
    """
    Await an operation and turn expected failures into a default value.

    Errors outside ``error_types`` propagate unchanged.

    Args:
        operation: Coroutine function to call
        *args: Positional arguments for the operation
        default: Value returned when the operation fails
        error_types: Exception types handled here
        on_error: Callback receiving the handled error
        **kwargs: Keyword arguments for the operation

    Returns:
        The operation result, or ``default`` on a handled failure
    """
    try:
        return await operation(*args, **kwargs)
    except error_types as e:
        error = e if isinstance(e, AppError) else AppError(str(e), cause=e)
        level = logging.WARNING if error.severity in (ErrorSeverity.INFO, ErrorSeverity.WARNING) else logging.ERROR
        logger.log(level, f"{getattr(operation, '__name__', 'operation')} failed: {error.to_dict()}")
        if on_error is not None:
            on_error(error)
        return default
