"""
Errors raised by the master server.

Every error knows its wire code and HTTP status, so handlers can answer
with `to_dict()` and clients can rebuild the same class with
`error_from_dict`. Transient failures are marked retryable for
`ErrorRecovery.exponential_backoff`.
"""

from typing import Optional, Dict, Any, List, Type, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from contextlib import contextmanager
import asyncio
import inspect

from .logging import get_logger


logger = get_logger("master-server.errors")


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification."""
    DATABASE = "database"
    VALIDATION = "validation"
    OWNERSHIP = "ownership"
    NOT_FOUND = "not_found"
    CONFIGURATION = "configuration"
    NETWORK = "network"
    INTERNAL = "internal"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    component: Optional[str] = None
    operation: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class MasterServerError(Exception):
    """Base exception for all master server errors."""

    code: str = "MASTER_SERVER_ERROR"
    default_message: str = "An error occurred in the master server"
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN
    is_retryable: bool = False
    http_status: int = 500

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
    ):
        """Initialize master server error."""
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        self.cause = cause
        super().__init__(self.message)

    def get_suggestions(self) -> List[str]:
        """Get error resolution suggestions."""
        return []

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "category": self.category.value,
                "is_retryable": self.is_retryable,
                "suggestions": self.get_suggestions(),
            }
        }


class ConfigurationError(MasterServerError):
    """Configuration errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    category = ErrorCategory.CONFIGURATION

    def get_suggestions(self) -> List[str]:
        return [
            "Check your configuration file syntax",
            "Verify MASTER_SERVER_* environment variables",
        ]


class NetworkError(MasterServerError):
    """Failures talking to a remote master server."""
    code = "NETWORK_ERROR"
    default_message = "Network error occurred"
    category = ErrorCategory.NETWORK
    is_retryable = True
    http_status = 502


# Validation Errors

class ValidationError(MasterServerError):
    """Input validation errors."""
    code = "VALIDATION_ERROR"
    default_message = "Validation error"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING
    http_status = 400

    def __init__(self, field: str, value: Any, constraint: str, **kwargs):
        self.field = field
        self.value = value
        self.constraint = constraint
        message = kwargs.pop("message", None) or f"Validation failed for field '{field}': {constraint}"
        super().__init__(message, **kwargs)

    def get_suggestions(self) -> List[str]:
        return [
            f"Check the value of field '{self.field}'",
            f"Ensure it meets the constraint: {self.constraint}"
        ]


class InvalidInputError(ValidationError):
    """Malformed or missing request fields."""
    code = "INVALID_INPUT"
    default_message = "Invalid input"


# Registry Errors

class NotFoundError(MasterServerError):
    """Unknown registration id."""
    code = "NOT_FOUND"
    default_message = "Server may not exist; register first"
    category = ErrorCategory.NOT_FOUND
    severity = ErrorSeverity.WARNING

    def get_suggestions(self) -> List[str]:
        return ["Register the server again with POST /server"]


class OwnershipError(MasterServerError):
    """Caller does not own the registration it is trying to change."""
    code = "OWNERSHIP_ERROR"
    default_message = "Caller does not own this registration"
    category = ErrorCategory.OWNERSHIP
    severity = ErrorSeverity.WARNING
    http_status = 400


class PortMismatchError(OwnershipError):
    code = "PORT_MISMATCH"
    default_message = "Port mismatch"

    def get_suggestions(self) -> List[str]:
        return ["Re-register instead of heartbeating with a different port"]


class AddressMismatchError(OwnershipError):
    code = "ADDRESS_MISMATCH"
    default_message = "Address mismatch"

    def get_suggestions(self) -> List[str]:
        return ["Only the address that registered a server may change it; re-register from the new address"]


class IdentityMismatchError(OwnershipError):
    code = "IDENTITY_MISMATCH"
    default_message = "Payload id does not match the id in the path"

    def get_suggestions(self) -> List[str]:
        return ["Send the same id in the request body as in the URL"]


# Database Errors

class DatabaseError(MasterServerError):
    """Database-related errors."""
    code = "DATABASE_ERROR"
    default_message = "Database error occurred"
    category = ErrorCategory.DATABASE


class StoreUnavailableError(DatabaseError):
    """The registry store could not be reached or timed out."""
    code = "STORE_UNAVAILABLE"
    default_message = "Registry store unavailable"
    is_retryable = True

    def get_suggestions(self) -> List[str]:
        return ["Retry the request with backoff"]


ERRORS_BY_CODE: Dict[str, Type[MasterServerError]] = {
    cls.code: cls
    for cls in (
        MasterServerError,
        ConfigurationError,
        NetworkError,
        ValidationError,
        InvalidInputError,
        NotFoundError,
        OwnershipError,
        PortMismatchError,
        AddressMismatchError,
        IdentityMismatchError,
        DatabaseError,
        StoreUnavailableError,
    )
}


def error_from_dict(data: Dict[str, Any], fallback_message: str = "") -> MasterServerError:
    """Rebuild an error raised on the server side from its JSON body."""
    body = data.get("error") if isinstance(data, dict) else None
    if not isinstance(body, dict):
        return MasterServerError(str(body or fallback_message) or None)

    error_class = ERRORS_BY_CODE.get(body.get("code"), MasterServerError)
    message = body.get("message") or fallback_message
    if issubclass(error_class, ValidationError):
        return error_class(field="unknown", value=None, constraint=message, message=message)
    return error_class(message)


# Error Context Manager

@contextmanager
def error_context(
    component: str,
    operation: str,
    reraise: bool = True,
    **metadata
):
    """
    Tag errors raised inside the block with where they happened.

    Registry errors keep their class and gain component, operation and
    metadata (inner tags win). Anything else is logged and wrapped in a
    plain MasterServerError with the default message; the original
    exception is kept as `cause`.

    Args:
        component: Component name
        operation: Operation name
        reraise: Raise the (possibly wrapped) error instead of suppressing it
        **metadata: Extra context, e.g. the caller address
    """
    context = ErrorContext(component=component, operation=operation, metadata=dict(metadata))

    try:
        yield context
    except MasterServerError as e:
        e.context.component = e.context.component or component
        e.context.operation = e.context.operation or operation
        for key, value in metadata.items():
            e.context.metadata.setdefault(key, value)
        if reraise:
            raise
    except Exception as e:
        logger.error("unexpected_error", component=component, operation=operation,
                     error=str(e), error_type=type(e).__name__, exc_info=True)
        if reraise:
            raise MasterServerError(context=context, cause=e) from e


# Error Recovery

class ErrorRecovery:
    """Error recovery strategies."""

    @staticmethod
    async def exponential_backoff(
        func: Callable,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exceptions: tuple = (MasterServerError,)
    ) -> Any:
        """
        Call func until it succeeds, doubling the pause after each failure.

        Only errors listed in `exceptions` are retried, and of those only the
        ones flagged is_retryable (foreign exceptions count as retryable).
        Anything else propagates at once; after max_retries attempts the
        last error is raised.

        Args:
            func: Sync or async callable taking no arguments
            max_retries: Maximum number of attempts
            base_delay: Pause after the first failure, in seconds
            max_delay: Upper bound for any pause
            exceptions: Exception types eligible for a retry
        """
        attempts = max(1, max_retries)

        for attempt in range(1, attempts + 1):
            try:
                result = func()
                if inspect.isawaitable(result):
                    result = await result
                return result
            except exceptions as e:
                if not getattr(e, "is_retryable", True) or attempt == attempts:
                    logger.error("retry_gave_up", attempts=attempt, error=str(e),
                                 error_code=getattr(e, "code", None))
                    raise

                delay = min(base_delay * 2 ** (attempt - 1), max_delay)
                logger.warning("retrying_after_error", attempt=attempt,
                               max_retries=attempts, delay=delay, error=str(e))
                await asyncio.sleep(delay)


__all__ = [
    'MasterServerError',
    'ErrorContext',
    'ErrorSeverity',
    'ErrorCategory',
    'ConfigurationError',
    'NetworkError',
    'ValidationError',
    'InvalidInputError',
    'NotFoundError',
    'OwnershipError',
    'PortMismatchError',
    'AddressMismatchError',
    'IdentityMismatchError',
    'DatabaseError',
    'StoreUnavailableError',
    'ERRORS_BY_CODE',
    'error_from_dict',
    'error_context',
    'ErrorRecovery',
]
