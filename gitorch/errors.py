"""
Error classes for gitorch.

Two layers of errors exist:

- Client errors (TransientError, PermanentError) are raised by the
  external-system clients to signal whether a failure is safe to retry.
- ClassifiedError is raised by pipeline stages. It wraps any underlying
  failure with a taxonomy kind, the originating component and operation,
  a read-only detail bag and a recoverable flag chosen by the raising site.

Recovery strategies only ever see ClassifiedError instances.

Error handling contract:
- Errors are exceptions, not values
- A ClassifiedError is immutable once constructed
- The original exception travels in details["original_error"]
"""

from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GitorchError(Exception):
    """Base exception for gitorch."""
    pass


class TransientError(GitorchError):
    """
    Transient error - safe to retry.

    Examples:
    - Rate limit exceeded
    - Network timeout
    - Service temporarily unavailable
    - Connection reset

    Stages classify TransientError as NETWORK_ERROR, which the network
    retry strategy re-invokes up to the configured retry cap.
    """
    pass


class PermanentError(GitorchError):
    """
    Permanent error - do not retry.

    Examples:
    - Invalid input/parameters
    - Resource not found (404)
    - Conflict with an existing resource (409)

    Stages classify PermanentError with the stage's own error kind.
    """
    pass


class InvalidTransitionError(GitorchError):
    """Raised when the pipeline state machine is asked for an illegal move."""
    pass


class ErrorKind(str, Enum):
    """Failure taxonomy for classified errors."""
    INTENT_PARSING_ERROR = "intent_parsing_error"
    TEMPLATE_GENERATION_ERROR = "template_generation_error"
    VALIDATION_ERROR = "validation_error"
    GITOPS_ERROR = "gitops_error"
    DEPLOYMENT_ERROR = "deployment_error"
    REGISTRY_ERROR = "registry_error"
    CONFIGURATION_ERROR = "configuration_error"
    NETWORK_ERROR = "network_error"
    PERMISSION_ERROR = "permission_error"
    RESOURCE_ERROR = "resource_error"


class ClassifiedError(GitorchError):
    """
    A failure wrapped with a taxonomy kind, origin and structured detail.

    Attributes:
        kind: Failure kind
        component: Component that raised the error (e.g. "gitops")
        operation: Operation name within the component (e.g. "merge")
        message: Human-readable message
        details: Read-only detail bag
        recoverable: Whether recovery dispatch may be attempted
        timestamp: Creation time (UTC)
    """

    def __init__(
        self,
        kind: ErrorKind,
        component: str,
        operation: str,
        message: str,
        details: Optional[Mapping[str, Any]] = None,
        recoverable: bool = True,
        timestamp: Optional[datetime] = None,
    ):
        super().__init__(message)
        object.__setattr__(self, "kind", ErrorKind(kind))
        object.__setattr__(self, "component", component)
        object.__setattr__(self, "operation", operation)
        object.__setattr__(self, "message", message)
        object.__setattr__(self, "details", MappingProxyType(dict(details or {})))
        object.__setattr__(self, "recoverable", bool(recoverable))
        object.__setattr__(self, "timestamp", timestamp or _utcnow())

    def __setattr__(self, name: str, value: Any) -> None:
        # Exception machinery sets these while raising
        if name in ("__traceback__", "__cause__", "__context__", "__suppress_context__", "__notes__"):
            object.__setattr__(self, name, value)
            return
        raise AttributeError(f"ClassifiedError is immutable (cannot set {name!r})")

    def __delattr__(self, name: str) -> None:
        raise AttributeError(f"ClassifiedError is immutable (cannot delete {name!r})")

    def __reduce__(self):
        return (
            self.__class__,
            (self.kind, self.component, self.operation, self.message,
             dict(self.details), self.recoverable, self.timestamp),
        )

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.component}.{self.operation}: {self.message}"

    def __repr__(self) -> str:
        return (
            f"ClassifiedError(kind={self.kind.value}, component={self.component!r}, "
            f"operation={self.operation!r}, recoverable={self.recoverable})"
        )

    @property
    def original_error(self) -> Optional[BaseException]:
        return self.details.get("original_error")

    @property
    def retry_count(self) -> int:
        return int(self.details.get("retry_count", 0))

    def with_details(self, recoverable: Optional[bool] = None, **extra: Any) -> "ClassifiedError":
        """Return a copy with extra detail keys (and optionally a new recoverable flag)."""
        merged = dict(self.details)
        merged.update(extra)
        return ClassifiedError(
            kind=self.kind,
            component=self.component,
            operation=self.operation,
            message=self.message,
            details=merged,
            recoverable=self.recoverable if recoverable is None else recoverable,
            timestamp=self.timestamp,
        )

    def to_dict(self) -> dict[str, Any]:
        details = {}
        for key, value in self.details.items():
            if isinstance(value, BaseException):
                details[key] = f"{type(value).__name__}: {value}"
            elif isinstance(value, (str, int, float, bool)) or value is None:
                details[key] = value
            else:
                details[key] = repr(value)
        return {
            "kind": self.kind.value,
            "component": self.component,
            "operation": self.operation,
            "message": self.message,
            "details": details,
            "recoverable": self.recoverable,
            "timestamp": self.timestamp.isoformat(),
        }


def classify(
    exc: BaseException,
    kind: ErrorKind,
    component: str,
    operation: str,
    details: Optional[Mapping[str, Any]] = None,
    recoverable: bool = True,
    retry_count: int = 0,
    max_retries: int = 3,
) -> ClassifiedError:
    """
    Wrap an underlying failure into a ClassifiedError.

    Classification at the stage boundary:
    - ClassifiedError passes through unchanged
    - TransientError, TimeoutError, ConnectionError -> NETWORK_ERROR,
      recoverable while retry_count < max_retries
    - builtin PermissionError -> PERMISSION_ERROR, never recoverable
    - anything else -> the stage's own kind with the caller's recoverable flag

    Args:
        exc: The underlying exception
        kind: Failure kind for non-network, non-permission errors
        component: Originating component name
        operation: Originating operation name
        details: Extra context for the detail bag
        recoverable: Recoverable flag for the stage's own kind
        retry_count: How many times this operation has already been retried
        max_retries: Configured retry cap

    Returns:
        ClassifiedError carrying the original exception as opaque detail
    """
    if isinstance(exc, ClassifiedError):
        return exc

    bag = dict(details or {})
    bag["original_error"] = exc
    bag["error_type"] = type(exc).__name__

    if isinstance(exc, (TransientError, TimeoutError, ConnectionError)):
        bag["retry_count"] = retry_count
        bag["max_retries"] = max_retries
        return ClassifiedError(
            kind=ErrorKind.NETWORK_ERROR,
            component=component,
            operation=operation,
            message=str(exc) or type(exc).__name__,
            details=bag,
            recoverable=retry_count < max_retries,
        )

    if isinstance(exc, PermissionError):
        return ClassifiedError(
            kind=ErrorKind.PERMISSION_ERROR,
            component=component,
            operation=operation,
            message=str(exc) or "permission denied",
            details=bag,
            recoverable=False,
        )

    return ClassifiedError(
        kind=kind,
        component=component,
        operation=operation,
        message=str(exc) or type(exc).__name__,
        details=bag,
        recoverable=recoverable,
    )
