"""
Structured error types for Pulse.

Lease, channel and scheduler tick paths never raise: they return explicit
success values so that nothing crosses the scheduler boundary.  Errors in
this module are raised at the *write boundary* (bad interval, bad model
string, bad configuration) and by collaborator adapters (task store, action
sinks), where the caller decides whether to report or propagate.

Manifesto:
    - **Typed Error Hierarchy:** one base class, a handful of domains
    - **Explicit Retry Semantics:** storage hiccups are retryable next tick,
      validation errors never are
    - **Rich Context:** errors carry the path or value that caused them
    - **Error Chaining:** original ``OSError`` kept as ``cause``

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────┐
        │                      PulseError                           │
        │  (category, retryable, context, cause)                    │
        ├──────────────────────────────────────────────────────────┤
        │                                                           │
        │  StorageError        ValidationError       ConfigError    │
        │  (STORAGE, retry)    (VALIDATION)          (CONFIG)       │
        │                           │                               │
        │                      InvalidIntervalError                 │
        │                      InvalidModelError                    │
        │                                                           │
        │  DispatchError                                            │
        │  (DISPATCH, retry)                                        │
        └──────────────────────────────────────────────────────────┘

Tags:
    errors, error-hierarchy, retry-logic, pulse-core

Doc-Types:
    api-reference
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and reporting."""

    STORAGE = "STORAGE"  # Disk full, permission, unreadable file
    VALIDATION = "VALIDATION"  # Out-of-range interval, malformed model id
    CONFIG = "CONFIG"  # Invalid settings / environment
    DISPATCH = "DISPATCH"  # Execution surface refused or crashed
    INTERNAL = "INTERNAL"  # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error for logging."""

    path: str | None = None
    value: Any = None
    pid: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result: dict[str, Any] = {}
        for key in ("path", "value", "pid"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class PulseError(Exception):
    """
    Base exception for all Pulse errors.

    Subclasses set ``default_category`` and ``default_retryable``.

    Examples:
        >>> error = PulseError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.retryable
        False
        >>> StorageError("disk full").retryable
        True
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> PulseError:
        """
        Add context to this error (fluent API).

        Usage:
            raise StorageError("Unreadable").with_context(path=str(path))
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# STORAGE
# =============================================================================


class StorageError(PulseError):
    """Filesystem failure (permission, disk full, unreadable content).

    Transient by default: the next tick retries the same operation.
    """

    default_category = ErrorCategory.STORAGE
    default_retryable = True


# =============================================================================
# VALIDATION (write boundary)
# =============================================================================


class ValidationError(PulseError):
    """Rejected input at the write boundary. Never retryable."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False


class InvalidIntervalError(ValidationError):
    """Interval outside ``[5m, 24h]`` (and not the ``0`` sentinel) or unparseable."""

    def __init__(self, value: Any, message: str | None = None, **kwargs: Any):
        super().__init__(
            message or f"Invalid interval {value!r}: use e.g. '30m', '1h', or '0' to disable",
            **kwargs,
        )
        self.context.value = value


class InvalidModelError(ValidationError):
    """Pinned model is not ``provider/model-id`` or ``auto``."""

    def __init__(self, value: Any, **kwargs: Any):
        super().__init__(
            f"Model must be 'provider/model-id' or 'auto', got {value!r}",
            **kwargs,
        )
        self.context.value = value


# =============================================================================
# CONFIGURATION
# =============================================================================


class ConfigError(PulseError):
    """Invalid settings or environment. Never retryable."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# DISPATCH
# =============================================================================


class DispatchError(PulseError):
    """The execution surface could not accept a check-in payload."""

    default_category = ErrorCategory.DISPATCH
    default_retryable = True


# =============================================================================
# HELPERS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check whether an error is worth retrying on the next tick."""
    if isinstance(error, PulseError):
        return error.retryable
    return isinstance(error, OSError)


def categorize_error(error: Exception) -> ErrorCategory:
    """Map any exception to an :class:`ErrorCategory`."""
    if isinstance(error, PulseError):
        return error.category
    if isinstance(error, OSError):
        return ErrorCategory.STORAGE
    if isinstance(error, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "PulseError",
    "StorageError",
    "ValidationError",
    "InvalidIntervalError",
    "InvalidModelError",
    "ConfigError",
    "DispatchError",
    "is_retryable",
    "categorize_error",
]
