"""
Structured error types for backtide.

Every failure the orchestration layer can surface is one of a small, typed
set of errors. Callers branch on the class (or on ``category`` /
``retryable``) rather than on message text.

Manifesto:
    - **NotFound is distinct:** "never existed" must not look like a
      transient cluster error.
    - **Provisioning never masks:** rollback problems are attached to the
      original failure, never raised in its place.
    - **Results degrade, they don't raise:** unparsable workload output is an
      expected outcome and ends up as a field on the result record.
    - **Cleanup is best-effort:** failures are aggregated and logged.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                      BacktideError                            │
        │          (category, retryable, context, cause)                │
        ├──────────────────────────────────────────────────────────────┤
        │  TaskNotFoundError      NOT_FOUND       never retryable       │
        │  TaskNotTerminalError   STATE           retry later           │
        │  ProvisioningError      PROVISIONING    + rollback_errors     │
        │  TransientClusterError  CLUSTER         retryable             │
        │  CleanupError           CLEANUP         + failures            │
        │  ResultParseError       PARSE           internal only         │
        │  MetricsError           CLUSTER         absorbed by collector │
        │  ConfigError            CONFIG          never retryable       │
        └──────────────────────────────────────────────────────────────┘

    ``ResourceAbsent`` is not part of the public hierarchy: it is the
    internal signal for a cluster 404 so deletes can treat it as success.

Examples:
    >>> err = TaskNotFoundError("backtest", "bt-1")
    >>> err.category
    <ErrorCategory.NOT_FOUND: 'NOT_FOUND'>
    >>> err.with_context(namespace="trading").context["namespace"]
    'trading'

Tags:
    error-handling, exception-hierarchy, retry-logic, backtide
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for routing and retry decisions."""

    NOT_FOUND = "NOT_FOUND"          # Task has no job
    STATE = "STATE"                  # Operation invalid for current state
    PROVISIONING = "PROVISIONING"    # Multi-step create failed
    CLUSTER = "CLUSTER"              # API server / network trouble
    CLEANUP = "CLEANUP"              # Delete left something behind
    PARSE = "PARSE"                  # Workload output unreadable
    CONFIG = "CONFIG"                # Bad backend configuration
    INTERNAL = "INTERNAL"            # Bugs, unexpected state


class BacktideError(Exception):
    """Base exception for all backtide errors.

    Subclasses set ``default_category`` and ``default_retryable`` so that
    most call sites only pass a message.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category if category is not None else self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context: dict[str, Any] = dict(context or {})
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> BacktideError:
        """Attach metadata and return ``self`` for chaining."""
        self.context.update({k: v for k, v in kwargs.items() if v is not None})
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize for structured logging and CLI output."""
        d: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.context:
            d["context"] = dict(self.context)
        if self.cause is not None:
            d["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return d

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class TaskNotFoundError(BacktideError):
    """No job exists for the given task ID."""

    default_category = ErrorCategory.NOT_FOUND

    def __init__(self, task_kind: str, task_id: str, **kwargs: Any) -> None:
        super().__init__(f"{task_kind} {task_id!r} not found", **kwargs)
        self.task_kind = task_kind
        self.task_id = task_id
        self.context.setdefault("task_kind", task_kind)
        self.context.setdefault("task_id", task_id)


class TaskNotTerminalError(BacktideError):
    """A result was requested for a task that has not finished."""

    default_category = ErrorCategory.STATE
    default_retryable = True

    def __init__(self, task_kind: str, task_id: str, state: str, **kwargs: Any) -> None:
        super().__init__(
            f"{task_kind} {task_id!r} is {state}, result not available yet",
            **kwargs,
        )
        self.task_kind = task_kind
        self.task_id = task_id
        self.state = state


class ProvisioningError(BacktideError):
    """Creating a task's cluster resources failed.

    ``rollback_errors`` lists anything that went wrong while undoing the
    partially created resources. The original failure is always the cause.
    """

    default_category = ErrorCategory.PROVISIONING

    def __init__(
        self,
        message: str,
        *,
        rollback_errors: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.rollback_errors: list[str] = list(rollback_errors or [])

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        if self.rollback_errors:
            d["rollback_errors"] = list(self.rollback_errors)
        return d


class TransientClusterError(BacktideError):
    """API server or network error unrelated to task semantics.

    Not retried internally; the caller applies its own retry policy.
    """

    default_category = ErrorCategory.CLUSTER
    default_retryable = True

    def __init__(self, message: str, *, status: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.status = status
        if status is not None:
            self.context.setdefault("http_status", status)


class CleanupError(BacktideError):
    """One or more deletes failed while tearing a task down."""

    default_category = ErrorCategory.CLEANUP

    def __init__(self, message: str, *, failures: list[tuple[str, str]] | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.failures: list[tuple[str, str]] = list(failures or [])

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["failures"] = [{"resource": r, "error": e} for r, e in self.failures]
        return d


class ResultParseError(BacktideError):
    """Workload output did not contain a readable result."""

    default_category = ErrorCategory.PARSE


class MetricsError(BacktideError):
    """A metrics backend query failed. Always absorbed by the collector."""

    default_category = ErrorCategory.CLUSTER
    default_retryable = True


class ConfigError(BacktideError):
    """Backend configuration is missing or invalid."""

    default_category = ErrorCategory.CONFIG


class ResourceAbsent(Exception):
    """A cluster object was not found (HTTP 404)."""

    def __init__(self, resource: str = "") -> None:
        super().__init__(f"{resource} not found" if resource else "not found")
        self.resource = resource


__all__ = [
    "BacktideError",
    "CleanupError",
    "ConfigError",
    "ErrorCategory",
    "MetricsError",
    "ProvisioningError",
    "ResourceAbsent",
    "ResultParseError",
    "TaskNotFoundError",
    "TaskNotTerminalError",
    "TransientClusterError",
]
