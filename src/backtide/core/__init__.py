"""Core primitives shared by every backtide backend."""

from backtide.core.enums import DataDownloadState, TaskKind, TaskState
from backtide.core.errors import (
    BacktideError,
    CleanupError,
    ConfigError,
    ErrorCategory,
    MetricsError,
    ProvisioningError,
    ResultParseError,
    TaskNotFoundError,
    TaskNotTerminalError,
    TransientClusterError,
)

__all__ = [
    "BacktideError",
    "CleanupError",
    "ConfigError",
    "DataDownloadState",
    "ErrorCategory",
    "MetricsError",
    "ProvisioningError",
    "ResultParseError",
    "TaskKind",
    "TaskNotFoundError",
    "TaskNotTerminalError",
    "TaskState",
    "TransientClusterError",
]
