"""Task kinds and lifecycle states."""

from __future__ import annotations

from enum import Enum


class TaskKind(str, Enum):
    """Kind of workload. The value is used verbatim in names and labels."""

    BACKTEST = "backtest"
    HYPEROPT = "hyperopt"
    DATA_DOWNLOAD = "data-download"


class TaskState(str, Enum):
    """Lifecycle state derived from job counters.

    .. code-block:: text

        PENDING ──► RUNNING ──► COMPLETED
           │           │
           └───────────┴──────► FAILED
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.FAILED)


class DataDownloadState(str, Enum):
    """Lifecycle state of a data-download task."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DataDownloadState.COMPLETED, DataDownloadState.FAILED)
