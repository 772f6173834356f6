"""Backend-neutral types and protocols for workload runners.

Specs go in, status snapshots and result records come out. Nothing here
knows about a particular cluster; the clustered backend in
``backtide.kubernetes`` and the in-memory ``StubBacktestRunner`` both speak
these types.

Architecture:

    .. code-block:: text

        BacktestSpec ──┐                        ┌── BacktestStatus
        HyperOptSpec ──┼──► BacktestRunner ─────┼── HyperOptStatus
                       │                        ├── BacktestResult / HyperOptResult
                       │                        └── LogStream
        DataDownloadSpec ──► DataDownloader ───── DataDownloadStatus

    Status objects are snapshots. They are recomputed from cluster state on
    every query and never persisted here.

Tags:
    backtide, runner, protocol, types, dataclasses
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from backtide.core.enums import DataDownloadState, TaskKind, TaskState


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# Specs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResourceLimits:
    """Container sizing hints in cluster quantity notation.

    Example:
        >>> ResourceLimits(cpu_request="500m", memory_limit="2Gi").to_dict()
        {'cpu_request': '500m', 'memory_limit': '2Gi'}
    """

    cpu_request: str | None = None
    cpu_limit: str | None = None
    memory_request: str | None = None
    memory_limit: str | None = None

    def to_dict(self) -> dict[str, str]:
        """Serialize non-None fields."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    def merged_over(self, defaults: ResourceLimits | None) -> ResourceLimits:
        """Fill unset fields from *defaults*."""
        if defaults is None:
            return self
        return ResourceLimits(
            cpu_request=self.cpu_request or defaults.cpu_request,
            cpu_limit=self.cpu_limit or defaults.cpu_limit,
            memory_request=self.memory_request or defaults.memory_request,
            memory_limit=self.memory_limit or defaults.memory_limit,
        )


@dataclass(frozen=True)
class BacktestSpec:
    """A backtest to run.

    Empty ``strategy_code`` or ``config`` are accepted; the workload fails
    on its own in that case.
    """

    id: str
    strategy_name: str
    strategy_code: str = ""
    config: Mapping[str, Any] = field(default_factory=dict)
    freqtrade_version: str | None = None
    environment: Mapping[str, str] = field(default_factory=dict)
    resources: ResourceLimits | None = None
    data_download_url: str | None = None

    @property
    def kind(self) -> TaskKind:
        return TaskKind.BACKTEST


@dataclass(frozen=True)
class HyperOptSpec(BacktestSpec):
    """A hyperparameter optimization run."""

    epochs: int = 100
    spaces: tuple[str, ...] = ()
    loss_function: str | None = None

    @property
    def kind(self) -> TaskKind:
        return TaskKind.HYPEROPT


@dataclass(frozen=True)
class ExchangeDownload:
    """Download parameters for one exchange."""

    name: str
    pairs_pattern: str
    timeframes: tuple[str, ...] = ("5m",)
    days: int = 30
    trading_mode: str = "spot"


@dataclass(frozen=True)
class DataDownloadSpec:
    """A historical market-data download.

    ``existing_data_url`` seeds the working directory with previously
    downloaded data (best-effort). ``upload_url`` receives the resulting
    archive via HTTP PUT.
    """

    id: str
    exchanges: tuple[ExchangeDownload, ...] = ()
    existing_data_url: str | None = None
    upload_url: str | None = None
    image: str | None = None
    resources: ResourceLimits | None = None

    @property
    def kind(self) -> TaskKind:
        return TaskKind.DATA_DOWNLOAD


# ---------------------------------------------------------------------------
# Status snapshots
# ---------------------------------------------------------------------------

@dataclass
class ContainerUsage:
    """Resource usage of a workload's main container.

    CPU is a percentage of one core, everything else is bytes.
    """

    cpu_percent: float = 0.0
    memory_bytes: int = 0
    network_rx_bytes: int = 0
    network_tx_bytes: int = 0
    block_read_bytes: int = 0
    block_write_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TaskStatus:
    """Point-in-time view of a backtest or hyperopt task."""

    task_id: str
    job_name: str
    state: TaskState
    progress: float = 0.0
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    exit_code: int | None = None
    error_message: str = ""
    pod_name: str | None = None
    strategy_name: str | None = None
    usage: ContainerUsage = field(default_factory=ContainerUsage)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def duration_seconds(self) -> float | None:
        """Completion minus start, when both are known."""
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Serialize for CLI / API output."""
        d: dict[str, Any] = {
            "task_id": self.task_id,
            "job_name": self.job_name,
            "state": self.state.value,
            "progress": self.progress,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }
        if self.exit_code is not None:
            d["exit_code"] = self.exit_code
        if self.error_message:
            d["error_message"] = self.error_message
        if self.pod_name:
            d["pod_name"] = self.pod_name
        if self.strategy_name:
            d["strategy_name"] = self.strategy_name
        d["usage"] = self.usage.to_dict()
        return d


@dataclass
class BacktestStatus(TaskStatus):
    pass


@dataclass
class HyperOptStatus(TaskStatus):
    pass


@dataclass
class DataDownloadStatus:
    """Point-in-time view of a data-download task.

    ``data_available`` is filled from the availability block the download
    script prints once the task has completed.
    """

    task_id: str
    job_name: str
    state: DataDownloadState
    current_phase: str = "pending"
    progress: float = 0.0
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str = ""
    data_available: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "task_id": self.task_id,
            "job_name": self.job_name,
            "state": self.state.value,
            "current_phase": self.current_phase,
            "progress": self.progress,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }
        if self.error_message:
            d["error_message"] = self.error_message
        if self.data_available is not None:
            d["data_available"] = self.data_available
        return d


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class TaskResult:
    """Outcome of a terminal backtest/hyperopt task.

    ``raw_result`` is whatever JSON the workload printed between the result
    markers. When there is nothing usable it holds a single ``error`` key
    describing why, so crashed workloads still yield a record.
    """

    task_id: str
    status: TaskStatus
    raw_result: dict[str, Any]
    logs: str = ""
    duration_seconds: float | None = None

    @property
    def error(self) -> str | None:
        if set(self.raw_result) == {"error"}:
            return str(self.raw_result["error"])
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "state": self.status.state.value,
            "duration_seconds": self.duration_seconds,
            "exit_code": self.status.exit_code,
            "error": self.error,
            "raw_result": self.raw_result,
        }


@dataclass
class BacktestResult(TaskResult):
    """Backtest outcome plus a flat summary of well-known metrics."""

    metrics: dict[str, Any] = field(default_factory=dict)
    freqtrade_version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["metrics"] = dict(self.metrics)
        if self.freqtrade_version:
            d["freqtrade_version"] = self.freqtrade_version
        return d


@dataclass
class HyperOptResult(TaskResult):
    pass


# ---------------------------------------------------------------------------
# Logs / health
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LogOptions:
    """Log retrieval options.

    ``tail`` limits to the last N lines, ``since`` drops lines older than the
    timestamp, ``follow`` keeps the stream open until the container exits or
    the caller closes it.
    """

    follow: bool = False
    tail: int | None = None
    timestamps: bool = False
    since: datetime | None = None


@runtime_checkable
class LogStream(Protocol):
    """Byte stream of a workload's main container output."""

    def chunks(self) -> AsyncIterator[bytes]: ...

    def lines(self) -> AsyncIterator[str]: ...

    async def read_text(self) -> str: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class BackendHealth:
    """Result of a backend health check."""

    healthy: bool
    backend: str
    message: str | None = None
    latency_ms: float | None = None
    metrics_backend: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"healthy": self.healthy, "backend": self.backend}
        if self.message:
            d["message"] = self.message
        if self.latency_ms is not None:
            d["latency_ms"] = self.latency_ms
        if self.metrics_backend is not None:
            d["metrics_backend"] = self.metrics_backend
        return d


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

@runtime_checkable
class BacktestRunner(Protocol):
    """Contract every execution backend implements for backtests/hyperopts.

    .. code-block:: text

        run_* ──► get_*_status (poll) ──► get_*_result / get_*_logs
                         │
                         └──► stop_* (cancel) ──► delete_* (teardown)

    ``get_*_status`` raises ``TaskNotFoundError`` for unknown IDs.
    ``stop_*`` and ``delete_*`` succeed when the task is already gone.
    """

    @property
    def backend_name(self) -> str: ...

    async def run_backtest(self, spec: BacktestSpec) -> None: ...

    async def get_backtest_status(self, task_id: str) -> BacktestStatus: ...

    async def get_backtest_result(self, task_id: str) -> BacktestResult: ...

    async def get_backtest_logs(self, task_id: str, opts: LogOptions | None = None) -> LogStream: ...

    async def stop_backtest(self, task_id: str) -> None: ...

    async def delete_backtest(self, task_id: str) -> None: ...

    async def list_backtests(self) -> list[BacktestStatus]: ...

    async def run_hyperopt(self, spec: HyperOptSpec) -> str: ...

    async def get_hyperopt_status(self, task_id: str) -> HyperOptStatus: ...

    async def get_hyperopt_result(self, task_id: str) -> HyperOptResult: ...

    async def get_hyperopt_logs(self, task_id: str, opts: LogOptions | None = None) -> LogStream: ...

    async def stop_hyperopt(self, task_id: str) -> None: ...

    async def delete_hyperopt(self, task_id: str) -> None: ...

    async def list_hyperopts(self) -> list[HyperOptStatus]: ...

    async def health_check(self) -> BackendHealth: ...

    async def close(self) -> None: ...


@runtime_checkable
class DataDownloader(Protocol):
    """Contract for market-data download backends."""

    async def start_download(self, spec: DataDownloadSpec) -> str: ...

    async def get_download_status(self, task_id: str) -> DataDownloadStatus: ...

    async def get_download_logs(self, task_id: str) -> str: ...

    async def cancel_download(self, task_id: str) -> None: ...

    async def cleanup_download(self, task_id: str) -> None: ...
