"""Base runner with shared lifecycle logic.

Provides ``BaseBacktestRunner`` with the patterns every backend shares
(logging, error wrapping, result assembly, health timing) and
``StubBacktestRunner``, an in-memory backend for tests and dry runs.

Architecture:

    .. code-block:: text

        BacktestRunner (Protocol)
              │
              ▼
        BaseBacktestRunner
        ├── run_backtest / run_hyperopt  → logging + error wrapping → _do_submit()
        ├── get_*_status                 → _do_status()
        ├── get_*_result                 → _do_status() + _do_read_logs() → build_result()
        ├── get_*_logs                   → _do_logs()
        ├── stop_*                       → logging                    → _do_stop()
        ├── delete_*                     → logging, warn on CleanupError → _do_delete()
        ├── list_*                       → _do_list()
        └── health_check                 → latency timing             → _do_health()
              │
        ┌─────┴──────────────────────┐
        ▼                            ▼
    KubernetesBacktestRunner     StubBacktestRunner
    (cluster jobs)               (in-memory)

Usage:
    runner = StubBacktestRunner()
    await runner.run_backtest(spec)
    runner.complete(TaskKind.BACKTEST, spec.id, logs=LOG_WITH_MARKERS)
    result = await runner.get_backtest_result(spec.id)

Tags:
    backtide, runner, base, adapter-ABC
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field, replace
from datetime import datetime

from backtide.core.enums import TaskKind, TaskState
from backtide.core.errors import (
    BacktideError,
    CleanupError,
    ProvisioningError,
    TaskNotFoundError,
    TaskNotTerminalError,
)
from backtide.core.logging import LogContext, get_logger
from backtide.runner._types import (
    BackendHealth,
    BacktestResult,
    BacktestSpec,
    BacktestStatus,
    HyperOptResult,
    HyperOptSpec,
    HyperOptStatus,
    LogOptions,
    LogStream,
    TaskResult,
    TaskStatus,
    _utcnow,
)
from backtide.runner.results import build_result
from backtide.runner.shell import sanitize_strategy_filename

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Log streams
# ---------------------------------------------------------------------------

class StaticLogStream:
    """``LogStream`` over an in-memory buffer."""

    def __init__(self, data: bytes | str) -> None:
        self._data = data.encode() if isinstance(data, str) else data
        self._closed = False

    async def chunks(self) -> AsyncIterator[bytes]:
        if self._data and not self._closed:
            yield self._data

    async def lines(self) -> AsyncIterator[str]:
        if self._closed:
            return
        for line in self._data.decode(errors="replace").splitlines():
            yield line

    async def read_text(self) -> str:
        return "" if self._closed else self._data.decode(errors="replace")

    async def close(self) -> None:
        self._closed = True


# ---------------------------------------------------------------------------
# Base runner
# ---------------------------------------------------------------------------

class BaseBacktestRunner:
    """Base class for backtest/hyperopt backends.

    Subclasses MUST implement:
        _do_submit, _do_status, _do_read_logs, _do_logs,
        _do_stop, _do_delete, _do_list, _do_health

    Subclasses MAY override:
        close (default does nothing)

    .. code-block:: text

        run_backtest(spec)
          ├── log: submit_requested
          ├── _do_submit(spec)     ← subclass implements
          ├── log: submitted
          └── on non-backtide error: ProvisioningError(cause=exc)

        get_backtest_result(id)
          ├── _do_status(kind, id)  ← NotFound propagates
          ├── not terminal → TaskNotTerminalError
          ├── _do_read_logs(kind, id), failures degrade to "no logs"
          └── build_result(...)    ← never raises on bad output
    """

    @property
    def backend_name(self) -> str:
        """Unique name for this backend."""
        raise NotImplementedError

    # ── Submit ───────────────────────────────────────────────────────────

    async def _submit(self, spec: BacktestSpec) -> str:
        kind = spec.kind
        async with LogContext(task_kind=kind.value, task_id=spec.id):
            logger.info("submit_requested", backend=self.backend_name, strategy=spec.strategy_name)
            try:
                handle = await self._do_submit(spec)
            except BacktideError:
                raise
            except Exception as exc:
                logger.error("submit_failed", backend=self.backend_name, error=str(exc))
                raise ProvisioningError(
                    f"submit of {kind.value} {spec.id!r} failed: {exc}", cause=exc,
                ).with_context(task_kind=kind.value, task_id=spec.id) from exc
            logger.info("submitted", backend=self.backend_name, handle=handle)
            return handle

    async def run_backtest(self, spec: BacktestSpec) -> None:
        await self._submit(spec)

    async def run_hyperopt(self, spec: HyperOptSpec) -> str:
        """Submit a hyperopt run and return its job handle."""
        return await self._submit(spec)

    # ── Status / result ──────────────────────────────────────────────────

    async def get_backtest_status(self, task_id: str) -> BacktestStatus:
        return await self._do_status(TaskKind.BACKTEST, task_id)

    async def get_hyperopt_status(self, task_id: str) -> HyperOptStatus:
        return await self._do_status(TaskKind.HYPEROPT, task_id)

    async def _result(self, kind: TaskKind, task_id: str) -> TaskResult:
        status = await self._do_status(kind, task_id)
        if not status.is_terminal:
            raise TaskNotTerminalError(kind.value, task_id, status.state.value)
        try:
            text = await self._do_read_logs(kind, task_id)
        except BacktideError as exc:
            logger.warning(
                "result_logs_unavailable",
                task_kind=kind.value, task_id=task_id, error=exc.message,
            )
            text = ""
        return build_result(kind, status, text, strategy_name=status.strategy_name)

    async def get_backtest_result(self, task_id: str) -> BacktestResult:
        return await self._result(TaskKind.BACKTEST, task_id)

    async def get_hyperopt_result(self, task_id: str) -> HyperOptResult:
        return await self._result(TaskKind.HYPEROPT, task_id)

    # ── Logs ─────────────────────────────────────────────────────────────

    async def get_backtest_logs(self, task_id: str, opts: LogOptions | None = None) -> LogStream:
        return await self._do_logs(TaskKind.BACKTEST, task_id, opts or LogOptions())

    async def get_hyperopt_logs(self, task_id: str, opts: LogOptions | None = None) -> LogStream:
        return await self._do_logs(TaskKind.HYPEROPT, task_id, opts or LogOptions())

    # ── Stop / delete ────────────────────────────────────────────────────

    async def _stop(self, kind: TaskKind, task_id: str) -> None:
        logger.info("stop_requested", task_kind=kind.value, task_id=task_id, backend=self.backend_name)
        await self._do_stop(kind, task_id)

    async def _delete(self, kind: TaskKind, task_id: str) -> None:
        logger.info("delete_requested", task_kind=kind.value, task_id=task_id, backend=self.backend_name)
        try:
            await self._do_delete(kind, task_id)
        except CleanupError as exc:
            logger.warning(
                "delete_incomplete",
                task_kind=kind.value, task_id=task_id, failures=len(exc.failures),
            )
            raise

    async def stop_backtest(self, task_id: str) -> None:
        await self._stop(TaskKind.BACKTEST, task_id)

    async def stop_hyperopt(self, task_id: str) -> None:
        await self._stop(TaskKind.HYPEROPT, task_id)

    async def delete_backtest(self, task_id: str) -> None:
        await self._delete(TaskKind.BACKTEST, task_id)

    async def delete_hyperopt(self, task_id: str) -> None:
        await self._delete(TaskKind.HYPEROPT, task_id)

    # ── Listing ──────────────────────────────────────────────────────────

    async def list_backtests(self) -> list[BacktestStatus]:
        return await self._do_list(TaskKind.BACKTEST)

    async def list_hyperopts(self) -> list[HyperOptStatus]:
        return await self._do_list(TaskKind.HYPEROPT)

    # ── Health ───────────────────────────────────────────────────────────

    async def health_check(self) -> BackendHealth:
        """Health check with latency timing; never raises."""
        start = time.monotonic()
        try:
            result = await self._do_health()
        except Exception as exc:
            logger.warning("health_check_failed", backend=self.backend_name, error=str(exc))
            return BackendHealth(
                healthy=False,
                backend=self.backend_name,
                message=str(exc),
                latency_ms=round((time.monotonic() - start) * 1000, 2),
            )
        return replace(result, latency_ms=round((time.monotonic() - start) * 1000, 2))

    async def close(self) -> None:
        """Release backend resources."""

    # ── Subclass hooks ───────────────────────────────────────────────────

    async def _do_submit(self, spec: BacktestSpec) -> str:
        raise NotImplementedError

    async def _do_status(self, kind: TaskKind, task_id: str) -> TaskStatus:
        raise NotImplementedError

    async def _do_read_logs(self, kind: TaskKind, task_id: str) -> str:
        raise NotImplementedError

    async def _do_logs(self, kind: TaskKind, task_id: str, opts: LogOptions) -> LogStream:
        raise NotImplementedError

    async def _do_stop(self, kind: TaskKind, task_id: str) -> None:
        raise NotImplementedError

    async def _do_delete(self, kind: TaskKind, task_id: str) -> None:
        raise NotImplementedError

    async def _do_list(self, kind: TaskKind) -> list:
        raise NotImplementedError

    async def _do_health(self) -> BackendHealth:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Stub runner
# ---------------------------------------------------------------------------

@dataclass
class _StubTask:
    spec: BacktestSpec
    status: TaskStatus
    logs: str = ""
    stopped: bool = False
    created_at: datetime = field(default_factory=_utcnow)


class StubBacktestRunner(BaseBacktestRunner):
    """In-memory backend.

    Tasks start ``pending``; tests drive them with ``start``, ``complete``
    and ``fail``.

    Attributes:
        tasks: ``{(kind, task_id): _StubTask}``
        fail_submit: when True, ``_do_submit`` raises
        healthy: value reported by ``health_check``
    """

    def __init__(self) -> None:
        self.tasks: dict[tuple[TaskKind, str], _StubTask] = {}
        self.fail_submit = False
        self.healthy = True
        self.closed = False

    @property
    def backend_name(self) -> str:
        return "stub"

    def _status_type(self, kind: TaskKind) -> type[TaskStatus]:
        return HyperOptStatus if kind is TaskKind.HYPEROPT else BacktestStatus

    def _get(self, kind: TaskKind, task_id: str) -> _StubTask:
        try:
            return self.tasks[(kind, task_id)]
        except KeyError:
            raise TaskNotFoundError(kind.value, task_id) from None

    # ── Test drivers ─────────────────────────────────────────────────────

    def start(self, kind: TaskKind, task_id: str) -> None:
        task = self._get(kind, task_id)
        task.status.state = TaskState.RUNNING
        task.status.started_at = _utcnow()

    def complete(self, kind: TaskKind, task_id: str, *, logs: str = "", exit_code: int = 0) -> None:
        task = self._get(kind, task_id)
        now = _utcnow()
        task.status.state = TaskState.COMPLETED
        task.status.started_at = task.status.started_at or now
        task.status.completed_at = now
        task.status.progress = 100.0
        task.status.exit_code = exit_code
        task.logs = logs

    def fail(self, kind: TaskKind, task_id: str, *, message: str = "", logs: str = "") -> None:
        task = self._get(kind, task_id)
        task.status.state = TaskState.FAILED
        task.status.error_message = message
        task.status.completed_at = _utcnow()
        task.logs = logs

    # ── Hooks ────────────────────────────────────────────────────────────

    async def _do_submit(self, spec: BacktestSpec) -> str:
        if self.fail_submit:
            raise RuntimeError("Stub submit failure (fail_submit=True)")
        job_name = f"stub-{spec.kind.value}-{spec.id}"
        status = self._status_type(spec.kind)(
            task_id=spec.id, job_name=job_name, state=TaskState.PENDING, created_at=_utcnow(),
            strategy_name=sanitize_strategy_filename(spec.strategy_name),
        )
        self.tasks[(spec.kind, spec.id)] = _StubTask(spec=spec, status=status)
        return job_name

    async def _do_status(self, kind: TaskKind, task_id: str) -> TaskStatus:
        return replace(self._get(kind, task_id).status)

    async def _do_read_logs(self, kind: TaskKind, task_id: str) -> str:
        return self._get(kind, task_id).logs

    async def _do_logs(self, kind: TaskKind, task_id: str, opts: LogOptions) -> LogStream:
        text = self._get(kind, task_id).logs
        if opts.tail is not None:
            text = "\n".join(text.splitlines()[-opts.tail:]) if opts.tail > 0 else ""
        return StaticLogStream(text)

    async def _do_stop(self, kind: TaskKind, task_id: str) -> None:
        task = self.tasks.get((kind, task_id))
        if task is not None and not task.status.is_terminal:
            task.stopped = True
            task.status.state = TaskState.FAILED
            task.status.error_message = "stopped"

    async def _do_delete(self, kind: TaskKind, task_id: str) -> None:
        self.tasks.pop((kind, task_id), None)

    async def _do_list(self, kind: TaskKind) -> list:
        return [replace(t.status) for (k, _), t in self.tasks.items() if k is kind]

    async def _do_health(self) -> BackendHealth:
        return BackendHealth(healthy=self.healthy, backend=self.backend_name)

    async def close(self) -> None:
        self.closed = True
