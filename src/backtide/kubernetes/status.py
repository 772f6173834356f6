"""
Status resolution: job counters → task state.

State is derived on every call and never stored. ``resolve`` is a pure read
of cluster state and can be called as often as the caller likes.

    .. code-block:: text

        job.status            state       extra fields
        ──────────────────    ─────────   ──────────────────────────────────
        succeeded > 0         completed   progress=100, completed_at
        failed > 0            failed      error from "Failed" condition
        active > 0            running     started_at
        otherwise             pending

        then, if a pod is still around:
            usage       ← MetricsCollector (floors applied, never raises)
            exit_code   ← terminated state of the "freqtrade" container

    With ``backoff_limit=0`` succeeded and failed cannot both be positive,
    so the order of the first two rows never matters.

Tags:
    backtide, kubernetes, status, state-machine
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from kubernetes import client

from backtide.core.enums import TaskKind, TaskState
from backtide.core.errors import BacktideError, ResourceAbsent, TaskNotFoundError
from backtide.core.logging import get_logger
from backtide.kubernetes import _api
from backtide.kubernetes.metrics import MetricsCollector, apply_minimums
from backtide.kubernetes.naming import ANNOTATION_STRATEGY, MAIN_CONTAINER, ResourceNamer
from backtide.runner._types import BacktestStatus, ContainerUsage, HyperOptStatus, TaskStatus, _utcnow

logger = get_logger(__name__)


def status_type(kind: TaskKind) -> type[TaskStatus]:
    return HyperOptStatus if kind is TaskKind.HYPEROPT else BacktestStatus


def _condition(job: client.V1Job, kind: str) -> Any | None:
    for cond in (job.status.conditions if job.status else None) or []:
        if cond.type == kind and cond.status in (None, "True"):
            return cond
    return None


def classify_job(job: client.V1Job) -> tuple[TaskState, dict[str, Any]]:
    """Map job counters to a state plus the fields that state records."""
    st = job.status or client.V1JobStatus()
    fields: dict[str, Any] = {"started_at": st.start_time}

    if (st.succeeded or 0) > 0:
        done: datetime | None = st.completion_time
        if done is None:
            cond = _condition(job, "Complete")
            done = cond.last_transition_time if cond is not None else None
        fields.update(progress=100.0, completed_at=done or _utcnow())
        return TaskState.COMPLETED, fields

    if (st.failed or 0) > 0:
        cond = _condition(job, "Failed")
        fields.update(
            error_message=(cond.message or "") if cond is not None else "",
            completed_at=cond.last_transition_time if cond is not None else None,
        )
        return TaskState.FAILED, fields

    if (st.active or 0) > 0:
        return TaskState.RUNNING, fields

    return TaskState.PENDING, fields


def main_exit_code(pod: client.V1Pod, container: str = MAIN_CONTAINER) -> int | None:
    for cs in (pod.status.container_statuses if pod.status else None) or []:
        if cs.name == container and cs.state is not None and cs.state.terminated is not None:
            return cs.state.terminated.exit_code
    return None


def newest_pod(pods: list[client.V1Pod]) -> client.V1Pod | None:
    """Most recently created pod; a no-retry job normally has exactly one."""
    if not pods:
        return None
    return max(pods, key=lambda p: p.metadata.creation_timestamp or datetime.min.replace(tzinfo=UTC))


class StatusResolver:
    """Reads jobs and pods and turns them into ``TaskStatus`` snapshots."""

    def __init__(
        self,
        core: client.CoreV1Api,
        batch: client.BatchV1Api,
        namespace: str,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._core = core
        self._batch = batch
        self._namespace = namespace
        self._metrics = metrics or MetricsCollector()

    async def read_job(self, namer: ResourceNamer, task_id: str) -> client.V1Job:
        """The task's job, or ``TaskNotFoundError``."""
        name = namer.job_name(task_id)
        try:
            return await _api.call(
                self._batch.read_namespaced_job, name=name, namespace=self._namespace,
                resource=f"job {name}",
            )
        except ResourceAbsent:
            raise TaskNotFoundError(namer.kind.value, task_id) from None

    async def resolve(self, kind: TaskKind, task_id: str) -> TaskStatus:
        namer = ResourceNamer(kind)
        job = await self.read_job(namer, task_id)
        return await self.from_job(namer, task_id, job)

    async def from_job(self, namer: ResourceNamer, task_id: str, job: client.V1Job) -> TaskStatus:
        state, fields = classify_job(job)
        status = status_type(namer.kind)(
            task_id=task_id,
            job_name=job.metadata.name,
            state=state,
            created_at=job.metadata.creation_timestamp,
            strategy_name=(job.metadata.annotations or {}).get(ANNOTATION_STRATEGY),
            **fields,
        )
        await self._attach_pod(namer, task_id, status)
        return status

    async def _attach_pod(self, namer: ResourceNamer, task_id: str, status: TaskStatus) -> None:
        try:
            pods = await _api.call(
                self._core.list_namespaced_pod,
                namespace=self._namespace, label_selector=namer.task_selector(task_id),
                resource=f"pods of {namer.kind.value} {task_id}",
            )
        except (BacktideError, ResourceAbsent) as exc:
            logger.warning("pod_lookup_failed", task_kind=namer.kind.value, task_id=task_id, error=str(exc))
            apply_minimums(status.usage)
            return

        pod = newest_pod(list(pods.items or []))
        if pod is None:
            # Pod already garbage-collected or not yet scheduled.
            status.usage = ContainerUsage()
            return

        status.pod_name = pod.metadata.name
        status.exit_code = main_exit_code(pod)
        collected = await self._metrics.collect(self._namespace, pod.metadata.name, MAIN_CONTAINER)
        status.usage = collected.usage

    async def list(self, kind: TaskKind) -> list[TaskStatus]:
        """Statuses of every managed task of *kind*.

        Tasks whose job lacks an ID label or that fail to resolve are skipped.
        """
        namer = ResourceNamer(kind)
        jobs = await _api.call(
            self._batch.list_namespaced_job,
            namespace=self._namespace, label_selector=namer.list_selector(),
            resource=f"{kind.value} jobs",
        )
        statuses: list[TaskStatus] = []
        for job in jobs.items or []:
            task_id = namer.task_id_from_labels(job.metadata.labels)
            if task_id is None:
                logger.debug("list_skip_unlabelled", job=job.metadata.name)
                continue
            try:
                statuses.append(await self.from_job(namer, task_id, job))
            except BacktideError as exc:
                logger.warning("list_skip_task", task_kind=kind.value, task_id=task_id, error=exc.message)
        return statuses
