"""
Stop and delete.

    .. code-block:: text

        stop(task)    delete job, propagation=Foreground     404 → ok
        delete(task)  delete job, propagation=Background     404 → ok
                      delete each config object               404 → ok
                      any other failure → collected, logged, CleanupError

Delete is one-directional: a failed config-object delete never causes the
job to be re-created, and nothing is retried here.

Tags:
    backtide, kubernetes, lifecycle, cleanup, idempotent
"""

from __future__ import annotations

from collections.abc import Sequence

from kubernetes import client

from backtide.core.errors import BacktideError, CleanupError
from backtide.core.logging import get_logger
from backtide.kubernetes import _api
from backtide.kubernetes.naming import ResourceNamer

logger = get_logger(__name__)


class LifecycleManager:
    """Idempotent teardown of a task's cluster objects."""

    def __init__(self, core: client.CoreV1Api, batch: client.BatchV1Api, namespace: str) -> None:
        self._core = core
        self._batch = batch
        self._namespace = namespace

    async def _delete_job(self, name: str, propagation: str) -> bool:
        return await _api.absent_ok(
            self._batch.delete_namespaced_job,
            name=name, namespace=self._namespace,
            body=client.V1DeleteOptions(propagation_policy=propagation),
            resource=f"job {name}",
        )

    async def stop(self, namer: ResourceNamer, task_id: str) -> None:
        """Delete the job and its pods. Already gone counts as stopped."""
        name = namer.job_name(task_id)
        existed = await self._delete_job(name, _api.FOREGROUND)
        logger.info("job_stopped" if existed else "job_already_gone", job=name, task_id=task_id)

    async def delete(
        self,
        namer: ResourceNamer,
        task_id: str,
        config_maps: Sequence[str] | None = None,
    ) -> None:
        """Delete the job and *config_maps* (default: config + strategy objects)."""
        if config_maps is None:
            config_maps = (namer.config_map_name(task_id), namer.strategy_map_name(task_id))

        failures: list[tuple[str, str]] = []
        job = namer.job_name(task_id)
        try:
            await self._delete_job(job, _api.BACKGROUND)
        except BacktideError as exc:
            failures.append((f"job/{job}", exc.message))

        for name in config_maps:
            try:
                await _api.absent_ok(
                    self._core.delete_namespaced_config_map,
                    name=name, namespace=self._namespace,
                    resource=f"configmap {name}",
                )
            except BacktideError as exc:
                failures.append((f"configmap/{name}", exc.message))

        if failures:
            logger.warning(
                "cleanup_incomplete",
                task_kind=namer.kind.value, task_id=task_id,
                failures=[f"{r}: {m}" for r, m in failures],
            )
            raise CleanupError(
                f"{len(failures)} resource(s) of {namer.kind.value} {task_id!r} could not be deleted",
                failures=failures,
            ).with_context(task_kind=namer.kind.value, task_id=task_id)

        logger.info("task_deleted", task_kind=namer.kind.value, task_id=task_id)
