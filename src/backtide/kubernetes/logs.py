"""
Container log retrieval.

    .. code-block:: text

        LogRetriever.open(kind, id, opts)
          ├── list pods by task label      (none → TaskNotFoundError)
          ├── read_namespaced_pod_log(container=..., _preload_content=False)
          │     404 (pod collected after listing) → TaskNotFoundError
          └── PodLogStream   chunks() / lines() / read_text() / close()

``follow`` streams stay open until the container exits or the caller closes
the stream (or cancels the task iterating it). Each read from the underlying
HTTP response runs in a worker thread.

Tags:
    backtide, kubernetes, logs, streaming
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

from kubernetes import client

from backtide.core.errors import ResourceAbsent, TaskNotFoundError, TransientClusterError
from backtide.core.logging import get_logger
from backtide.kubernetes import _api
from backtide.kubernetes.naming import MAIN_CONTAINER, ResourceNamer
from backtide.kubernetes.status import newest_pod
from backtide.runner._types import LogOptions, _utcnow

logger = get_logger(__name__)

CHUNK_SIZE = 4096


class PodLogStream:
    """``LogStream`` over a urllib3 response from the pod log endpoint."""

    def __init__(self, response: Any, pod_name: str = "") -> None:
        self._response = response
        self._pod_name = pod_name
        self._closed = False

    @property
    def pod_name(self) -> str:
        return self._pod_name

    async def chunks(self) -> AsyncIterator[bytes]:
        it = self._response.stream(CHUNK_SIZE, decode_content=True)
        try:
            while not self._closed:
                try:
                    chunk = await asyncio.to_thread(next, it, None)
                except Exception as exc:
                    if self._closed:
                        return
                    raise TransientClusterError(f"log stream of {self._pod_name}: {exc}", cause=exc) from exc
                if chunk is None:
                    return
                if chunk:
                    yield chunk
        finally:
            await self.close()

    async def lines(self) -> AsyncIterator[str]:
        pending = b""
        async for chunk in self.chunks():
            pending += chunk
            *complete, pending = pending.split(b"\n")
            for line in complete:
                yield line.decode(errors="replace")
        if pending:
            yield pending.decode(errors="replace")

    async def read_text(self) -> str:
        parts = [chunk async for chunk in self.chunks()]
        return b"".join(parts).decode(errors="replace")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._response.close()
        release = getattr(self._response, "release_conn", None)
        if release is not None:
            release()


def log_request_kwargs(opts: LogOptions, container: str) -> dict[str, Any]:
    """Keyword arguments for ``read_namespaced_pod_log``."""
    kwargs: dict[str, Any] = {"container": container}
    if opts.follow:
        kwargs["follow"] = True
    if opts.timestamps:
        kwargs["timestamps"] = True
    if opts.tail is not None:
        kwargs["tail_lines"] = max(opts.tail, 0)
    if opts.since is not None:
        kwargs["since_seconds"] = max(1, int((_utcnow() - opts.since).total_seconds()))
    return kwargs


class LogRetriever:
    """Finds a task's pod and opens its container log."""

    def __init__(self, core: client.CoreV1Api, namespace: str) -> None:
        self._core = core
        self._namespace = namespace

    async def find_pod(self, namer: ResourceNamer, task_id: str) -> client.V1Pod:
        try:
            pods = await _api.call(
                self._core.list_namespaced_pod,
                namespace=self._namespace, label_selector=namer.task_selector(task_id),
                resource=f"pods of {namer.kind.value} {task_id}",
            )
        except ResourceAbsent:
            raise TaskNotFoundError(namer.kind.value, task_id).with_context(reason="no pods") from None
        pod = newest_pod(list(pods.items or []))
        if pod is None:
            raise TaskNotFoundError(namer.kind.value, task_id).with_context(reason="no pods")
        return pod

    async def open(
        self,
        namer: ResourceNamer,
        task_id: str,
        opts: LogOptions | None = None,
        *,
        container: str = MAIN_CONTAINER,
    ) -> PodLogStream:
        pod = await self.find_pod(namer, task_id)
        name = pod.metadata.name
        try:
            response = await _api.call(
                self._core.read_namespaced_pod_log,
                name=name, namespace=self._namespace, _preload_content=False,
                resource=f"logs of pod {name}",
                **log_request_kwargs(opts or LogOptions(), container),
            )
        except ResourceAbsent:
            raise TaskNotFoundError(namer.kind.value, task_id).with_context(reason="pod gone", pod=name) from None
        logger.debug("log_stream_opened", pod=name, container=container, follow=bool(opts and opts.follow))
        return PodLogStream(response, pod_name=name)

    async def read_text(self, namer: ResourceNamer, task_id: str, *, container: str = MAIN_CONTAINER) -> str:
        """Whole container log as text."""
        stream = await self.open(namer, task_id, container=container)
        return await stream.read_text()
