"""Async bridge to the (blocking) kubernetes client.

Every cluster call goes through ``call``: it runs the client method in a
worker thread and normalises failures.

    .. code-block:: text

        ApiException 404            → ResourceAbsent
        ApiException (other)        → TransientClusterError(status=...)
        urllib3 / socket errors     → TransientClusterError
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, TypeVar

from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError as TransportError

from backtide.core.errors import ResourceAbsent, TransientClusterError

T = TypeVar("T")

FOREGROUND = "Foreground"
BACKGROUND = "Background"


async def call(fn: Callable[..., T], *args: Any, resource: str = "", **kwargs: Any) -> T:
    """Run a client method off the event loop.

    Args:
        fn: bound client method, e.g. ``batch.read_namespaced_job``
        resource: human-readable target used in error messages
    """
    what = resource or getattr(fn, "__name__", "cluster call")
    try:
        return await asyncio.to_thread(fn, *args, **kwargs)
    except ApiException as exc:
        if exc.status == 404:
            raise ResourceAbsent(what) from exc
        raise TransientClusterError(
            f"{what}: {exc.status} {exc.reason}", status=exc.status, cause=exc,
        ) from exc
    except (TransportError, OSError) as exc:
        raise TransientClusterError(f"{what}: {exc}", cause=exc) from exc


async def absent_ok(fn: Callable[..., Any], *args: Any, resource: str = "", **kwargs: Any) -> bool:
    """Like ``call`` but treats 404 as success. Returns False when already gone."""
    try:
        await call(fn, *args, resource=resource, **kwargs)
    except ResourceAbsent:
        return False
    return True
