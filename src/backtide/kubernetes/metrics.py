"""
Resource-usage collection with tiered fallback and billing floors.

Architecture:

    .. code-block:: text

        MetricsCollector.collect(namespace, pod, container)
          │
          ├── tier 1  direct Prometheus query          ┐ one route, chosen on the
          ├── tier 2  API-server service proxy query   ┘ first success, then sticky
          │           cpu, memory, network rx/tx, disk read/write
          │
          ├── tier 3  metrics.k8s.io snapshot (cpu, memory only)
          │           only for cpu/memory still at zero after tiers 1/2
          │
          └── apply_minimums: cpu ≥ 5%, memory ≥ 50MiB; network/disk unfloored

    Route memo (per PrometheusClient instance, behind a reader/writer lock):

        UNDECIDED ──direct ok──► DIRECT
            │
            └──direct fails, proxy ok──► PROXY
            (both fail: stays UNDECIDED, next call retries)

    The proxy route is only available for in-cluster service URLs
    (``http://<svc>.<ns>.svc.cluster.local[:port]``) when an API-server
    configuration is supplied.

Manifesto:
    A status query must never fail because metrics failed. ``collect``
    does not raise; every tier failure becomes an entry in ``errors``.

Tags:
    backtide, kubernetes, metrics, prometheus, fallback, billing
"""

from __future__ import annotations

import asyncio
import re
import ssl
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

import httpx
from kubernetes import client
from kubernetes.utils.quantity import parse_quantity

from backtide.core.errors import MetricsError
from backtide.core.logging import get_logger
from backtide.kubernetes import _api
from backtide.runner._types import ContainerUsage

logger = get_logger(__name__)

MIN_CPU_PERCENT = 5.0
MIN_MEMORY_BYTES = 50 * 1024 * 1024

_CLUSTER_SERVICE = re.compile(r"^https?://([^.]+)\.([^.]+)\.svc\.cluster\.local(?::(\d+))?(.*)$")


def apply_minimums(usage: ContainerUsage) -> bool:
    """Raise CPU and memory to the billing floor. Returns True if anything changed.

    Idempotent: a second call on the same object changes nothing.
    """
    applied = False
    if usage.cpu_percent < MIN_CPU_PERCENT:
        usage.cpu_percent = MIN_CPU_PERCENT
        applied = True
    if usage.memory_bytes < MIN_MEMORY_BYTES:
        usage.memory_bytes = MIN_MEMORY_BYTES
        applied = True
    return applied


def _label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


# ---------------------------------------------------------------------------
# Sticky route state
# ---------------------------------------------------------------------------

class ReadWriteLock:
    """Many readers or one writer.

    Critical sections are a handful of attribute reads/writes and never
    span an ``await``.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class MetricsRoute(str, Enum):
    UNDECIDED = "undecided"
    DIRECT = "direct"
    PROXY = "proxy"


@dataclass(frozen=True)
class ServiceProxyTarget:
    """Where an in-cluster Prometheus service lives, for API-server proxying."""

    service: str
    namespace: str
    port: str
    base_path: str = ""

    @classmethod
    def parse(cls, url: str) -> ServiceProxyTarget | None:
        match = _CLUSTER_SERVICE.match(url)
        if not match:
            return None
        service, namespace, port, rest = match.groups()
        return cls(service=service, namespace=namespace, port=port or "80", base_path=rest.rstrip("/"))

    def path(self, path: str) -> str:
        return (
            f"/api/v1/namespaces/{self.namespace}/services/"
            f"{self.service}:{self.port}/proxy{self.base_path}{path}"
        )


def proxy_client_from_configuration(
    configuration: client.Configuration,
    *,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """An ``httpx.AsyncClient`` that talks to the API server with the cluster credentials."""
    verify: ssl.SSLContext | bool = False
    if configuration.verify_ssl:
        verify = ssl.create_default_context(cafile=configuration.ssl_ca_cert or None)
        if configuration.cert_file:
            verify.load_cert_chain(configuration.cert_file, configuration.key_file or None)
    return httpx.AsyncClient(
        base_url=configuration.host.rstrip("/"),
        verify=verify,
        timeout=timeout,
        transport=transport,
    )


# ---------------------------------------------------------------------------
# Prometheus client
# ---------------------------------------------------------------------------

class PrometheusClient:
    """Prometheus HTTP API client with direct → API-proxy fallback."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        api_configuration: client.Configuration | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        proxy_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._direct = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._api_configuration = api_configuration
        self._proxy: httpx.AsyncClient | None = None
        self._target: ServiceProxyTarget | None = None
        if api_configuration is not None:
            self._target = ServiceProxyTarget.parse(self._base_url)
            if self._target is not None:
                self._proxy = proxy_client_from_configuration(
                    api_configuration, timeout=timeout, transport=proxy_transport,
                )
        self._route = MetricsRoute.UNDECIDED
        self._route_lock = ReadWriteLock()

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def proxy_available(self) -> bool:
        return self._proxy is not None

    @property
    def route(self) -> MetricsRoute:
        with self._route_lock.read():
            return self._route

    def _remember(self, route: MetricsRoute) -> None:
        with self._route_lock.write():
            if self._route is MetricsRoute.UNDECIDED:
                self._route = route
                logger.info("metrics_route_selected", route=route.value, url=self._base_url)

    def _proxy_headers(self) -> dict[str, str]:
        token = self._api_configuration.get_api_key_with_prefix("authorization") if self._api_configuration else None
        return {"Authorization": token} if token else {}

    async def _get_direct(self, path: str, params: dict[str, str] | None) -> Any:
        resp = await self._direct.get(f"{self._base_url}{path}", params=params)
        resp.raise_for_status()
        return resp

    async def _get_proxy(self, path: str, params: dict[str, str] | None) -> Any:
        if self._proxy is None or self._target is None:
            raise MetricsError("API server proxy not available")
        resp = await self._proxy.get(self._target.path(path), params=params, headers=self._proxy_headers())
        resp.raise_for_status()
        return resp

    async def request(self, path: str, params: dict[str, str] | None = None) -> httpx.Response:
        """GET *path* over the remembered route, deciding it on first success."""
        route = self.route
        try:
            if route is MetricsRoute.DIRECT:
                return await self._get_direct(path, params)
            if route is MetricsRoute.PROXY:
                return await self._get_proxy(path, params)
        except httpx.HTTPError as exc:
            raise MetricsError(f"{route.value} request to {path} failed: {exc}", cause=exc) from exc

        try:
            resp = await self._get_direct(path, params)
        except httpx.HTTPError as direct_exc:
            if self._proxy is None:
                raise MetricsError(f"request to {path} failed: {direct_exc}", cause=direct_exc) from direct_exc
            logger.info("metrics_direct_failed_trying_proxy", error=str(direct_exc))
            try:
                resp = await self._get_proxy(path, params)
            except httpx.HTTPError as proxy_exc:
                raise MetricsError(
                    f"both direct ({direct_exc}) and API proxy ({proxy_exc}) failed",
                    cause=proxy_exc,
                ) from proxy_exc
            self._remember(MetricsRoute.PROXY)
            return resp
        self._remember(MetricsRoute.DIRECT)
        return resp

    async def query(self, promql: str) -> float:
        """Instant query; sums the sample values of every returned series."""
        resp = await self.request("/api/v1/query", {"query": promql})
        try:
            body = resp.json()
        except ValueError as exc:
            raise MetricsError(f"unparsable response for {promql!r}", cause=exc) from exc
        if body.get("status") != "success":
            raise MetricsError(f"prometheus query status: {body.get('status')}")
        total = 0.0
        for series in body.get("data", {}).get("result", []):
            value = series.get("value") or []
            if len(value) >= 2:
                try:
                    total += float(value[1])
                except (TypeError, ValueError):
                    continue
        return total

    async def test_connection(self) -> None:
        """Raise ``MetricsError`` unless ``/-/healthy`` answers."""
        await self.request("/-/healthy")

    async def aclose(self) -> None:
        await self._direct.aclose()
        if self._proxy is not None:
            await self._proxy.aclose()


# ---------------------------------------------------------------------------
# Collector
# ---------------------------------------------------------------------------

@dataclass
class CollectedUsage:
    """Usage plus how it was obtained.

    ``sources`` maps each filled field to the tier that supplied it.
    """

    usage: ContainerUsage
    floor_applied: bool = False
    sources: dict[str, str] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)


class MetricsCollector:
    """Best-effort usage for one container; never raises."""

    def __init__(
        self,
        prometheus: PrometheusClient | None = None,
        custom_api: client.CustomObjectsApi | None = None,
    ) -> None:
        self._prometheus = prometheus
        self._custom = custom_api

    @property
    def prometheus(self) -> PrometheusClient | None:
        return self._prometheus

    @staticmethod
    def queries(namespace: str, pod: str, container: str) -> dict[str, str]:
        pod_sel = f'namespace="{_label(namespace)}",pod="{_label(pod)}"'
        ctr_sel = f'{pod_sel},container="{_label(container)}"'
        return {
            "cpu_percent": f"sum(rate(container_cpu_usage_seconds_total{{{ctr_sel}}}[1m])) * 100",
            "memory_bytes": f"sum(container_memory_working_set_bytes{{{ctr_sel}}})",
            "network_rx_bytes": f"container_network_receive_bytes_total{{{pod_sel}}}",
            "network_tx_bytes": f"container_network_transmit_bytes_total{{{pod_sel}}}",
            "block_read_bytes": f"container_fs_reads_bytes_total{{{ctr_sel}}}",
            "block_write_bytes": f"container_fs_writes_bytes_total{{{ctr_sel}}}",
        }

    async def collect(self, namespace: str, pod: str, container: str) -> CollectedUsage:
        result = CollectedUsage(usage=ContainerUsage())
        if self._prometheus is not None:
            await self._from_prometheus(result, namespace, pod, container)
        if result.usage.cpu_percent <= 0 or result.usage.memory_bytes <= 0:
            await self._from_snapshot(result, namespace, pod, container)

        raw_cpu, raw_mem = result.usage.cpu_percent, result.usage.memory_bytes
        result.floor_applied = apply_minimums(result.usage)
        if result.floor_applied:
            logger.debug(
                "metrics_floor_applied",
                pod=pod, raw_cpu_percent=raw_cpu, raw_memory_bytes=raw_mem,
            )
        if result.errors:
            logger.warning("metrics_degraded", pod=pod, errors=result.errors)
        return result

    async def _from_prometheus(self, result: CollectedUsage, namespace: str, pod: str, container: str) -> None:
        prom = self._prometheus
        assert prom is not None
        queries = self.queries(namespace, pod, container)

        async def one(name: str, promql: str) -> tuple[str, float | None, str | None]:
            try:
                return name, await prom.query(promql), None
            except MetricsError as exc:
                return name, None, exc.message

        # The first query decides the route so the rest don't race through fallback.
        first, *rest = queries.items()
        outcomes = [await one(*first)]
        outcomes += await asyncio.gather(*(one(n, q) for n, q in rest))

        for name, value, error in outcomes:
            if error is not None:
                result.errors.append(f"prometheus {name}: {error}")
                continue
            if value and value > 0:
                setattr(result.usage, name, value if name == "cpu_percent" else int(value))
                result.sources[name] = f"prometheus:{prom.route.value}"

    async def _from_snapshot(self, result: CollectedUsage, namespace: str, pod: str, container: str) -> None:
        if self._custom is None:
            return
        try:
            obj = await _api.call(
                self._custom.get_namespaced_custom_object,
                "metrics.k8s.io", "v1beta1", namespace, "pods", pod,
                resource=f"pod metrics {pod}",
            )
            cpu, memory = _container_snapshot(obj, container)
        except Exception as exc:
            result.errors.append(f"metrics-server: {exc}")
            return
        if result.usage.cpu_percent <= 0 and cpu > 0:
            result.usage.cpu_percent = cpu
            result.sources["cpu_percent"] = "metrics-server"
        if result.usage.memory_bytes <= 0 and memory > 0:
            result.usage.memory_bytes = memory
            result.sources["memory_bytes"] = "metrics-server"

    async def aclose(self) -> None:
        if self._prometheus is not None:
            await self._prometheus.aclose()


def _container_snapshot(obj: dict[str, Any], container: str) -> tuple[float, int]:
    """CPU percent and memory bytes for *container* in a PodMetrics object."""
    for entry in obj.get("containers", []):
        if entry.get("name") == container:
            usage = entry.get("usage", {})
            cores = parse_quantity(usage.get("cpu", "0"))
            memory = parse_quantity(usage.get("memory", "0"))
            return float(cores * Decimal(100)), int(memory)
    raise MetricsError(f"container {container!r} not present in pod metrics")
