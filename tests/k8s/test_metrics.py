"""Tests for usage collection: floors, sticky route, metrics-server supplement."""

import httpx
import pytest
from kubernetes import client

from backtide.core.errors import MetricsError
from backtide.kubernetes.metrics import (
    MIN_CPU_PERCENT,
    MIN_MEMORY_BYTES,
    MetricsCollector,
    MetricsRoute,
    PrometheusClient,
    ServiceProxyTarget,
    apply_minimums,
)
from backtide.runner._types import ContainerUsage

PROM_URL = "http://prometheus.monitoring.svc.cluster.local:9090"
PROXY_PREFIX = "/api/v1/namespaces/monitoring/services/prometheus:9090/proxy"


# ── Helpers ──────────────────────────────────────────────────────────────


def _vector(*values: float) -> dict:
    return {
        "status": "success",
        "data": {"resultType": "vector", "result": [{"metric": {}, "value": [0, str(v)]} for v in values]},
    }


def _answer(request: httpx.Request) -> httpx.Response:
    """Prometheus stand-in keyed on the metric name in the query."""
    if request.url.path.endswith("/-/healthy"):
        return httpx.Response(200, text="Prometheus is Healthy.")
    query = request.url.params.get("query", "")
    if "cpu_usage" in query:
        return httpx.Response(200, json=_vector(37.5))
    if "memory_working_set" in query:
        return httpx.Response(200, json=_vector(300 * 1024 * 1024))
    if "receive" in query:
        return httpx.Response(200, json=_vector(100, 23))
    return httpx.Response(200, json=_vector())


class Recorder:
    def __init__(self, handler=_answer, fail: bool = False):
        self.requests: list[httpx.Request] = []
        self._handler = handler
        self._fail = fail

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._fail:
            raise httpx.ConnectError("connection refused", request=request)
        return self._handler(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def _api_configuration() -> client.Configuration:
    cfg = client.Configuration()
    cfg.host = "https://10.0.0.1:6443"
    cfg.api_key = {"authorization": "token-123"}
    cfg.api_key_prefix = {"authorization": "Bearer"}
    return cfg


def _prom(direct: Recorder, proxy: Recorder | None = None) -> PrometheusClient:
    return PrometheusClient(
        PROM_URL,
        api_configuration=_api_configuration() if proxy is not None else None,
        transport=direct.transport,
        proxy_transport=proxy.transport if proxy is not None else None,
    )


def _pod_metrics(cpu: str, memory: str, container: str = "freqtrade") -> dict:
    return {"containers": [{"name": container, "usage": {"cpu": cpu, "memory": memory}}]}


# ── Floors ───────────────────────────────────────────────────────────────


class TestMinimums:
    def test_raises_low_values(self):
        usage = ContainerUsage(cpu_percent=2.0, memory_bytes=10 * 1024 * 1024)
        assert apply_minimums(usage) is True
        assert usage.cpu_percent == MIN_CPU_PERCENT
        assert usage.memory_bytes == MIN_MEMORY_BYTES

    def test_leaves_high_values(self):
        usage = ContainerUsage(cpu_percent=20.0, memory_bytes=100 * 1024 * 1024)
        assert apply_minimums(usage) is False
        assert (usage.cpu_percent, usage.memory_bytes) == (20.0, 100 * 1024 * 1024)

    def test_idempotent(self):
        usage = ContainerUsage()
        apply_minimums(usage)
        snapshot = usage.to_dict()
        assert apply_minimums(usage) is False
        assert usage.to_dict() == snapshot

    def test_network_and_disk_not_floored(self):
        usage = ContainerUsage()
        apply_minimums(usage)
        assert usage.network_rx_bytes == 0
        assert usage.block_write_bytes == 0


# ── Proxy target ─────────────────────────────────────────────────────────


class TestServiceProxyTarget:
    def test_parse_cluster_url(self):
        target = ServiceProxyTarget.parse(PROM_URL)
        assert (target.service, target.namespace, target.port) == ("prometheus", "monitoring", "9090")
        assert target.path("/api/v1/query") == f"{PROXY_PREFIX}/api/v1/query"

    def test_default_port_and_base_path(self):
        target = ServiceProxyTarget.parse("http://prom.obs.svc.cluster.local/prometheus/")
        assert target.port == "80"
        assert target.path("/-/healthy") == "/api/v1/namespaces/obs/services/prom:80/proxy/prometheus/-/healthy"

    def test_external_url_has_no_proxy(self):
        assert ServiceProxyTarget.parse("https://prom.example.com") is None


# ── PrometheusClient ─────────────────────────────────────────────────────


class TestPrometheusClient:
    @pytest.mark.asyncio
    async def test_query_sums_series(self):
        prom = _prom(Recorder())
        assert await prom.query("container_network_receive_bytes_total{}") == 123.0
        assert prom.route is MetricsRoute.DIRECT
        await prom.aclose()

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        prom = _prom(Recorder(lambda r: httpx.Response(200, json={"status": "error", "error": "bad"})))
        with pytest.raises(MetricsError, match="status"):
            await prom.query("up")
        await prom.aclose()

    @pytest.mark.asyncio
    async def test_direct_failure_without_proxy(self):
        prom = _prom(Recorder(fail=True))
        assert prom.proxy_available is False
        with pytest.raises(MetricsError):
            await prom.query("up")
        assert prom.route is MetricsRoute.UNDECIDED
        await prom.aclose()

    @pytest.mark.asyncio
    async def test_falls_back_to_proxy_and_sticks(self):
        direct, proxy = Recorder(fail=True), Recorder()
        prom = _prom(direct, proxy)
        assert prom.proxy_available is True

        assert await prom.query("container_cpu_usage_seconds_total") == 37.5
        assert prom.route is MetricsRoute.PROXY
        assert proxy.requests[0].url.path == f"{PROXY_PREFIX}/api/v1/query"
        assert proxy.requests[0].headers["Authorization"] == "Bearer token-123"

        await prom.query("container_memory_working_set_bytes")
        # Direct was only tried once; later calls go straight to the proxy.
        assert len(direct.requests) == 1
        assert len(proxy.requests) == 2
        await prom.aclose()

    @pytest.mark.asyncio
    async def test_direct_route_sticks(self):
        direct, proxy = Recorder(), Recorder()
        prom = _prom(direct, proxy)
        await prom.query("a")
        await prom.query("b")
        assert prom.route is MetricsRoute.DIRECT
        assert proxy.requests == []
        await prom.aclose()

    @pytest.mark.asyncio
    async def test_both_routes_fail(self):
        prom = _prom(Recorder(fail=True), Recorder(fail=True))
        with pytest.raises(MetricsError, match="both direct"):
            await prom.query("up")
        assert prom.route is MetricsRoute.UNDECIDED
        await prom.aclose()

    @pytest.mark.asyncio
    async def test_connection_check(self):
        prom = _prom(Recorder())
        await prom.test_connection()
        await prom.aclose()


# ── MetricsCollector ─────────────────────────────────────────────────────


class TestCollector:
    def test_queries_cover_every_usage_field(self):
        queries = MetricsCollector.queries("trading", "pod-1", "freqtrade")
        assert set(queries) == set(ContainerUsage().to_dict())
        assert 'container="freqtrade"' in queries["cpu_percent"]
        assert "container=" not in queries["network_rx_bytes"]

    @pytest.mark.asyncio
    async def test_prometheus_values(self):
        collector = MetricsCollector(prometheus=_prom(Recorder()))
        result = await collector.collect("trading", "pod-1", "freqtrade")
        assert result.usage.cpu_percent == 37.5
        assert result.usage.memory_bytes == 300 * 1024 * 1024
        assert result.usage.network_rx_bytes == 123
        assert result.floor_applied is False
        assert result.sources["cpu_percent"] == "prometheus:direct"
        assert result.errors == []
        await collector.aclose()

    @pytest.mark.asyncio
    async def test_first_query_decides_route(self):
        direct, proxy = Recorder(fail=True), Recorder()
        collector = MetricsCollector(prometheus=_prom(direct, proxy))
        await collector.collect("trading", "pod-1", "freqtrade")
        assert len(direct.requests) == 1
        assert len(proxy.requests) == 6
        await collector.aclose()

    @pytest.mark.asyncio
    async def test_metrics_server_supplements_missing(self, cluster):
        cluster.pod_metrics["pod-1"] = _pod_metrics("250m", "128Mi")
        empty = Recorder(lambda r: httpx.Response(200, json=_vector()))
        collector = MetricsCollector(prometheus=_prom(empty), custom_api=cluster)
        result = await collector.collect("trading", "pod-1", "freqtrade")
        assert result.usage.cpu_percent == 25.0
        assert result.usage.memory_bytes == 128 * 1024 * 1024
        assert result.sources == {"cpu_percent": "metrics-server", "memory_bytes": "metrics-server"}
        await collector.aclose()

    @pytest.mark.asyncio
    async def test_metrics_server_not_consulted_when_complete(self, cluster):
        collector = MetricsCollector(prometheus=_prom(Recorder()), custom_api=cluster)
        await collector.collect("trading", "pod-1", "freqtrade")
        assert "get_namespaced_custom_object" not in cluster.call_names()
        await collector.aclose()

    @pytest.mark.asyncio
    async def test_everything_down_gives_floors(self, cluster):
        collector = MetricsCollector(prometheus=_prom(Recorder(fail=True)), custom_api=cluster)
        result = await collector.collect("trading", "gone", "freqtrade")
        assert result.usage.cpu_percent == MIN_CPU_PERCENT
        assert result.usage.memory_bytes == MIN_MEMORY_BYTES
        assert result.floor_applied is True
        assert len(result.errors) == 7
        assert result.errors[-1].startswith("metrics-server:")
        await collector.aclose()

    @pytest.mark.asyncio
    async def test_missing_container_in_snapshot(self, cluster):
        cluster.pod_metrics["pod-1"] = _pod_metrics("1", "1Gi", container="sidecar")
        result = await MetricsCollector(custom_api=cluster).collect("trading", "pod-1", "freqtrade")
        assert result.floor_applied is True
        assert result.sources == {}
        assert "freqtrade" in result.errors[0]

    @pytest.mark.asyncio
    async def test_no_backends(self):
        result = await MetricsCollector().collect("trading", "pod-1", "freqtrade")
        assert result.usage.cpu_percent == MIN_CPU_PERCENT
        assert result.errors == []
