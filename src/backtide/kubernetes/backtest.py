"""
Kubernetes backend for backtests and hyperopt runs.

Architecture:

    .. code-block:: text

        KubernetesBacktestRunner(BaseBacktestRunner)
          ├── _do_submit     → WorkloadProvisioner.submit
          ├── _do_status     → StatusResolver.resolve      (uses MetricsCollector)
          ├── _do_list       → StatusResolver.list
          ├── _do_read_logs  → LogRetriever.read_text
          ├── _do_logs       → LogRetriever.open
          ├── _do_stop       → LifecycleManager.stop
          ├── _do_delete     → LifecycleManager.delete
          └── _do_health     → list jobs (limit 1) + Prometheus /-/healthy

    The cluster API objects can be injected (tests pass in-memory fakes);
    otherwise one ``ApiClient`` is built from ``KubernetesConfig``.

Example:
    >>> runner = KubernetesBacktestRunner(KubernetesConfig(namespace="trading"))
    >>> await runner.run_backtest(BacktestSpec(id="42", strategy_name="sma cross", ...))
    >>> (await runner.get_backtest_status("42")).state
    <TaskState.RUNNING: 'running'>

Tags:
    backtide, kubernetes, runner, backend
"""

from __future__ import annotations

from kubernetes import client

from backtide.core.enums import TaskKind
from backtide.core.errors import MetricsError
from backtide.core.logging import get_logger
from backtide.kubernetes import _api
from backtide.kubernetes.config import KubernetesConfig
from backtide.kubernetes.lifecycle import LifecycleManager
from backtide.kubernetes.logs import LogRetriever
from backtide.kubernetes.metrics import MetricsCollector, PrometheusClient
from backtide.kubernetes.naming import ResourceNamer
from backtide.kubernetes.provisioner import WorkloadProvisioner
from backtide.kubernetes.status import StatusResolver
from backtide.runner._base import BaseBacktestRunner
from backtide.runner._types import BackendHealth, BacktestSpec, LogOptions, LogStream, TaskStatus

logger = get_logger(__name__)


class KubernetesClients:
    """The typed API objects one backend instance talks through."""

    def __init__(
        self,
        core: client.CoreV1Api,
        batch: client.BatchV1Api,
        custom: client.CustomObjectsApi | None = None,
        api_client: client.ApiClient | None = None,
    ) -> None:
        self.core = core
        self.batch = batch
        self.custom = custom
        self.api_client = api_client

    @classmethod
    def from_config(cls, config: KubernetesConfig) -> KubernetesClients:
        api_client = config.build_api_client()
        return cls(
            core=client.CoreV1Api(api_client),
            batch=client.BatchV1Api(api_client),
            custom=client.CustomObjectsApi(api_client),
            api_client=api_client,
        )

    @property
    def configuration(self) -> client.Configuration | None:
        return self.api_client.configuration if self.api_client is not None else None

    def close(self) -> None:
        if self.api_client is not None:
            self.api_client.close()


def build_metrics(config: KubernetesConfig, clients: KubernetesClients) -> MetricsCollector:
    prometheus = None
    if config.prometheus_url:
        prometheus = PrometheusClient(
            config.prometheus_url,
            timeout=config.metrics_timeout_seconds,
            api_configuration=clients.configuration,
        )
    return MetricsCollector(prometheus=prometheus, custom_api=clients.custom)


class KubernetesBacktestRunner(BaseBacktestRunner):
    """Runs each backtest/hyperopt as a one-shot Kubernetes Job."""

    def __init__(
        self,
        config: KubernetesConfig,
        *,
        clients: KubernetesClients | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._config = config
        self._clients = clients or KubernetesClients.from_config(config)
        self._metrics = metrics or build_metrics(config, self._clients)
        core, batch, ns = self._clients.core, self._clients.batch, config.namespace
        self._provisioner = WorkloadProvisioner(core, batch, config)
        self._resolver = StatusResolver(core, batch, ns, self._metrics)
        self._logs = LogRetriever(core, ns)
        self._lifecycle = LifecycleManager(core, batch, ns)
        logger.info(
            "kubernetes_runner_initialized",
            namespace=ns, prometheus=bool(config.prometheus_url),
        )

    @property
    def backend_name(self) -> str:
        return "kubernetes"

    @property
    def config(self) -> KubernetesConfig:
        return self._config

    async def _do_submit(self, spec: BacktestSpec) -> str:
        return await self._provisioner.submit(spec)

    async def _do_status(self, kind: TaskKind, task_id: str) -> TaskStatus:
        return await self._resolver.resolve(kind, task_id)

    async def _do_list(self, kind: TaskKind) -> list:
        return await self._resolver.list(kind)

    async def _do_read_logs(self, kind: TaskKind, task_id: str) -> str:
        return await self._logs.read_text(ResourceNamer(kind), task_id)

    async def _do_logs(self, kind: TaskKind, task_id: str, opts: LogOptions) -> LogStream:
        return await self._logs.open(ResourceNamer(kind), task_id, opts)

    async def _do_stop(self, kind: TaskKind, task_id: str) -> None:
        await self._lifecycle.stop(ResourceNamer(kind), task_id)

    async def _do_delete(self, kind: TaskKind, task_id: str) -> None:
        await self._lifecycle.delete(ResourceNamer(kind), task_id)

    async def _do_health(self) -> BackendHealth:
        await _api.call(
            self._clients.batch.list_namespaced_job,
            namespace=self._config.namespace, limit=1,
            resource=f"jobs in {self._config.namespace}",
        )
        prometheus = self._metrics.prometheus
        if prometheus is None:
            return BackendHealth(healthy=True, backend=self.backend_name)
        try:
            await prometheus.test_connection()
        except MetricsError as exc:
            logger.warning("metrics_backend_unhealthy", url=prometheus.base_url, error=exc.message)
            return BackendHealth(
                healthy=True,
                backend=self.backend_name,
                message=f"metrics backend unreachable: {exc.message}",
                metrics_backend=False,
            )
        return BackendHealth(healthy=True, backend=self.backend_name, metrics_backend=True)

    async def close(self) -> None:
        await self._metrics.aclose()
        self._clients.close()
