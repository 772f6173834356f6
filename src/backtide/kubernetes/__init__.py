"""Kubernetes backend.

Architecture:

    .. code-block:: text

        backtide.kubernetes
        ├── config.py           ← KubernetesConfig, ApiClient construction
        ├── naming.py           ← deterministic names and labels
        ├── _api.py             ← async bridge, 404 / error normalisation
        ├── provisioner.py      ← config objects + job, compensating rollback
        ├── status.py           ← job counters → TaskStatus
        ├── metrics.py          ← Prometheus / API proxy / metrics.k8s.io, floors
        ├── logs.py             ← pod log streams
        ├── lifecycle.py        ← stop / delete
        ├── backtest.py         ← KubernetesBacktestRunner
        └── data_downloader.py  ← KubernetesDataDownloader
"""

from backtide.kubernetes.backtest import KubernetesBacktestRunner, KubernetesClients
from backtide.kubernetes.config import KubernetesConfig, ResourceDefaults
from backtide.kubernetes.data_downloader import KubernetesDataDownloader, build_download_script
from backtide.kubernetes.lifecycle import LifecycleManager
from backtide.kubernetes.logs import LogRetriever, PodLogStream
from backtide.kubernetes.metrics import (
    CollectedUsage,
    MetricsCollector,
    MetricsRoute,
    PrometheusClient,
    apply_minimums,
)
from backtide.kubernetes.naming import ResourceNamer
from backtide.kubernetes.provisioner import WorkloadProvisioner
from backtide.kubernetes.status import StatusResolver

__all__ = [
    "CollectedUsage",
    "KubernetesBacktestRunner",
    "KubernetesClients",
    "KubernetesConfig",
    "KubernetesDataDownloader",
    "LifecycleManager",
    "LogRetriever",
    "MetricsCollector",
    "MetricsRoute",
    "PodLogStream",
    "PrometheusClient",
    "ResourceDefaults",
    "ResourceNamer",
    "StatusResolver",
    "WorkloadProvisioner",
    "apply_minimums",
    "build_download_script",
]
