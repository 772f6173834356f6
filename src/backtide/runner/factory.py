"""Backend registry: builds the configured runner.

Backends are registered by name with a factory callable. The active one is
chosen from configuration (``BacktideSettings.backend``), never by inspecting
runtime types.

Architecture:

    .. code-block:: text

        BackendRegistry
        ┌──────────────────────────────────────────────────────────┐
        │  register(name, factory)  → stores factory by name       │
        │  unregister(name)         → removes factory              │
        │  get(name)                → factory or None              │
        │  list_backends()          → registered names             │
        │  create(name, settings)   → runner instance              │
        │    └── unknown name       → ConfigError                  │
        └──────────────────────────────────────────────────────────┘

        built in:
          "kubernetes" → backtide.kubernetes.KubernetesBacktestRunner
          "stub"       → backtide.runner.StubBacktestRunner

Example:
    >>> from backtide.runner.factory import create_runner
    >>> runner = create_runner()          # uses BacktideSettings
    >>> status = await runner.get_backtest_status("bt-1")

Tags:
    backtide, runner, registry, factory
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from backtide.core.errors import ConfigError
from backtide.core.logging import get_logger

if TYPE_CHECKING:
    from backtide.core.settings import BacktideSettings
    from backtide.runner._types import BacktestRunner, DataDownloader

logger = get_logger(__name__)

RunnerFactory = Callable[["BacktideSettings"], Any]


class BackendRegistry:
    """Registry of named runner factories."""

    def __init__(self) -> None:
        self._factories: dict[str, RunnerFactory] = {}

    def register(self, name: str, factory: RunnerFactory) -> None:
        """Register a backend factory. Overwrites an existing name."""
        if name in self._factories:
            logger.warning("backend_replaced", backend=name)
        self._factories[name] = factory

    def unregister(self, name: str) -> bool:
        return self._factories.pop(name, None) is not None

    def get(self, name: str) -> RunnerFactory | None:
        return self._factories.get(name)

    def list_backends(self) -> list[str]:
        return sorted(self._factories)

    def create(self, name: str, settings: BacktideSettings) -> Any:
        factory = self._factories.get(name)
        if factory is None:
            raise ConfigError(
                f"unknown backend {name!r}; available: {', '.join(self.list_backends()) or 'none'}",
            ).with_context(backend=name)
        logger.debug("backend_create", backend=name)
        return factory(settings)

    def __contains__(self, name: str) -> bool:
        return name in self._factories

    def __len__(self) -> int:
        return len(self._factories)

    def __repr__(self) -> str:
        return f"BackendRegistry(backends={self.list_backends()})"


def _kubernetes_runner(settings: BacktideSettings) -> Any:
    from backtide.kubernetes.backtest import KubernetesBacktestRunner
    from backtide.kubernetes.config import KubernetesConfig

    return KubernetesBacktestRunner(KubernetesConfig.from_settings(settings))


def _kubernetes_downloader(settings: BacktideSettings) -> Any:
    from backtide.kubernetes.config import KubernetesConfig
    from backtide.kubernetes.data_downloader import KubernetesDataDownloader

    return KubernetesDataDownloader(KubernetesConfig.from_settings(settings))


def _stub_runner(settings: BacktideSettings) -> Any:
    from backtide.runner._base import StubBacktestRunner

    return StubBacktestRunner()


runners = BackendRegistry()
runners.register("kubernetes", _kubernetes_runner)
runners.register("stub", _stub_runner)

downloaders = BackendRegistry()
downloaders.register("kubernetes", _kubernetes_downloader)


def _settings(settings: BacktideSettings | None) -> BacktideSettings:
    if settings is not None:
        return settings
    from backtide.core.settings import get_settings

    return get_settings()


def create_runner(settings: BacktideSettings | None = None) -> BacktestRunner:
    """Build the backtest/hyperopt runner named by ``settings.backend``."""
    s = _settings(settings)
    return runners.create(s.backend, s)


def create_downloader(settings: BacktideSettings | None = None) -> DataDownloader:
    """Build the data downloader named by ``settings.backend``."""
    s = _settings(settings)
    return downloaders.create(s.backend, s)
