"""Process-level settings for backtide.

Values come from ``BACKTIDE_*`` environment variables or a ``.env`` file.
Backend-specific models (``backtide.kubernetes.config.KubernetesConfig``)
are built from these.

Examples:
    >>> import os
    >>> os.environ["BACKTIDE_NAMESPACE"] = "trading"
    >>> BacktideSettings().namespace
    'trading'

Tags:
    settings, configuration, pydantic, environment, backtide
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BacktideSettings(BaseSettings):
    """Environment-driven settings.

    Fields
    ──────
    log_level        : structlog log level
    log_json         : force JSON (True) / console (False) output; auto if unset
    backend          : runner backend name, resolved through the backend registry
    namespace        : cluster namespace workloads are created in
    kubeconfig       : path to a kubeconfig file (content is read at startup)
    context          : kubeconfig context to use
    prometheus_url   : metrics backend base URL
    freqtrade_image  : default workload image
    job_ttl_seconds  : post-completion TTL on jobs
    metrics_timeout_seconds : per-request timeout for metrics queries
    """

    model_config = SettingsConfigDict(
        env_prefix="BACKTIDE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    # ── Backend ──────────────────────────────────────────────────
    backend: str = "kubernetes"
    namespace: str = "default"
    kubeconfig: Path | None = Field(
        default=None,
        description="Path to a kubeconfig file; in-cluster config is used when unset",
    )
    context: str | None = None

    # ── Workloads ────────────────────────────────────────────────
    prometheus_url: str | None = None
    freqtrade_image: str = "freqtradeorg/freqtrade:stable"
    job_ttl_seconds: int = Field(default=3600, ge=0)
    metrics_timeout_seconds: float = Field(default=10.0, gt=0)


@lru_cache(maxsize=1)
def get_settings() -> BacktideSettings:
    """Return the cached process settings."""
    return BacktideSettings()


__all__ = ["BacktideSettings", "get_settings"]
