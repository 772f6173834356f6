"""
Kubernetes backend configuration.

``KubernetesConfig`` is what upstream callers store per runner (camelCase
keys, e.g. ``prometheusUrl``) and what ``BacktideSettings`` is mapped onto.
It also knows how to build a ``kubernetes.client.ApiClient`` for itself.

Client construction order:

    .. code-block:: text

        kubeconfig_content set? ──► yaml.safe_load → new_client_from_config_dict(context)
        kubeconfig path set?    ──► new_client_from_config(path, context)
        in-cluster?             ──► load_incluster_config(client_configuration=...)
        otherwise               ──► default kubeconfig (~/.kube/config)

Examples:
    >>> cfg = KubernetesConfig.from_mapping({"namespace": "trading", "prometheusUrl": "http://prom:9090"})
    >>> cfg.prometheus_url
    'http://prom:9090'
    >>> cfg.image_for("2024.11")
    'freqtradeorg/freqtrade:2024.11'
    >>> KubernetesConfig(namespace="Bad_NS")
    Traceback (most recent call last):
    ...
    pydantic_core._pydantic_core.ValidationError: ...

Tags:
    config, pydantic, kubernetes, kubeconfig, backtide
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from kubernetes import client, config
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from backtide.core.errors import ConfigError
from backtide.runner._types import ResourceLimits

if TYPE_CHECKING:
    from backtide.core.settings import BacktideSettings

DEFAULT_FREQTRADE_IMAGE = "freqtradeorg/freqtrade:stable"
DEFAULT_INIT_IMAGE = "busybox:1.36"
DEFAULT_JOB_TTL_SECONDS = 3600
FREQTRADE_REPOSITORY = "freqtradeorg/freqtrade"

_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


class ResourceDefaults(BaseModel):
    """Default container requests/limits, e.g. ``cpuRequest: 250m``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    cpu_request: str | None = None
    cpu_limit: str | None = None
    memory_request: str | None = None
    memory_limit: str | None = None

    def to_limits(self) -> ResourceLimits:
        return ResourceLimits(
            cpu_request=self.cpu_request,
            cpu_limit=self.cpu_limit,
            memory_request=self.memory_request,
            memory_limit=self.memory_limit,
        )


class KubernetesConfig(BaseModel):
    """Connection and workload defaults for the Kubernetes backend."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    namespace: str = Field(description="Namespace all task resources are created in")
    kubeconfig: Path | None = Field(default=None, description="Path to a kubeconfig file")
    kubeconfig_content: str | None = Field(default=None, description="Inline kubeconfig YAML")
    context: str | None = Field(default=None, description="Kubeconfig context; current context if unset")
    freqtrade_image: str = Field(default=DEFAULT_FREQTRADE_IMAGE)
    init_image: str = Field(default=DEFAULT_INIT_IMAGE, description="Image of the staging init container")
    prometheus_url: str | None = Field(default=None, description="Metrics backend base URL")
    default_resources: ResourceDefaults | None = None
    job_ttl_seconds: int = Field(default=DEFAULT_JOB_TTL_SECONDS, ge=0)
    metrics_timeout_seconds: float = Field(default=10.0, gt=0)

    @field_validator("namespace")
    @classmethod
    def _validate_namespace(cls, v: str) -> str:
        if not v:
            raise ValueError("namespace is required")
        if len(v) > 63 or not _DNS_LABEL.match(v):
            raise ValueError(
                "namespace must be a valid DNS label "
                "(lowercase, alphanumeric, hyphens allowed, max 63 chars)"
            )
        return v

    @field_validator("freqtrade_image", "init_image")
    @classmethod
    def _default_when_blank(cls, v: str, info: Any) -> str:
        if v:
            return v
        return DEFAULT_FREQTRADE_IMAGE if info.field_name == "freqtrade_image" else DEFAULT_INIT_IMAGE

    # ── Construction ─────────────────────────────────────────────────────

    @classmethod
    def from_mapping(cls, data: dict[str, Any] | None) -> KubernetesConfig:
        """Parse a stored configuration mapping, raising ``ConfigError``."""
        if not data:
            raise ConfigError("kubernetes config is required")
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"invalid kubernetes config: {exc}", cause=exc) from exc

    @classmethod
    def from_settings(cls, settings: BacktideSettings) -> KubernetesConfig:
        return cls.from_mapping({
            "namespace": settings.namespace,
            "kubeconfig": settings.kubeconfig,
            "context": settings.context,
            "freqtrade_image": settings.freqtrade_image,
            "prometheus_url": settings.prometheus_url,
            "job_ttl_seconds": settings.job_ttl_seconds,
            "metrics_timeout_seconds": settings.metrics_timeout_seconds,
        })

    def to_mapping(self) -> dict[str, Any]:
        """Serialize with camelCase keys, omitting unset values."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    # ── Derived values ───────────────────────────────────────────────────

    def image_for(self, version: str | None) -> str:
        """Workload image, pinned to *version* when given."""
        if version:
            return f"{FREQTRADE_REPOSITORY}:{version}"
        return self.freqtrade_image

    def resources_for(self, requested: ResourceLimits | None) -> ResourceLimits | None:
        defaults = self.default_resources.to_limits() if self.default_resources else None
        if requested is None:
            return defaults
        return requested.merged_over(defaults)

    def build_api_client(self) -> client.ApiClient:
        """Create an ``ApiClient`` for this configuration."""
        try:
            if self.kubeconfig_content:
                data = yaml.safe_load(self.kubeconfig_content)
                if not isinstance(data, dict):
                    raise ConfigError("kubeconfig content is not a YAML mapping")
                return config.new_client_from_config_dict(data, context=self.context)
            if self.kubeconfig:
                return config.new_client_from_config(
                    config_file=str(self.kubeconfig), context=self.context,
                )
            configuration = client.Configuration()
            try:
                config.load_incluster_config(client_configuration=configuration)
            except config.ConfigException:
                return config.new_client_from_config(context=self.context)
            return client.ApiClient(configuration=configuration)
        except ConfigError:
            raise
        except (config.ConfigException, yaml.YAMLError, OSError) as exc:
            raise ConfigError(f"failed to load kubernetes client config: {exc}", cause=exc) from exc
