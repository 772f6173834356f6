"""
Shared pytest fixtures for backtide tests.

This module provides:
- An in-memory cluster standing in for the kubernetes API objects
- A ``KubernetesConfig`` for the ``trading`` namespace
- Settings cache isolation
"""

import sys
from pathlib import Path

import pytest

# Ensure backtide package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from backtide.core.settings import get_settings
from backtide.kubernetes.config import KubernetesConfig
from _support.fake_cluster import FakeCluster


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def k8s_config() -> KubernetesConfig:
    return KubernetesConfig(namespace="trading", job_ttl_seconds=600)


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
