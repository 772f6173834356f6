"""Backend-neutral runner contract.

Architecture:

    .. code-block:: text

        backtide.runner
        ├── __init__.py  ← Public API (this file)
        ├── _types.py    ← specs, status/result types, protocols
        ├── _base.py     ← BaseBacktestRunner + StubBacktestRunner
        ├── factory.py   ← backend registry, create_runner / create_downloader
        ├── results.py   ← marker parsing, log cleaning, metric extraction
        └── shell.py     ← shell quoting, strategy filename sanitizing
"""

from backtide.runner._base import BaseBacktestRunner, StaticLogStream, StubBacktestRunner
from backtide.runner._types import (
    BackendHealth,
    BacktestResult,
    BacktestRunner,
    BacktestSpec,
    BacktestStatus,
    ContainerUsage,
    DataDownloader,
    DataDownloadSpec,
    DataDownloadStatus,
    ExchangeDownload,
    HyperOptResult,
    HyperOptSpec,
    HyperOptStatus,
    LogOptions,
    LogStream,
    ResourceLimits,
    TaskResult,
    TaskStatus,
)
from backtide.runner.factory import BackendRegistry, create_downloader, create_runner

__all__ = [
    "BackendHealth",
    "BackendRegistry",
    "BacktestResult",
    "BacktestRunner",
    "BacktestSpec",
    "BacktestStatus",
    "BaseBacktestRunner",
    "ContainerUsage",
    "DataDownloadSpec",
    "DataDownloadStatus",
    "DataDownloader",
    "ExchangeDownload",
    "HyperOptResult",
    "HyperOptSpec",
    "HyperOptStatus",
    "LogOptions",
    "LogStream",
    "ResourceLimits",
    "StaticLogStream",
    "StubBacktestRunner",
    "TaskResult",
    "TaskStatus",
    "create_downloader",
    "create_runner",
]
