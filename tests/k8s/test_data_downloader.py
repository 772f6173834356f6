"""Tests for KubernetesDataDownloader and the generated download script."""

import json
import shlex
from datetime import UTC, datetime

import pytest
from kubernetes.client.exceptions import ApiException

from backtide.core.enums import DataDownloadState
from backtide.core.errors import ProvisioningError, TaskNotFoundError
from backtide.kubernetes.backtest import KubernetesClients
from backtide.kubernetes.data_downloader import (
    KubernetesDataDownloader,
    build_download_command,
    build_download_script,
)
from backtide.runner._types import DataDownloader, DataDownloadSpec, ExchangeDownload

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
JOB = "backtide-data-download-dl-1"

AVAILABLE = {
    "exchanges": [{
        "name": "binance",
        "pairs": [{"pair": "BTC/USDT", "timeframes": [
            {"timeframe": "5m", "from": "2026-01-01T00:00:00Z", "to": "2026-01-31T23:55:00Z"},
        ]}],
    }],
}
DOWNLOAD_LOGS = (
    "Downloading binance data...\n"
    "Upload completed\n"
    "===DATA_AVAILABLE_START===\n"
    f"{json.dumps(AVAILABLE)}\n"
    "===DATA_AVAILABLE_END===\n"
)


# ── Helpers ──────────────────────────────────────────────────────────────


def _exchange(**overrides) -> ExchangeDownload:
    base = dict(name="binance", pairs_pattern="BTC/USDT", timeframes=("5m", "1h"), days=30)
    base.update(overrides)
    return ExchangeDownload(**base)


def _spec(**overrides) -> DataDownloadSpec:
    base = dict(id="dl-1", exchanges=(_exchange(),), upload_url="https://s3/put?sig=abc")
    base.update(overrides)
    return DataDownloadSpec(**base)


def _argv(command: str) -> list[str]:
    return shlex.split(command.replace(" \\\n    ", " "))


@pytest.fixture
def downloader(cluster, k8s_config) -> KubernetesDataDownloader:
    return KubernetesDataDownloader(k8s_config, clients=KubernetesClients(core=cluster, batch=cluster))


# ── Script generation ────────────────────────────────────────────────────


class TestDownloadCommand:
    def test_arguments(self):
        argv = _argv(build_download_command(_exchange(trading_mode="futures")))
        assert argv[:2] == ["freqtrade", "download-data"]
        assert argv[argv.index("--exchange") + 1] == "binance"
        assert argv[argv.index("--pairs") + 1] == "BTC/USDT"
        i = argv.index("--timeframes")
        assert argv[i + 1:i + 3] == ["5m", "1h"]
        assert argv[argv.index("--days") + 1] == "30"
        assert argv[argv.index("--trading-mode") + 1] == "futures"

    def test_hostile_values_stay_literal(self):
        exchange = _exchange(
            name="binance'; rm -rf / #",
            pairs_pattern="$(whoami)/USDT",
            timeframes=("5m`id`",),
        )
        command = build_download_command(exchange)
        argv = _argv(command)
        assert argv[argv.index("--exchange") + 1] == "binance'; rm -rf / #"
        assert argv[argv.index("--pairs") + 1] == "$(whoami)/USDT"
        assert argv[argv.index("--timeframes") + 1] == "5m`id`"
        # Nothing leaked outside a single-quoted word.
        assert "'$(whoami)/USDT'" in command
        assert command.count("rm -rf") == 1

    def test_days_is_an_integer(self):
        assert "--days 7" in build_download_command(_exchange(days=7))


class TestDownloadScript:
    def test_phases_in_order(self):
        script = build_download_script(_spec())
        order = [
            script.index("EXISTING_DATA_URL"),
            script.index("freqtrade download-data"),
            script.index("tar -czf /tmp/data.tar.gz ."),
            script.index("UPLOAD_URL"),
            script.index("===DATA_AVAILABLE_START==="),
        ]
        assert order == sorted(order)
        assert script.startswith("set -e\n")

    def test_one_command_per_exchange(self):
        spec = _spec(exchanges=(_exchange(), _exchange(name="kraken", pairs_pattern="ETH/EUR")))
        script = build_download_script(spec)
        assert script.count("freqtrade download-data") == 2
        assert "echo 'Downloading kraken data...'" in script

    def test_hydration_is_best_effort(self):
        script = build_download_script(_spec())
        assert '" || true' in script

    def test_upload_skipped_without_url(self):
        script = build_download_script(_spec())
        assert 'if [ -n "$UPLOAD_URL" ]; then' in script
        assert "application/gzip" in script
        assert "skipping upload" in script

    def test_urls_never_in_script(self):
        spec = _spec(existing_data_url="https://s3/get?sig=secret")
        script = build_download_script(spec)
        assert "sig=abc" not in script
        assert "sig=secret" not in script


class TestJob:
    def test_job_shape(self, downloader):
        spec = _spec(existing_data_url="https://s3/get")
        job = downloader.build_job(spec)
        assert job.metadata.name == JOB
        assert job.spec.backoff_limit == 0
        (container,) = job.spec.template.spec.containers
        assert container.name == "data-downloader"
        assert container.image == "freqtradeorg/freqtrade:stable"
        assert container.command == ["/bin/sh", "/scripts/download.sh"]
        env = {e.name: e.value for e in container.env}
        assert env == {"UPLOAD_URL": "https://s3/put?sig=abc", "EXISTING_DATA_URL": "https://s3/get"}
        (volume,) = job.spec.template.spec.volumes
        assert volume.config_map.name == "data-download-dl-1-script"

    def test_image_override(self, downloader):
        job = downloader.build_job(_spec(image="freqtradeorg/freqtrade:2024.11"))
        assert job.spec.template.spec.containers[0].image == "freqtradeorg/freqtrade:2024.11"

    def test_script_map(self, downloader):
        cm = downloader.build_script_map(_spec())
        assert cm.metadata.name == "data-download-dl-1-script"
        assert "freqtrade download-data" in cm.data["download.sh"]


# ── DataDownloader operations ────────────────────────────────────────────


class TestOperations:
    def test_is_a_downloader(self, downloader):
        assert isinstance(downloader, DataDownloader)

    @pytest.mark.asyncio
    async def test_start_returns_task_id(self, downloader, cluster):
        assert await downloader.start_download(_spec()) == "dl-1"
        assert cluster.call_names() == ["create_namespaced_config_map", "create_namespaced_job"]
        assert set(cluster.config_maps) == {"data-download-dl-1-script"}
        assert set(cluster.jobs) == {JOB}

    @pytest.mark.asyncio
    async def test_start_failure_rolls_back(self, downloader, cluster):
        cluster.fail_on("create_namespaced_job", ApiException(status=500))
        with pytest.raises(ProvisioningError):
            await downloader.start_download(_spec())
        assert cluster.config_maps == {}

    @pytest.mark.asyncio
    async def test_status_not_found(self, downloader):
        with pytest.raises(TaskNotFoundError):
            await downloader.get_download_status("nope")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("counters", "expected"),
        [
            ({}, DataDownloadState.PENDING),
            ({"active": 1}, DataDownloadState.DOWNLOADING),
            ({"failed": 1, "failed_message": "DeadlineExceeded"}, DataDownloadState.FAILED),
        ],
    )
    async def test_state_mapping(self, downloader, cluster, counters, expected):
        await downloader.start_download(_spec())
        cluster.set_job_status(JOB, **counters)
        status = await downloader.get_download_status("dl-1")
        assert status.state is expected
        assert status.current_phase == expected.value
        assert status.data_available is None

    @pytest.mark.asyncio
    async def test_completed_reports_data_available(self, downloader, cluster):
        await downloader.start_download(_spec())
        cluster.set_job_status(JOB, succeeded=1, started=T0, completed=T0)
        cluster.add_pod(f"{JOB}-pod", downloader.namer.labels("dl-1"), logs=DOWNLOAD_LOGS,
                        exit_code=0, container="data-downloader")
        status = await downloader.get_download_status("dl-1")
        assert status.state is DataDownloadState.COMPLETED
        assert status.progress == 100.0
        assert status.data_available == AVAILABLE
        assert cluster.log_requests[-1]["container"] == "data-downloader"

    @pytest.mark.asyncio
    async def test_completed_without_pod(self, downloader, cluster):
        await downloader.start_download(_spec())
        cluster.set_job_status(JOB, succeeded=1, completed=T0)
        status = await downloader.get_download_status("dl-1")
        assert status.state is DataDownloadState.COMPLETED
        assert status.data_available is None

    @pytest.mark.asyncio
    async def test_completed_pod_collected_during_log_read(self, downloader, cluster):
        await downloader.start_download(_spec())
        cluster.set_job_status(JOB, succeeded=1, started=T0, completed=T0)
        cluster.add_pod(f"{JOB}-pod", downloader.namer.labels("dl-1"), logs=DOWNLOAD_LOGS,
                        exit_code=0, container="data-downloader")
        cluster.fail_on("read_namespaced_pod_log", ApiException(status=404, reason="NotFound"))
        status = await downloader.get_download_status("dl-1")
        assert status.state is DataDownloadState.COMPLETED
        assert status.data_available is None

    @pytest.mark.asyncio
    async def test_job_has_no_strategy_annotation(self, downloader):
        assert downloader.build_job(_spec()).metadata.annotations is None

    @pytest.mark.asyncio
    async def test_logs(self, downloader, cluster):
        await downloader.start_download(_spec())
        cluster.add_pod(f"{JOB}-pod", downloader.namer.labels("dl-1"), logs=DOWNLOAD_LOGS)
        assert "Upload completed" in await downloader.get_download_logs("dl-1")

    @pytest.mark.asyncio
    async def test_logs_not_found(self, downloader):
        with pytest.raises(TaskNotFoundError):
            await downloader.get_download_logs("nope")

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, downloader, cluster):
        await downloader.start_download(_spec())
        await downloader.cancel_download("dl-1")
        await downloader.cancel_download("dl-1")
        assert cluster.jobs == {}
        assert set(cluster.config_maps) == {"data-download-dl-1-script"}

    @pytest.mark.asyncio
    async def test_cleanup(self, downloader, cluster):
        await downloader.start_download(_spec())
        await downloader.cleanup_download("dl-1")
        await downloader.cleanup_download("dl-1")
        assert cluster.jobs == {}
        assert cluster.config_maps == {}
        deleted = [kw["name"] for name, kw in cluster.calls if name == "delete_namespaced_config_map"]
        assert set(deleted) == {"data-download-dl-1-script"}
