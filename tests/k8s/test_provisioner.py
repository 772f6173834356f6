"""Tests for WorkloadProvisioner: object shape, ordering and rollback."""

import json
import shlex

import pytest
from kubernetes.client.exceptions import ApiException

from backtide.core.errors import ProvisioningError
from backtide.kubernetes.naming import INIT_CONTAINER, MAIN_CONTAINER
from backtide.kubernetes.provisioner import (
    Compensation,
    WorkloadProvisioner,
    build_backtest_command,
    build_hyperopt_command,
    build_resources,
    build_setup_script,
)
from backtide.runner._types import BacktestSpec, HyperOptSpec, ResourceLimits


# ── Helpers ──────────────────────────────────────────────────────────────


def _spec(**overrides) -> BacktestSpec:
    base = dict(
        id="bt-1",
        strategy_name="sma cross",
        strategy_code="class SmaCross: pass\n",
        config={"stake_currency": "USDT", "dry_run": True},
    )
    base.update(overrides)
    return BacktestSpec(**base)


def _hyperopt(**overrides) -> HyperOptSpec:
    base = dict(id="ho-1", strategy_name="SmaCross", epochs=50, spaces=("buy", "sell"), loss_function="SharpeHyperOptLoss")
    base.update(overrides)
    return HyperOptSpec(**base)


@pytest.fixture
def provisioner(cluster, k8s_config) -> WorkloadProvisioner:
    return WorkloadProvisioner(cluster, cluster, k8s_config)


# ── Builders ─────────────────────────────────────────────────────────────


class TestBuilders:
    def test_job_records_strategy_class(self, provisioner):
        job = provisioner.build_job(_spec())
        assert job.metadata.annotations == {"backtide.io/strategy": "SmaCross"}

    def test_config_maps(self, provisioner):
        config_cm, strategy_cm = provisioner.build_config_maps(_spec())
        assert config_cm.metadata.name == "backtest-bt-1-config"
        assert json.loads(config_cm.data["config.json"]) == {"stake_currency": "USDT", "dry_run": True}
        assert strategy_cm.metadata.name == "backtest-bt-1-strategy"
        assert strategy_cm.data == {"SmaCross.py": "class SmaCross: pass\n"}
        assert strategy_cm.metadata.labels["backtide.io/backtest-id"] == "bt-1"

    def test_job_shape(self, provisioner, k8s_config):
        job = provisioner.build_job(_spec())
        assert job.metadata.name == "backtide-backtest-bt-1"
        assert job.spec.backoff_limit == 0
        assert job.spec.ttl_seconds_after_finished == k8s_config.job_ttl_seconds
        pod = job.spec.template.spec
        assert pod.restart_policy == "Never"
        assert job.spec.template.metadata.labels == job.metadata.labels

        (init,) = pod.init_containers
        (main,) = pod.containers
        assert init.name == INIT_CONTAINER
        assert main.name == MAIN_CONTAINER
        assert {m.name for m in init.volume_mounts} == {"userdata", "config-source", "strategy-source"}
        assert all(m.read_only for m in init.volume_mounts if m.name != "userdata")
        assert [m.name for m in main.volume_mounts] == ["userdata"]
        assert main.volume_mounts[0].mount_path == "/freqtrade/user_data/bt-1"
        assert main.image == "freqtradeorg/freqtrade:stable"

    def test_version_and_resources(self, provisioner):
        job = provisioner.build_job(_spec(
            freqtrade_version="2024.11",
            resources=ResourceLimits(cpu_request="500m", memory_limit="2Gi"),
            environment={"TZ": "UTC"},
        ))
        main = job.spec.template.spec.containers[0]
        assert main.image == "freqtradeorg/freqtrade:2024.11"
        assert main.resources.requests == {"cpu": "500m"}
        assert main.resources.limits == {"memory": "2Gi"}
        assert [(e.name, e.value) for e in main.env] == [("TZ", "UTC")]

    def test_no_resources(self):
        assert build_resources(None) is None
        assert build_resources(ResourceLimits()) is None

    def test_backtest_command_emits_markers(self):
        cmd = build_backtest_command("SmaCross", "bt-1")
        assert cmd.startswith("freqtrade backtesting --strategy SmaCross")
        assert "--userdir /freqtrade/user_data/bt-1" in cmd
        assert "===RESULT_START===" in cmd and "===RESULT_END===" in cmd

    def test_hyperopt_command(self):
        cmd = build_hyperopt_command(_hyperopt(), "SmaCross")
        first = shlex.split(cmd.split(" && ")[0])
        assert first[:4] == ["freqtrade", "hyperopt", "--strategy", "SmaCross"]
        assert first[first.index("--epochs") + 1] == "50"
        assert first[first.index("--spaces") + 1:first.index("--spaces") + 3] == ["buy", "sell"]
        assert first[first.index("--hyperopt-loss") + 1] == "SharpeHyperOptLoss"
        assert "hyperopt-show --best --print-json --no-header" in cmd

    def test_hyperopt_optional_flags(self):
        cmd = build_hyperopt_command(_hyperopt(spaces=(), loss_function=None), "S")
        assert "--spaces" not in cmd
        assert "--hyperopt-loss" not in cmd


class TestSetupScript:
    def test_staging_only(self):
        script = build_setup_script("SmaCross.py", hyperopt=False, fetch_data=False)
        assert script.startswith("set -e\n")
        assert "/strategy-source/SmaCross.py" in script
        assert "wget" not in script
        assert "hyperopt_results" not in script

    def test_hyperopt_dirs(self):
        assert "/userdata/hyperopt_results" in build_setup_script("S.py", hyperopt=True, fetch_data=False)

    def test_data_fetch_is_best_effort(self):
        script = build_setup_script("S.py", hyperopt=False, fetch_data=True)
        assert 'if wget -q -O /tmp/data.archive "$DATA_DOWNLOAD_URL"; then' in script
        assert "continuing without it" in script
        # The fetch sits inside if/else so set -e cannot abort on it.
        assert "\nwget" not in script

    def test_data_url_reaches_init_env(self, provisioner):
        job = provisioner.build_job(_spec(data_download_url="https://s3/data.tar.gz"))
        init = job.spec.template.spec.init_containers[0]
        assert {e.name: e.value for e in init.env}["DATA_DOWNLOAD_URL"] == "https://s3/data.tar.gz"


# ── Submission ───────────────────────────────────────────────────────────


class TestSubmit:
    @pytest.mark.asyncio
    async def test_creation_order(self, provisioner, cluster):
        assert await provisioner.submit(_spec()) == "backtide-backtest-bt-1"
        assert cluster.call_names() == [
            "create_namespaced_config_map",
            "create_namespaced_config_map",
            "create_namespaced_job",
        ]
        assert [kw["name"] for _, kw in cluster.calls] == [
            "backtest-bt-1-config", "backtest-bt-1-strategy", "backtide-backtest-bt-1",
        ]
        assert all(kw["namespace"] == "trading" for _, kw in cluster.calls)

    @pytest.mark.asyncio
    async def test_hyperopt_names(self, provisioner, cluster):
        await provisioner.submit(_hyperopt())
        assert set(cluster.jobs) == {"backtide-hyperopt-ho-1"}
        assert set(cluster.config_maps) == {"hyperopt-ho-1-config", "hyperopt-ho-1-strategy"}

    @pytest.mark.asyncio
    async def test_job_failure_rolls_back_config_maps(self, provisioner, cluster):
        cluster.fail_on("create_namespaced_job", ApiException(status=403, reason="Forbidden"))
        with pytest.raises(ProvisioningError) as exc_info:
            await provisioner.submit(_spec())
        err = exc_info.value
        assert "create job backtide-backtest-bt-1 failed" in err.message
        assert err.rollback_errors == []
        assert err.context["task_id"] == "bt-1"
        assert cluster.config_maps == {}
        assert cluster.call_names()[-2:] == ["delete_namespaced_config_map", "delete_namespaced_config_map"]
        # Reverse order of creation.
        assert [kw["name"] for _, kw in cluster.calls[-2:]] == ["backtest-bt-1-strategy", "backtest-bt-1-config"]

    @pytest.mark.asyncio
    async def test_first_config_map_failure(self, provisioner, cluster):
        cluster.fail_on("create_namespaced_config_map", ApiException(status=500, reason="boom"))
        # First create fails: nothing to roll back.
        with pytest.raises(ProvisioningError) as exc_info:
            await provisioner.submit(_spec())
        assert exc_info.value.rollback_errors == []
        assert "delete_namespaced_config_map" not in cluster.call_names()
        assert cluster.jobs == {}

    @pytest.mark.asyncio
    async def test_rollback_errors_do_not_mask_original(self, provisioner, cluster):
        cluster.fail_on("create_namespaced_job", ApiException(status=500, reason="job boom"))
        cluster.fail_on("delete_namespaced_config_map", ApiException(status=503, reason="unavailable"))
        with pytest.raises(ProvisioningError) as exc_info:
            await provisioner.submit(_spec())
        err = exc_info.value
        assert "job boom" in err.message
        assert len(err.rollback_errors) == 1
        assert "unavailable" in err.rollback_errors[0]
        # The other config object was still removed.
        assert list(cluster.config_maps) == ["backtest-bt-1-strategy"]

    @pytest.mark.asyncio
    async def test_rollback_tolerates_already_deleted(self, provisioner, cluster):
        cluster.fail_on("create_namespaced_job", ApiException(status=500))
        cluster.fail_on("delete_namespaced_config_map", ApiException(status=404))
        with pytest.raises(ProvisioningError) as exc_info:
            await provisioner.submit(_spec())
        assert exc_info.value.rollback_errors == []


class TestCompensation:
    @pytest.mark.asyncio
    async def test_reverse_order_and_captured_errors(self):
        order: list[str] = []

        def undo(name, fail=False):
            async def _run():
                order.append(name)
                if fail:
                    raise RuntimeError(f"{name} failed")
            return _run

        comp = Compensation()
        comp.push("a", undo("a"))
        comp.push("b", undo("b", fail=True))
        comp.push("c", undo("c"))
        assert len(comp) == 3
        errors = await comp.rollback()
        assert order == ["c", "b", "a"]
        assert errors == ["b: b failed"]
        assert len(comp) == 0
