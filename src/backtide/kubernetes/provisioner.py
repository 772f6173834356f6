"""
Workload provisioning: config objects, staging init container, job.

``WorkloadProvisioner`` turns a spec into cluster objects and submits them in
a fixed order. It keeps no state between calls; every name is re-derived from
the spec ID through ``ResourceNamer``.

Architecture:

    .. code-block:: text

        submit(spec)
          ├── (1) create ConfigMap <kind>-<id>-config    (config.json)
          │        push undo: delete it
          ├── (2) create ConfigMap <kind>-<id>-strategy  (<Strategy>.py)
          │        push undo: delete it
          ├── (3/4) build job
          │        init  "setup-userdata"  busybox: mkdir, cp, optional data fetch
          │        main  "freqtrade"       workload + result markers
          ├── (5) create Job backtide-<kind>-<id>
          └── on failure at any step:
                  run undo actions in reverse, collect their errors,
                  raise ProvisioningError from the original failure

    Pod volumes:

        userdata         emptyDir   init: /userdata   main: /freqtrade/user_data/<id>
        config-source    ConfigMap  init only, read-only
        strategy-source  ConfigMap  init only, read-only

Manifesto:
    - Config objects are created before the job because its volumes name them.
    - The optional data download in the init container is best-effort: a
      failed fetch or extract logs a warning and staging continues.
    - Rollback never hides the original error.

Tags:
    backtide, kubernetes, provisioning, saga, init-container
"""

from __future__ import annotations

import asyncio
import json
import weakref
from collections.abc import Awaitable, Callable, Sequence

from kubernetes import client

from backtide.core.errors import BacktideError, ProvisioningError
from backtide.core.logging import get_logger
from backtide.kubernetes import _api
from backtide.kubernetes.config import KubernetesConfig
from backtide.kubernetes.naming import ANNOTATION_STRATEGY, INIT_CONTAINER, MAIN_CONTAINER, ResourceNamer
from backtide.runner._types import BacktestSpec, HyperOptSpec, ResourceLimits
from backtide.runner.results import RESULT_END_MARKER, RESULT_START_MARKER
from backtide.runner.shell import join_command, quote, sanitize_strategy_filename

logger = get_logger(__name__)

CONFIG_KEY = "config.json"
STAGING_MOUNT = "/userdata"
CONFIG_SOURCE_MOUNT = "/config-source"
STRATEGY_SOURCE_MOUNT = "/strategy-source"
DATA_URL_ENV = "DATA_DOWNLOAD_URL"

# Reads the newest backtest archive and prints its JSON between the markers.
_EMIT_BACKTEST_RESULT = f"""\
import json, pathlib, sys, zipfile
d = pathlib.Path(sys.argv[1])
last = json.loads((d / '.last_result.json').read_text())
name = last.get('latest_backtest', '')
if name.endswith('.zip'):
    with zipfile.ZipFile(d / name) as z:
        payload = z.read(name[:-4] + '.json').decode()
elif name:
    payload = (d / name).read_text()
else:
    payload = json.dumps(last)
print('{RESULT_START_MARKER}')
print(payload)
print('{RESULT_END_MARKER}')
"""


def user_data_path(task_id: str) -> str:
    return f"/freqtrade/user_data/{task_id}"


# ---------------------------------------------------------------------------
# Compensation stack
# ---------------------------------------------------------------------------

class Compensation:
    """Ordered undo actions, run in reverse on failure.

    Each undo error is captured, never raised.
    """

    def __init__(self) -> None:
        self._actions: list[tuple[str, Callable[[], Awaitable[object]]]] = []

    def push(self, description: str, undo: Callable[[], Awaitable[object]]) -> None:
        self._actions.append((description, undo))

    def __len__(self) -> int:
        return len(self._actions)

    async def rollback(self) -> list[str]:
        errors: list[str] = []
        while self._actions:
            description, undo = self._actions.pop()
            try:
                await undo()
            except Exception as exc:
                errors.append(f"{description}: {exc}")
                logger.warning("rollback_step_failed", step=description, error=str(exc))
        return errors


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def build_resources(limits: ResourceLimits | None) -> client.V1ResourceRequirements | None:
    if limits is None:
        return None
    requests = {k: v for k, v in (("cpu", limits.cpu_request), ("memory", limits.memory_request)) if v}
    caps = {k: v for k, v in (("cpu", limits.cpu_limit), ("memory", limits.memory_limit)) if v}
    if not requests and not caps:
        return None
    return client.V1ResourceRequirements(requests=requests or None, limits=caps or None)


def build_setup_script(strategy_file: str, *, hyperopt: bool, fetch_data: bool) -> str:
    """Shell script run by the init container.

    ``set -e`` covers the mandatory staging steps only; the optional data
    fetch runs inside ``if`` so its failure cannot abort the script.
    """
    dirs = ["strategies", "data", "backtest_results", "hyperopts"]
    if hyperopt:
        dirs.append("hyperopt_results")
    mkdir = " ".join(quote(f"{STAGING_MOUNT}/{d}") for d in dirs)
    source = quote(f"{STRATEGY_SOURCE_MOUNT}/{strategy_file}")
    lines = [
        "set -e",
        'echo "Setting up user_data directory..."',
        f"mkdir -p {mkdir}",
        'echo "Copying config..."',
        f"cp {quote(f'{CONFIG_SOURCE_MOUNT}/{CONFIG_KEY}')} {quote(STAGING_MOUNT + '/')}",
        'echo "Copying strategy..."',
        f"cp {source} {quote(STAGING_MOUNT + '/strategies/')}",
    ]
    if fetch_data:
        data_dir = quote(f"{STAGING_MOUNT}/data")
        lines += [
            'echo "Downloading data archive..."',
            f'if wget -q -O /tmp/data.archive "${DATA_URL_ENV}"; then',
            f"  if tar -xzf /tmp/data.archive -C {data_dir} 2>/dev/null"
            f" || unzip -q -o /tmp/data.archive -d {data_dir}; then",
            '    echo "Data extracted"',
            "  else",
            '    echo "WARNING: could not extract data archive, continuing without it"',
            "  fi",
            "  rm -f /tmp/data.archive",
            "else",
            '  echo "WARNING: data download failed, continuing without it"',
            "fi",
        ]
    lines.append('echo "Setup complete"')
    return "\n".join(lines) + "\n"


def build_backtest_command(strategy: str, task_id: str) -> str:
    user_dir = user_data_path(task_id)
    results_dir = f"{user_dir}/backtest_results"
    run = join_command([
        "freqtrade", "backtesting",
        "--strategy", strategy,
        "--userdir", user_dir,
        "--config", f"{user_dir}/{CONFIG_KEY}",
        "--data-format-ohlcv", "json",
    ])
    emit = join_command(["python3", "-c", _EMIT_BACKTEST_RESULT, results_dir])
    return f"{run} && {emit}"


def build_hyperopt_command(spec: HyperOptSpec, strategy: str) -> str:
    user_dir = user_data_path(spec.id)
    config_path = f"{user_dir}/{CONFIG_KEY}"
    argv: list[object] = [
        "freqtrade", "hyperopt",
        "--strategy", strategy,
        "--userdir", user_dir,
        "--config", config_path,
        "--epochs", spec.epochs,
        "--data-format-ohlcv", "json",
    ]
    if spec.spaces:
        argv += ["--spaces", *spec.spaces]
    if spec.loss_function:
        argv += ["--hyperopt-loss", spec.loss_function]
    show = join_command([
        "freqtrade", "hyperopt-show", "--best", "--print-json", "--no-header",
        "--userdir", user_dir, "--config", config_path,
    ])
    return (
        f'{join_command(argv)} && RESULT="$({show})" && '
        f"echo {quote(RESULT_START_MARKER)} && "
        f'printf \'%s\\n\' "$RESULT" && '
        f"echo {quote(RESULT_END_MARKER)}"
    )


# ---------------------------------------------------------------------------
# Provisioner
# ---------------------------------------------------------------------------

class WorkloadProvisioner:
    """Creates the cluster objects of a task with compensating rollback."""

    def __init__(
        self,
        core: client.CoreV1Api,
        batch: client.BatchV1Api,
        config: KubernetesConfig,
    ) -> None:
        self._core = core
        self._batch = batch
        self._config = config
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def namespace(self) -> str:
        return self._config.namespace

    # ── Object builders ──────────────────────────────────────────────────

    def _metadata(self, name: str, namer: ResourceNamer, task_id: str) -> client.V1ObjectMeta:
        return client.V1ObjectMeta(name=name, namespace=self.namespace, labels=namer.labels(task_id))

    def build_config_maps(self, spec: BacktestSpec) -> list[client.V1ConfigMap]:
        """The config and strategy objects, in creation order."""
        namer = ResourceNamer(spec.kind)
        strategy_file = f"{sanitize_strategy_filename(spec.strategy_name)}.py"
        return [
            client.V1ConfigMap(
                metadata=self._metadata(namer.config_map_name(spec.id), namer, spec.id),
                data={CONFIG_KEY: json.dumps(dict(spec.config))},
            ),
            client.V1ConfigMap(
                metadata=self._metadata(namer.strategy_map_name(spec.id), namer, spec.id),
                data={strategy_file: spec.strategy_code},
            ),
        ]

    def build_job(self, spec: BacktestSpec) -> client.V1Job:
        namer = ResourceNamer(spec.kind)
        strategy = sanitize_strategy_filename(spec.strategy_name)
        is_hyperopt = isinstance(spec, HyperOptSpec)

        if is_hyperopt:
            command = build_hyperopt_command(spec, strategy)
        else:
            command = build_backtest_command(strategy, spec.id)

        init = client.V1Container(
            name=INIT_CONTAINER,
            image=self._config.init_image,
            command=["sh", "-c"],
            args=[build_setup_script(
                f"{strategy}.py", hyperopt=is_hyperopt, fetch_data=bool(spec.data_download_url),
            )],
            env=[client.V1EnvVar(name=DATA_URL_ENV, value=spec.data_download_url or "")],
            volume_mounts=[
                client.V1VolumeMount(name="userdata", mount_path=STAGING_MOUNT),
                client.V1VolumeMount(name="config-source", mount_path=CONFIG_SOURCE_MOUNT, read_only=True),
                client.V1VolumeMount(name="strategy-source", mount_path=STRATEGY_SOURCE_MOUNT, read_only=True),
            ],
        )
        main = client.V1Container(
            name=MAIN_CONTAINER,
            image=self._config.image_for(spec.freqtrade_version),
            command=["/bin/sh", "-c"],
            args=[command],
            env=[client.V1EnvVar(name=k, value=str(v)) for k, v in sorted(spec.environment.items())] or None,
            resources=build_resources(self._config.resources_for(spec.resources)),
            volume_mounts=[client.V1VolumeMount(name="userdata", mount_path=user_data_path(spec.id))],
        )
        volumes = [
            client.V1Volume(name="userdata", empty_dir=client.V1EmptyDirVolumeSource()),
            client.V1Volume(
                name="config-source",
                config_map=client.V1ConfigMapVolumeSource(name=namer.config_map_name(spec.id)),
            ),
            client.V1Volume(
                name="strategy-source",
                config_map=client.V1ConfigMapVolumeSource(name=namer.strategy_map_name(spec.id)),
            ),
        ]
        return self.wrap_job(
            namer, spec.id,
            client.V1PodSpec(
                restart_policy="Never",
                init_containers=[init],
                containers=[main],
                volumes=volumes,
            ),
            annotations={ANNOTATION_STRATEGY: strategy},
        )

    def wrap_job(
        self,
        namer: ResourceNamer,
        task_id: str,
        pod_spec: client.V1PodSpec,
        *,
        annotations: dict[str, str] | None = None,
    ) -> client.V1Job:
        """Wrap a pod spec into a no-retry job with a post-completion TTL."""
        metadata = self._metadata(namer.job_name(task_id), namer, task_id)
        metadata.annotations = annotations
        return client.V1Job(
            api_version="batch/v1",
            kind="Job",
            metadata=metadata,
            spec=client.V1JobSpec(
                backoff_limit=0,
                ttl_seconds_after_finished=self._config.job_ttl_seconds,
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=namer.labels(task_id)),
                    spec=pod_spec,
                ),
            ),
        )

    # ── Submission ───────────────────────────────────────────────────────

    async def submit(self, spec: BacktestSpec) -> str:
        """Create config objects and job for a backtest/hyperopt spec.

        Returns the job name.
        """
        namer = ResourceNamer(spec.kind)
        return await self.provision(
            namer, spec.id,
            config_maps=lambda: self.build_config_maps(spec),
            job=lambda: self.build_job(spec),
        )

    async def provision(
        self,
        namer: ResourceNamer,
        task_id: str,
        *,
        config_maps: Callable[[], Sequence[client.V1ConfigMap]],
        job: Callable[[], client.V1Job],
    ) -> str:
        """Create *config_maps* in order, then *job*; roll back on failure."""
        job_name = namer.job_name(task_id)
        lock = self._locks.get(job_name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[job_name] = lock

        async with lock:
            undo = Compensation()
            step = "build config objects"
            try:
                for cm in config_maps():
                    name = cm.metadata.name
                    step = f"create configmap {name}"
                    await _api.call(
                        self._core.create_namespaced_config_map, self.namespace, cm,
                        resource=f"configmap {name}",
                    )
                    undo.push(f"delete configmap {name}", self._undo_config_map(name))
                step = "build job"
                body = job()
                step = f"create job {job_name}"
                await _api.call(
                    self._batch.create_namespaced_job, self.namespace, body,
                    resource=f"job {job_name}",
                )
            except Exception as exc:
                logger.error(
                    "provision_failed",
                    task_kind=namer.kind.value, task_id=task_id, step=step, error=str(exc),
                )
                rollback_errors = await undo.rollback()
                if rollback_errors:
                    logger.warning(
                        "rollback_incomplete",
                        task_kind=namer.kind.value, task_id=task_id, errors=rollback_errors,
                    )
                detail = exc.message if isinstance(exc, BacktideError) else str(exc)
                raise ProvisioningError(
                    f"{step} failed: {detail}",
                    rollback_errors=rollback_errors,
                    cause=exc,
                ).with_context(task_kind=namer.kind.value, task_id=task_id) from exc

        logger.info("job_created", task_kind=namer.kind.value, task_id=task_id, job=job_name)
        return job_name

    def _undo_config_map(self, name: str) -> Callable[[], Awaitable[bool]]:
        def undo() -> Awaitable[bool]:
            return _api.absent_ok(
                self._core.delete_namespaced_config_map, name, self.namespace,
                resource=f"configmap {name}",
            )
        return undo
