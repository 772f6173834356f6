"""
Market-data download jobs.

A download is a single-container job driven by a generated shell script
stored in one config object.

    .. code-block:: text

        start_download(spec)
          ├── ConfigMap data-download-<id>-script   (download.sh)
          └── Job       backtide-data-download-<id>
                container "data-downloader"  (freqtrade image)
                env  UPLOAD_URL, EXISTING_DATA_URL

        download.sh
          (1) hydrate from $EXISTING_DATA_URL        best-effort
          (2) freqtrade download-data per exchange   every value shell-quoted
          (3) tar -czf /tmp/data.tar.gz
          (4) HTTP PUT to $UPLOAD_URL                 application/gzip
          (5) print availability JSON between DATA_AVAILABLE markers

        job counters → state / current_phase
          pending → pending, active → downloading,
          succeeded → completed (+ data_available), failed → failed

    A job-level failure is a single ``failed`` state; there is no
    per-exchange breakdown of partial downloads.

Tags:
    backtide, kubernetes, data-download, shell-quoting
"""

from __future__ import annotations

from kubernetes import client

from backtide.core.enums import DataDownloadState, TaskKind, TaskState
from backtide.core.errors import BacktideError
from backtide.core.logging import LogContext, get_logger
from backtide.kubernetes.backtest import KubernetesClients
from backtide.kubernetes.config import KubernetesConfig
from backtide.kubernetes.lifecycle import LifecycleManager
from backtide.kubernetes.logs import LogRetriever
from backtide.kubernetes.naming import DOWNLOAD_CONTAINER, ResourceNamer
from backtide.kubernetes.provisioner import WorkloadProvisioner, build_resources
from backtide.kubernetes.status import StatusResolver, classify_job
from backtide.runner._types import DataDownloadSpec, DataDownloadStatus, ExchangeDownload
from backtide.runner.results import DATA_AVAILABLE_END_MARKER, DATA_AVAILABLE_START_MARKER, parse_data_available
from backtide.runner.shell import quote, quote_all

logger = get_logger(__name__)

SCRIPT_KEY = "download.sh"
SCRIPT_MOUNT = "/scripts"
USER_DIR = "/freqtrade/user_data"
DATA_DIR = f"{USER_DIR}/data"
ARCHIVE = "/tmp/data.tar.gz"

_STATE = {
    TaskState.PENDING: DataDownloadState.PENDING,
    TaskState.RUNNING: DataDownloadState.DOWNLOADING,
    TaskState.COMPLETED: DataDownloadState.COMPLETED,
    TaskState.FAILED: DataDownloadState.FAILED,
}

_HYDRATE = f"""\
if [ -n "$EXISTING_DATA_URL" ]; then
    echo "Downloading existing data for incremental update..."
    python3 -c "
import os, urllib.request
try:
    urllib.request.urlretrieve(os.environ['EXISTING_DATA_URL'], '/tmp/existing.tar.gz')
    print('Downloaded existing data')
except Exception as e:
    print(f'No existing data available: {{e}}')
" || true
    if [ -f /tmp/existing.tar.gz ]; then
        tar -xzf /tmp/existing.tar.gz -C {DATA_DIR} || echo "WARNING: could not extract existing data"
        rm -f /tmp/existing.tar.gz
    fi
fi
"""

_UPLOAD = f"""\
if [ -n "$UPLOAD_URL" ]; then
    echo "Uploading data archive..."
    python3 -c "
import os, urllib.request
with open('{ARCHIVE}', 'rb') as f:
    req = urllib.request.Request(os.environ['UPLOAD_URL'], data=f.read(), method='PUT')
req.add_header('Content-Type', 'application/gzip')
urllib.request.urlopen(req)
print('Upload completed')
"
else
    echo "No upload URL configured, skipping upload"
fi
"""

# Scans <exchange>/<PAIR>-<tf>[-futures|-mark].json and reports first/last candle times.
_SCAN = f"""\
python3 <<'SCAN_DATA'
import json, os, re
from datetime import datetime, timezone

def iso(ms):
    return datetime.fromtimestamp(ms / 1000, timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')

root = '{DATA_DIR}'
exchanges = []
for name in (sorted(os.listdir(root)) if os.path.isdir(root) else []):
    path = os.path.join(root, name)
    if not os.path.isdir(path):
        continue
    pairs = {{}}
    for fname in sorted(os.listdir(path)):
        if not fname.endswith('.json'):
            continue
        base = re.sub(r'-(futures|mark)$', '', fname[:-5])
        if '-' not in base:
            continue
        pair_part, timeframe = base.rsplit('-', 1)
        parts = pair_part.split('_')
        if len(parts) == 2:
            pair = f'{{parts[0]}}/{{parts[1]}}'
        elif len(parts) == 3:
            pair = f'{{parts[0]}}/{{parts[1]}}:{{parts[2]}}'
        else:
            continue
        start = end = None
        try:
            with open(os.path.join(path, fname)) as f:
                candles = json.load(f)
            if isinstance(candles, list) and candles:
                start, end = iso(candles[0][0]), iso(candles[-1][0])
        except Exception as e:
            print(f'Warning: could not read {{fname}}: {{e}}', flush=True)
        frames = pairs.setdefault(pair, [])
        if all(t['timeframe'] != timeframe for t in frames):
            frames.append({{'timeframe': timeframe, 'from': start, 'to': end}})
    exchanges.append({{
        'name': name,
        'pairs': [{{'pair': p, 'timeframes': t}} for p, t in sorted(pairs.items())],
    }})

print('{DATA_AVAILABLE_START_MARKER}')
print(json.dumps({{'exchanges': exchanges}}))
print('{DATA_AVAILABLE_END_MARKER}')
SCAN_DATA
"""


def build_download_command(exchange: ExchangeDownload) -> str:
    lines = [
        "freqtrade download-data",
        f"--userdir {quote(USER_DIR)}",
        f"--exchange {quote(exchange.name)}",
        f"--pairs {quote(exchange.pairs_pattern)}",
    ]
    if exchange.timeframes:
        lines.append(f"--timeframes {quote_all(exchange.timeframes)}")
    lines += [
        f"--days {int(exchange.days)}",
        f"--trading-mode {quote(exchange.trading_mode)}",
        "--data-format-ohlcv json",
    ]
    return " \\\n    ".join(lines)


def build_download_script(spec: DataDownloadSpec) -> str:
    """The shell script run by the download container.

    User-supplied values only ever appear as single-quoted literals.
    """
    parts = [
        "set -e",
        "cd /tmp",
        f"mkdir -p {quote(DATA_DIR)}",
        "",
        "# Phase 1: existing data",
        _HYDRATE,
        "# Phase 2: download",
    ]
    for exchange in spec.exchanges:
        parts.append(f"echo {quote(f'Downloading {exchange.name} data...')}")
        parts.append(build_download_command(exchange))
        parts.append("")
    parts += [
        "# Phase 3: package",
        'echo "Packaging data..."',
        f"cd {quote(DATA_DIR)}",
        f"tar -czf {ARCHIVE} .",
        "",
        "# Phase 4: upload",
        _UPLOAD,
        "# Phase 5: availability",
        'echo "Extracting data metadata..."',
        _SCAN,
    ]
    return "\n".join(parts)


class KubernetesDataDownloader:
    """``DataDownloader`` that runs one Kubernetes Job per download."""

    def __init__(
        self,
        config: KubernetesConfig,
        *,
        clients: KubernetesClients | None = None,
    ) -> None:
        self._config = config
        self._clients = clients or KubernetesClients.from_config(config)
        core, batch, ns = self._clients.core, self._clients.batch, config.namespace
        self._namer = ResourceNamer(TaskKind.DATA_DOWNLOAD)
        self._provisioner = WorkloadProvisioner(core, batch, config)
        self._resolver = StatusResolver(core, batch, ns)
        self._logs = LogRetriever(core, ns)
        self._lifecycle = LifecycleManager(core, batch, ns)

    @property
    def namer(self) -> ResourceNamer:
        return self._namer

    # ── Object builders ──────────────────────────────────────────────────

    def build_script_map(self, spec: DataDownloadSpec) -> client.V1ConfigMap:
        return client.V1ConfigMap(
            metadata=client.V1ObjectMeta(
                name=self._namer.script_map_name(spec.id),
                namespace=self._config.namespace,
                labels=self._namer.labels(spec.id),
            ),
            data={SCRIPT_KEY: build_download_script(spec)},
        )

    def build_job(self, spec: DataDownloadSpec) -> client.V1Job:
        env = [client.V1EnvVar(name="UPLOAD_URL", value=spec.upload_url or "")]
        if spec.existing_data_url:
            env.append(client.V1EnvVar(name="EXISTING_DATA_URL", value=spec.existing_data_url))
        container = client.V1Container(
            name=DOWNLOAD_CONTAINER,
            image=spec.image or self._config.freqtrade_image,
            command=["/bin/sh", f"{SCRIPT_MOUNT}/{SCRIPT_KEY}"],
            env=env,
            resources=build_resources(self._config.resources_for(spec.resources)),
            volume_mounts=[client.V1VolumeMount(name="script", mount_path=SCRIPT_MOUNT, read_only=True)],
        )
        return self._provisioner.wrap_job(
            self._namer, spec.id,
            client.V1PodSpec(
                restart_policy="Never",
                containers=[container],
                volumes=[client.V1Volume(
                    name="script",
                    config_map=client.V1ConfigMapVolumeSource(name=self._namer.script_map_name(spec.id)),
                )],
            ),
        )

    # ── DataDownloader ───────────────────────────────────────────────────

    async def start_download(self, spec: DataDownloadSpec) -> str:
        """Create the script object and job. Returns the task ID."""
        async with LogContext(task_kind=self._namer.kind.value, task_id=spec.id):
            logger.info("download_requested", exchanges=[e.name for e in spec.exchanges])
            await self._provisioner.provision(
                self._namer, spec.id,
                config_maps=lambda: [self.build_script_map(spec)],
                job=lambda: self.build_job(spec),
            )
        return spec.id

    async def get_download_status(self, task_id: str) -> DataDownloadStatus:
        job = await self._resolver.read_job(self._namer, task_id)
        state, fields = classify_job(job)
        download_state = _STATE[state]
        status = DataDownloadStatus(
            task_id=task_id,
            job_name=job.metadata.name,
            state=download_state,
            current_phase=download_state.value,
            created_at=job.metadata.creation_timestamp,
            **fields,
        )
        if download_state is DataDownloadState.COMPLETED:
            try:
                text = await self.get_download_logs(task_id)
            except BacktideError as exc:
                logger.warning("data_available_unreadable", task_id=task_id, error=exc.message)
            else:
                status.data_available = parse_data_available(text)
        return status

    async def get_download_logs(self, task_id: str) -> str:
        await self._resolver.read_job(self._namer, task_id)
        return await self._logs.read_text(self._namer, task_id, container=DOWNLOAD_CONTAINER)

    async def cancel_download(self, task_id: str) -> None:
        logger.info("download_cancel_requested", task_id=task_id)
        await self._lifecycle.stop(self._namer, task_id)

    async def cleanup_download(self, task_id: str) -> None:
        logger.info("download_cleanup_requested", task_id=task_id)
        await self._lifecycle.delete(
            self._namer, task_id, config_maps=[self._namer.script_map_name(task_id)],
        )

    async def close(self) -> None:
        self._clients.close()
