"""Deterministic names and labels for task resources.

Every cluster object belonging to a task is named as a pure function of
(task kind, task ID), so any component can find a task's resources without
bookkeeping. The mapping is injective: IDs are used verbatim, never
truncated or slugified.

    .. code-block:: text

        kind=backtest, id=42
        ├── job         backtide-backtest-42
        ├── configmap   backtest-42-config     (config.json)
        └── configmap   backtest-42-strategy   (<Strategy>.py)

        labels
        ├── backtide.io/managed      = "true"
        ├── backtide.io/task-type    = "backtest"
        └── backtide.io/backtest-id  = "42"

Example:
    >>> namer = ResourceNamer(TaskKind.HYPEROPT)
    >>> namer.job_name("7")
    'backtide-hyperopt-7'
    >>> namer.list_selector()
    'backtide.io/managed=true,backtide.io/task-type=hyperopt'
"""

from __future__ import annotations

from dataclasses import dataclass

from backtide.core.enums import TaskKind

PRODUCT = "backtide"
LABEL_PREFIX = "backtide.io"
LABEL_MANAGED = f"{LABEL_PREFIX}/managed"
LABEL_TASK_TYPE = f"{LABEL_PREFIX}/task-type"
ANNOTATION_STRATEGY = f"{LABEL_PREFIX}/strategy"

MAIN_CONTAINER = "freqtrade"
INIT_CONTAINER = "setup-userdata"
DOWNLOAD_CONTAINER = "data-downloader"


@dataclass(frozen=True)
class ResourceNamer:
    """Names and labels for one task kind."""

    kind: TaskKind

    @property
    def id_label(self) -> str:
        return f"{LABEL_PREFIX}/{self.kind.value}-id"

    def job_name(self, task_id: str) -> str:
        return f"{PRODUCT}-{self.kind.value}-{task_id}"

    def config_map_name(self, task_id: str) -> str:
        return f"{self.kind.value}-{task_id}-config"

    def strategy_map_name(self, task_id: str) -> str:
        return f"{self.kind.value}-{task_id}-strategy"

    def script_map_name(self, task_id: str) -> str:
        return f"{self.kind.value}-{task_id}-script"

    def labels(self, task_id: str) -> dict[str, str]:
        return {
            LABEL_MANAGED: "true",
            LABEL_TASK_TYPE: self.kind.value,
            self.id_label: task_id,
        }

    def task_selector(self, task_id: str) -> str:
        """Selector matching every object (and pod) of one task."""
        return f"{self.id_label}={task_id}"

    def list_selector(self) -> str:
        """Selector matching all managed tasks of this kind."""
        return f"{LABEL_MANAGED}=true,{LABEL_TASK_TYPE}={self.kind.value}"

    def task_id_from_labels(self, labels: dict[str, str] | None) -> str | None:
        return (labels or {}).get(self.id_label) or None
