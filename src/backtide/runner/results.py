"""Result extraction from workload logs.

Workloads print a machine-readable JSON document between two sentinel lines,
so the container log doubles as a result channel::

    ... freqtrade output ...
    ===RESULT_START===
    {"strategy": {"SampleStrategy": {"total_trades": 42, ...}}}
    ===RESULT_END===

``parse_result`` pulls that document out. ``clean_logs`` removes the block so
display logs never contain the raw payload. ``build_result`` turns a terminal
status plus log text into a result record and never raises for bad output:
a crashed workload yields a record whose payload is an ``error`` description.

Tags:
    backtide, results, parsing, logs
"""

from __future__ import annotations

import json
import re
from typing import Any

from backtide.core.enums import TaskKind
from backtide.core.errors import ResultParseError
from backtide.core.logging import get_logger
from backtide.runner._types import (
    BacktestResult,
    HyperOptResult,
    TaskResult,
    TaskStatus,
)

logger = get_logger(__name__)

RESULT_START_MARKER = "===RESULT_START==="
RESULT_END_MARKER = "===RESULT_END==="
DATA_AVAILABLE_START_MARKER = "===DATA_AVAILABLE_START==="
DATA_AVAILABLE_END_MARKER = "===DATA_AVAILABLE_END==="

NO_LOGS_ERROR = "no logs available"
NO_MARKERS_ERROR = "no result markers found in logs"

_MARKER_PAIRS = (
    (RESULT_START_MARKER, RESULT_END_MARKER),
    (DATA_AVAILABLE_START_MARKER, DATA_AVAILABLE_END_MARKER),
)

_VERSION_RE = re.compile(r"freqtrade\s+(\d+\.\d+(?:\.\d+)?)")

BACKTEST_METRIC_KEYS: tuple[str, ...] = (
    "total_trades", "wins", "losses", "draws",
    "profit_total", "profit_total_abs", "profit_mean", "profit_mean_pct",
    "winrate", "win_rate",
    "max_drawdown", "max_drawdown_abs", "max_drawdown_account",
    "profit_factor", "expectancy", "expectancy_ratio",
    "sharpe", "sortino", "calmar",
    "avg_stake_amount", "total_volume",
    "backtest_start", "backtest_end", "backtest_days",
    "stake_currency", "starting_balance", "final_balance",
    "trades_per_day", "holding_avg", "holding_avg_s",
)


def extract_between(text: str, start: str, end: str) -> str | None:
    """Return the text between the first *start* line and the next *end* line.

    Markers must sit on their own line. Returns ``None`` when either marker is
    missing.
    """
    lines = text.splitlines()
    try:
        begin = next(i for i, line in enumerate(lines) if line.strip() == start)
    except StopIteration:
        return None
    for i in range(begin + 1, len(lines)):
        if lines[i].strip() == end:
            return "\n".join(lines[begin + 1:i]).strip()
    return None


def parse_result(text: str) -> dict[str, Any]:
    """Extract the JSON object between the result markers.

    Raises:
        ResultParseError: markers missing, payload not JSON, or not an object.
    """
    payload = extract_between(text, RESULT_START_MARKER, RESULT_END_MARKER)
    if payload is None:
        raise ResultParseError(NO_MARKERS_ERROR)
    if not payload:
        raise ResultParseError("result markers found but payload is empty")
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ResultParseError(f"failed to parse result JSON: {exc}", cause=exc) from exc
    if not isinstance(data, dict):
        raise ResultParseError(f"result JSON is a {type(data).__name__}, expected an object")
    return data


def parse_data_available(text: str) -> dict[str, Any] | None:
    """Extract the data-availability document printed by a download task."""
    payload = extract_between(text, DATA_AVAILABLE_START_MARKER, DATA_AVAILABLE_END_MARKER)
    if not payload:
        return None
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.warning("data_available_unparsable", size=len(payload))
        return None
    return data if isinstance(data, dict) else None


def clean_logs(text: str) -> str:
    """Strip marker lines and everything between them.

    An unterminated block is dropped through the end of the text, since
    whatever follows the start marker is payload.
    """
    out: list[str] = []
    closing: str | None = None
    for line in text.splitlines():
        stripped = line.strip()
        if closing is not None:
            if stripped == closing:
                closing = None
            continue
        for start, end in _MARKER_PAIRS:
            if stripped == start:
                closing = end
                break
        else:
            if stripped not in (RESULT_END_MARKER, DATA_AVAILABLE_END_MARKER):
                out.append(line)
    return "\n".join(out)


def extract_strategy_block(raw: dict[str, Any], strategy_name: str | None = None) -> dict[str, Any] | None:
    """Return ``raw["strategy"][name]``, or the only entry when *name* is unknown."""
    strategies = raw.get("strategy")
    if not isinstance(strategies, dict) or not strategies:
        return None
    if strategy_name and isinstance(strategies.get(strategy_name), dict):
        return strategies[strategy_name]
    if len(strategies) == 1:
        block = next(iter(strategies.values()))
        return block if isinstance(block, dict) else None
    return None


def extract_backtest_metrics(raw: dict[str, Any], strategy_name: str | None = None) -> dict[str, Any]:
    """Flatten well-known backtest metrics out of a parsed result."""
    block = extract_strategy_block(raw, strategy_name)
    if block is None:
        return {}
    return {key: block[key] for key in BACKTEST_METRIC_KEYS if key in block}


def extract_freqtrade_version(text: str) -> str | None:
    match = _VERSION_RE.search(text)
    return match.group(1) if match else None


def build_result(
    kind: TaskKind,
    status: TaskStatus,
    log_text: str | None,
    *,
    strategy_name: str | None = None,
) -> TaskResult:
    """Assemble a result record from a terminal status and its logs."""
    if not log_text:
        raw: dict[str, Any] = {"error": NO_LOGS_ERROR}
    else:
        try:
            raw = parse_result(log_text)
        except ResultParseError as exc:
            logger.info(
                "result_unavailable",
                task_kind=kind.value, task_id=status.task_id, reason=exc.message,
            )
            raw = {"error": exc.message}

    display = clean_logs(log_text or "")
    duration = status.duration_seconds

    if kind is TaskKind.HYPEROPT:
        return HyperOptResult(
            task_id=status.task_id,
            status=status,
            raw_result=raw,
            logs=display,
            duration_seconds=duration,
        )
    return BacktestResult(
        task_id=status.task_id,
        status=status,
        raw_result=raw,
        logs=display,
        duration_seconds=duration,
        metrics=extract_backtest_metrics(raw, strategy_name),
        freqtrade_version=extract_freqtrade_version(log_text or ""),
    )
