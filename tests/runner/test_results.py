"""Tests for result parsing and log cleaning."""

import json
from datetime import UTC, datetime, timedelta

import pytest

from backtide.core.enums import TaskKind, TaskState
from backtide.core.errors import ResultParseError
from backtide.runner._types import BacktestResult, BacktestStatus, HyperOptResult, HyperOptStatus
from backtide.runner.results import (
    NO_LOGS_ERROR,
    NO_MARKERS_ERROR,
    build_result,
    clean_logs,
    extract_backtest_metrics,
    extract_between,
    extract_freqtrade_version,
    parse_data_available,
    parse_result,
)

PAYLOAD = {
    "strategy": {
        "SmaCross": {
            "total_trades": 42,
            "profit_total": 0.153,
            "winrate": 0.61,
            "max_drawdown": 0.08,
            "results_per_pair": [{"key": "BTC/USDT"}],
        },
    },
}

LOGS = (
    "freqtrade 2024.11\n"
    "Loading data...\n"
    "===RESULT_START===\n"
    f"{json.dumps(PAYLOAD)}\n"
    "===RESULT_END===\n"
    "done\n"
)


def _status(state: TaskState = TaskState.COMPLETED, kind: TaskKind = TaskKind.BACKTEST):
    start = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)
    cls = HyperOptStatus if kind is TaskKind.HYPEROPT else BacktestStatus
    return cls(
        task_id="bt-1",
        job_name="backtide-backtest-bt-1",
        state=state,
        started_at=start,
        completed_at=start + timedelta(seconds=90),
        exit_code=0,
    )


# ── Marker extraction ────────────────────────────────────────────────────


class TestParseResult:
    def test_well_formed(self):
        assert parse_result(LOGS) == PAYLOAD

    def test_no_markers(self):
        with pytest.raises(ResultParseError, match=NO_MARKERS_ERROR):
            parse_result("just some output\n")

    def test_unterminated_block(self):
        with pytest.raises(ResultParseError):
            parse_result("===RESULT_START===\n{\"a\": 1}\n")

    def test_invalid_json(self):
        with pytest.raises(ResultParseError, match="parse"):
            parse_result("===RESULT_START===\n{not json\n===RESULT_END===\n")

    def test_empty_payload(self):
        with pytest.raises(ResultParseError, match="empty"):
            parse_result("===RESULT_START===\n===RESULT_END===\n")

    def test_non_object_payload(self):
        with pytest.raises(ResultParseError, match="list"):
            parse_result("===RESULT_START===\n[1, 2]\n===RESULT_END===\n")

    def test_markers_must_be_whole_lines(self):
        assert extract_between("echo ===RESULT_START===\n", "===RESULT_START===", "===RESULT_END===") is None

    def test_multiline_payload(self):
        text = "===RESULT_START===\n{\n  \"a\": 1\n}\n===RESULT_END===\n"
        assert parse_result(text) == {"a": 1}


class TestCleanLogs:
    def test_strips_block(self):
        cleaned = clean_logs(LOGS)
        assert "===RESULT" not in cleaned
        assert "total_trades" not in cleaned
        assert cleaned.splitlines() == ["freqtrade 2024.11", "Loading data...", "done"]

    def test_strips_data_available_block(self):
        text = "a\n===DATA_AVAILABLE_START===\n{}\n===DATA_AVAILABLE_END===\nb"
        assert clean_logs(text) == "a\nb"

    def test_unterminated_block_dropped(self):
        assert clean_logs("a\n===RESULT_START===\n{\"partial\"") == "a"

    def test_plain_logs_unchanged(self):
        assert clean_logs("one\ntwo") == "one\ntwo"


class TestDataAvailable:
    def test_parses_document(self):
        doc = {"exchanges": [{"name": "binance", "pairs": []}]}
        text = f"x\n===DATA_AVAILABLE_START===\n{json.dumps(doc)}\n===DATA_AVAILABLE_END===\n"
        assert parse_data_available(text) == doc

    def test_missing_or_broken(self):
        assert parse_data_available("nothing") is None
        assert parse_data_available("===DATA_AVAILABLE_START===\n{oops\n===DATA_AVAILABLE_END===") is None


# ── Metrics ──────────────────────────────────────────────────────────────


class TestMetrics:
    def test_known_keys_only(self):
        metrics = extract_backtest_metrics(PAYLOAD, "SmaCross")
        assert metrics == {"total_trades": 42, "profit_total": 0.153, "winrate": 0.61, "max_drawdown": 0.08}

    def test_single_strategy_without_name(self):
        assert extract_backtest_metrics(PAYLOAD)["total_trades"] == 42

    def test_no_strategy_block(self):
        assert extract_backtest_metrics({"error": "x"}) == {}

    def test_version(self):
        assert extract_freqtrade_version(LOGS) == "2024.11"
        assert extract_freqtrade_version("no version here") is None


# ── build_result ─────────────────────────────────────────────────────────


class TestBuildResult:
    def test_populated_backtest(self):
        result = build_result(TaskKind.BACKTEST, _status(), LOGS)
        assert isinstance(result, BacktestResult)
        assert result.raw_result == PAYLOAD
        assert result.error is None
        assert result.duration_seconds == 90.0
        assert result.metrics["total_trades"] == 42
        assert result.freqtrade_version == "2024.11"
        assert "===RESULT_START===" not in result.logs

    def test_no_markers_is_a_record_not_an_exception(self):
        result = build_result(TaskKind.BACKTEST, _status(TaskState.FAILED), "Traceback: boom\n")
        assert result.raw_result == {"error": NO_MARKERS_ERROR}
        assert result.error == NO_MARKERS_ERROR
        assert result.logs == "Traceback: boom"
        assert result.metrics == {}

    def test_no_logs(self):
        result = build_result(TaskKind.BACKTEST, _status(), "")
        assert result.error == NO_LOGS_ERROR

    def test_hyperopt(self):
        text = '===RESULT_START===\n{"params": {"buy": {"rsi": 30}}}\n===RESULT_END===\n'
        result = build_result(TaskKind.HYPEROPT, _status(kind=TaskKind.HYPEROPT), text)
        assert isinstance(result, HyperOptResult)
        assert result.raw_result["params"]["buy"]["rsi"] == 30

    def test_to_dict(self):
        d = build_result(TaskKind.BACKTEST, _status(), LOGS).to_dict()
        assert d["state"] == "completed"
        assert d["exit_code"] == 0
        assert d["metrics"]["winrate"] == 0.61
