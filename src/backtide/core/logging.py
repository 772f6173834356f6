"""
Structured logging for backtide.

Every module logs through ``get_logger(__name__)`` with an event name and
key/value fields. Output is JSON when stdout is not a terminal (log shippers,
CI, in-cluster controllers) and colored console lines otherwise. Everything
is written to stderr so CLI ``--json`` output on stdout stays parseable.

Architecture:
    ::

        configure_logging(level="INFO", json_format=None, service="backtide")
              │
              ▼
        processor chain:
          1. TimeStamper (iso)
          2. merge_contextvars      ← task_id / task_kind from LogContext
          3. add_log_level / add_logger_name
          4. _ServiceMetadata       ← service.name
          5. _ecs_fields            ← @timestamp, log.level (JSON only)
          6. JSONRenderer | ConsoleRenderer
              │
              ▼
        stdlib root handler (stderr)
          └── kubernetes / urllib3 / httpx loggers held at WARNING
              unless level=DEBUG

Examples:
    >>> from backtide.core.logging import configure_logging, get_logger, LogContext
    >>> configure_logging(level="DEBUG")
    >>> logger = get_logger(__name__)
    >>> with LogContext(task_kind="backtest", task_id="bt-1"):
    ...     logger.info("job_submitted", job="backtide-backtest-bt-1")

Tags:
    logging, structlog, observability, backtide
"""

from __future__ import annotations

import logging
import sys
from contextvars import Token
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Client libraries that log request bodies (config objects carry strategy
# source) or one line per HTTP round trip at INFO/DEBUG.
CLIENT_LOGGERS = ("kubernetes.client.rest", "urllib3", "httpx", "httpcore")


class _ServiceMetadata:
    """Stamp ``service.name`` on every event."""

    def __init__(self, service: str) -> None:
        self.service = service

    def __call__(self, logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service.name", self.service)
        return event_dict


def _ecs_fields(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Rename timestamp/level to ECS field names."""
    if "timestamp" in event_dict:
        event_dict["@timestamp"] = event_dict.pop("timestamp")
    if "level" in event_dict:
        event_dict["log.level"] = event_dict.pop("level")
    return event_dict


def _quiet_client_loggers(level: int) -> None:
    client_level = level if level <= logging.DEBUG else max(level, logging.WARNING)
    for name in CLIENT_LOGGERS:
        logging.getLogger(name).setLevel(client_level)


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "backtide",
) -> None:
    """Configure structlog and the stdlib root logger for the process.

    Safe to call more than once; the last call wins.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        json_format: True for JSON, False for console, None to pick JSON
            when stdout is not a TTY
        service: value of the ``service.name`` field
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO

    if json_format is None:
        json_format = not sys.stdout.isatty()

    processors: list[Processor] = [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _ServiceMetadata(service),
    ]
    if json_format:
        processors += [_ecs_fields, structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric, force=True)
    _quiet_client_loggers(numeric)


def get_logger(name: str | None = None) -> Any:
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind key/values to every subsequent event in this context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Scoped log context, usable with ``with`` and ``async with``.

    Leaving the block restores whatever the keys held before, so a nested
    context for another task does not wipe the outer one.

    Example:
        async with LogContext(task_kind="hyperopt", task_id="ho-7"):
            logger.info("status_resolved", state="running")
    """

    def __init__(self, **kwargs: Any) -> None:
        self._context = kwargs
        self._tokens: dict[str, Token] | None = None

    def _enter(self) -> LogContext:
        self._tokens = dict(structlog.contextvars.bind_contextvars(**self._context))
        return self

    def _exit(self) -> None:
        if self._tokens is not None:
            structlog.contextvars.reset_contextvars(**self._tokens)
            self._tokens = None

    def __enter__(self) -> LogContext:
        return self._enter()

    def __exit__(self, *exc_info: object) -> None:
        self._exit()

    async def __aenter__(self) -> LogContext:
        return self._enter()

    async def __aexit__(self, *exc_info: object) -> None:
        self._exit()


__all__ = [
    "LogContext",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "unbind_context",
]
