"""
CLI utility helpers: output formatting and backend access.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from backtide.core.errors import BacktideError
from backtide.runner.factory import create_downloader, create_runner

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")


# ── Backend access ───────────────────────────────────────────────────────


def run_with_runner(fn: Callable[[Any], Awaitable[T]]) -> T:
    """Build the configured runner, await ``fn(runner)``, always close it."""

    async def _main() -> T:
        runner = create_runner()
        try:
            return await fn(runner)
        finally:
            await runner.close()

    return _run(_main)


def run_with_downloader(fn: Callable[[Any], Awaitable[T]]) -> T:
    async def _main() -> T:
        downloader = create_downloader()
        try:
            return await fn(downloader)
        finally:
            close = getattr(downloader, "close", None)
            if close is not None:
                await close()

    return _run(_main)


def _run(main: Callable[[], Awaitable[T]]) -> T:
    try:
        return asyncio.run(main())
    except BacktideError as exc:
        print_error(exc)
        raise typer.Exit(code=1) from exc


def print_error(exc: BacktideError) -> None:
    err_console.print(f"[bold red]Error[/bold red] ({exc.category.value}): {exc.message}")
    for key in ("rollback_errors", "failures"):
        for item in getattr(exc, key, None) or []:
            detail = f"{item[0]}: {item[1]}" if isinstance(item, tuple) else item
            err_console.print(f"  [red]-[/red] {detail}")


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def output(data: Any, *, as_json: bool = False, title: str = "") -> None:
    """Render a record or a list of records to the terminal."""
    if as_json:
        payload = [_to_dict(d) for d in data] if isinstance(data, list | tuple) else _to_dict(data)
        console.print_json(json.dumps(payload, default=str))
        return

    if isinstance(data, list):
        if not data:
            console.print("[dim]No items.[/dim]")
            return
        _print_table(data, title=title)
    else:
        _print_dict(_to_dict(data), title=title)


def ok(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


# ── Private helpers ──────────────────────────────────────────────────────

_TABLE_COLUMNS = ("task_id", "state", "progress", "created_at", "completed_at", "error_message")


def _print_table(items: list, *, title: str = "") -> None:
    """Render status records as a Rich table."""
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in _TABLE_COLUMNS:
        table.add_column(col, overflow="fold")
    for item in items:
        d = _to_dict(item)
        table.add_row(*(str(d.get(col) or "") for col in _TABLE_COLUMNS))
    console.print(table)


def _print_dict(data: dict[str, Any], *, title: str = "") -> None:
    """Render a single dict as key-value pairs."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        if isinstance(v, dict):
            console.print(f"  [cyan]{k}[/cyan]:")
            for sk, sv in v.items():
                console.print(f"    [cyan]{sk}[/cyan]: {sv}")
        else:
            console.print(f"  [cyan]{k}[/cyan]: {v}")
