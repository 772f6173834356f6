"""
Task inspection and teardown for ``backtide backtest`` and ``backtide hyperopt``.

Both groups expose the same commands; only the runner methods differ.
"""

from __future__ import annotations

from typing import Any

import typer

from backtide.cli.utils import console, ok, output, run_with_runner
from backtide.core.enums import TaskKind
from backtide.runner._types import LogOptions


def _method(runner: Any, verb: str, noun: str) -> Any:
    return getattr(runner, f"{verb}_{noun}")


def make_task_app(kind: TaskKind) -> typer.Typer:
    """Build the command group for *kind* (backtest or hyperopt)."""
    noun = kind.value
    label = noun.capitalize()
    app = typer.Typer(no_args_is_help=True)

    @app.command("list")
    def list_tasks(json_out: bool = typer.Option(False, "--json")) -> None:
        """List managed tasks and their status."""
        items = run_with_runner(lambda r: _method(r, "list", f"{noun}s")())
        output(items, as_json=json_out, title=f"{label}s")

    @app.command()
    def status(
        task_id: str = typer.Argument(..., help="Task ID"),
        json_out: bool = typer.Option(False, "--json"),
    ) -> None:
        """Show the current status of a task."""
        st = run_with_runner(lambda r: _method(r, "get", f"{noun}_status")(task_id))
        output(st, as_json=json_out, title=f"{label}: {task_id}")

    @app.command()
    def result(
        task_id: str = typer.Argument(..., help="Task ID"),
        json_out: bool = typer.Option(False, "--json"),
        show_logs: bool = typer.Option(False, "--logs", help="Also print the cleaned logs"),
    ) -> None:
        """Show the result of a finished task."""
        res = run_with_runner(lambda r: _method(r, "get", f"{noun}_result")(task_id))
        output(res, as_json=json_out, title=f"{label} result: {task_id}")
        if show_logs and not json_out:
            console.print(res.logs)

    @app.command()
    def logs(
        task_id: str = typer.Argument(..., help="Task ID"),
        tail: int | None = typer.Option(None, "--tail", "-n", help="Only the last N lines"),
        follow: bool = typer.Option(False, "--follow", "-f", help="Keep streaming"),
        timestamps: bool = typer.Option(False, "--timestamps", help="Prefix lines with timestamps"),
    ) -> None:
        """Print the workload container's logs."""
        opts = LogOptions(follow=follow, tail=tail, timestamps=timestamps)

        async def _stream(runner: Any) -> None:
            stream = await _method(runner, "get", f"{noun}_logs")(task_id, opts)
            try:
                async for line in stream.lines():
                    typer.echo(line)
            finally:
                await stream.close()

        run_with_runner(_stream)

    @app.command()
    def stop(task_id: str = typer.Argument(..., help="Task ID")) -> None:
        """Stop a running task. Succeeds if it is already gone."""
        run_with_runner(lambda r: _method(r, "stop", noun)(task_id))
        ok(f"{label} {task_id} stopped")

    @app.command()
    def delete(task_id: str = typer.Argument(..., help="Task ID")) -> None:
        """Delete a task's job and config objects."""
        run_with_runner(lambda r: _method(r, "delete", noun)(task_id))
        ok(f"{label} {task_id} deleted")

    return app


backtest_app = make_task_app(TaskKind.BACKTEST)
hyperopt_app = make_task_app(TaskKind.HYPEROPT)
