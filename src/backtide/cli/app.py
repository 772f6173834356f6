"""
Root Typer application for the backtide CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from backtide import __version__
from backtide.core.logging import configure_logging
from backtide.core.settings import get_settings

app = Typer(
    name="backtide",
    help="backtide: backtest, hyperopt and data-download workloads on Kubernetes.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"backtide {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Override BACKTIDE_LOG_LEVEL."),
) -> None:
    """backtide CLI: inspect and tear down workload tasks."""
    settings = get_settings()
    configure_logging(level=log_level or settings.log_level, json_format=settings.log_json)


@app.command()
def health(json_out: bool = typer.Option(False, "--json")) -> None:
    """Check backend and metrics connectivity."""
    from backtide.cli.utils import err_console, output, run_with_runner

    result = run_with_runner(lambda r: r.health_check())
    output(result, as_json=json_out, title="Health")
    if not result.healthy:
        err_console.print("[bold red]Backend unhealthy[/bold red]")
        raise typer.Exit(code=1)


# ── Sub-command registration ─────────────────────────────────────────────

from backtide.cli.download import app as download_app  # noqa: E402
from backtide.cli.tasks import backtest_app, hyperopt_app  # noqa: E402

app.add_typer(backtest_app, name="backtest", help="Backtest tasks.")
app.add_typer(hyperopt_app, name="hyperopt", help="Hyperopt tasks.")
app.add_typer(download_app, name="download", help="Market-data download tasks.")
