"""
Market-data download tasks for ``backtide download``.
"""

from __future__ import annotations

import typer

from backtide.cli.utils import ok, output, run_with_downloader

app = typer.Typer(no_args_is_help=True)


@app.command()
def status(
    task_id: str = typer.Argument(..., help="Download task ID"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show download status and, once completed, the available data."""
    st = run_with_downloader(lambda d: d.get_download_status(task_id))
    output(st, as_json=json_out, title=f"Download: {task_id}")


@app.command()
def logs(task_id: str = typer.Argument(..., help="Download task ID")) -> None:
    """Print the download container's logs."""
    text = run_with_downloader(lambda d: d.get_download_logs(task_id))
    typer.echo(text, nl=not text.endswith("\n"))


@app.command()
def cancel(task_id: str = typer.Argument(..., help="Download task ID")) -> None:
    """Cancel a running download."""
    run_with_downloader(lambda d: d.cancel_download(task_id))
    ok(f"Download {task_id} cancelled")


@app.command()
def cleanup(task_id: str = typer.Argument(..., help="Download task ID")) -> None:
    """Delete the download job and its script object."""
    run_with_downloader(lambda d: d.cleanup_download(task_id))
    ok(f"Download {task_id} cleaned up")
