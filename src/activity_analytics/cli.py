"""Command-line interface for the activity tracker."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import typer

from .config import TrackerSettings
from .engine import Engine, build_engine
from .paths import get_db_path

app = typer.Typer(help="Local-first browser activity analytics.")

T = TypeVar("T")


@app.callback(no_args_is_help=True)
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind the service."),
    port: int = typer.Option(8765, "--port", min=1, max=65535, help="TCP port for the service."),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the analytics SQLite database."
    ),
    idle_seconds: float = typer.Option(
        30.0,
        "--idle-threshold",
        min=15.0,
        help="Seconds without input before the host counts as idle.",
    ),
    checkpoint_seconds: float = typer.Option(
        30.0,
        "--checkpoint-interval",
        min=1.0,
        help="Seconds between commits of the running accrual.",
    ),
    sample_idle: bool = typer.Option(
        False,
        "--sample-idle/--no-sample-idle",
        help="Poll the local idle state instead of relying on browser reports.",
    ),
) -> None:
    """Run the tracking service until interrupted."""
    from .server_runner import run_server

    settings = TrackerSettings.from_intervals(
        idle_seconds=idle_seconds,
        checkpoint_seconds=checkpoint_seconds,
        sample_idle=sample_idle,
    )
    run_server(host=host, port=port, db_path=db_path or get_db_path(), settings=settings)


@app.command()
def summary(
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the analytics SQLite database."
    ),
    limit: int = typer.Option(10, "--limit", min=1, help="Number of domains to list."),
) -> None:
    """Print today's committed active time and the top domains.

    Time still accruing in a running service is counted once it is checkpointed.
    """
    from .reporting import SummaryPrinter

    settings = TrackerSettings(top_domains_limit=limit)
    SummaryPrinter(db_path=db_path or get_db_path(), settings=settings).print_daily_summary()


@app.command()
def sessions(
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the analytics SQLite database."
    ),
    days: int = typer.Option(7, "--days", min=1, help="Number of days to include."),
) -> None:
    """Print session statistics."""
    from .reporting import SummaryPrinter

    SummaryPrinter(db_path=db_path or get_db_path()).print_session_summary(days)


@app.command()
def export(
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", path_type=Path, help="File to write; defaults to stdout."
    ),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the analytics SQLite database."
    ),
) -> None:
    """Dump pages, events and sessions as JSON."""
    data = _run_with_engine(db_path, lambda engine: engine.export_data())
    text = json.dumps(data, indent=2)
    if output is None:
        typer.echo(text)
        return
    output.write_text(text, encoding="utf-8")
    typer.echo(f"Exported {len(data['pages'])} pages to {output}")


@app.command()
def clear(
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the analytics SQLite database."
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Delete every recorded page, event and session."""
    if not yes:
        typer.confirm("This permanently deletes all recorded activity. Continue?", abort=True)
    _run_with_engine(db_path, lambda engine: engine.pages.clear_all())
    typer.echo("All data cleared.")


@app.command()
def prune(
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the analytics SQLite database."
    ),
    days: int = typer.Option(90, "--days", min=1, help="Keep data from the last N days."),
) -> None:
    """Delete events, idle pages and closed sessions older than the retention window."""

    async def _prune(engine: Engine) -> tuple[int, int]:
        pages = await engine.pages.cleanup_old_data(days)
        sessions = await engine.sessions.cleanup_old_sessions(days)
        return pages, sessions

    pages, sessions = _run_with_engine(db_path, _prune)
    typer.echo(f"Removed {pages} page(s) and {sessions} session(s) older than {days} days.")


def _run_with_engine(
    db_path: Optional[Path], action: Callable[[Engine], Awaitable[T]]
) -> T:
    engine = build_engine(db_path or get_db_path())
    try:
        return asyncio.run(action(engine))
    finally:
        engine.db.close()
