"""CLI interface for flair-census.

Commands:
    open        Show the current scan, starting one if none exists
    accept      Continue, retry, refresh or start, depending on scan state
    cancel      Discard the current scan
    status      Dump every stored scan key
    breakdown   List members per flair from the last completed scan
    export      Write the last completed scan to Parquet
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TypeVar

import structlog
import typer
from rich.console import Console

from flair_census.config import Settings

app = typer.Typer(
    name="flair-census",
    help="Group community members by flair with a resumable, time-boxed scan.",
    no_args_is_help=True,
)
console = Console()

T = TypeVar("T")

CommunityArg = typer.Argument(..., help="Community name, without the r/ prefix")
StoragePathOpt = typer.Option(None, "--storage-path", "-s", help="Root storage path (local, s3://, or gs://)")
LogLevelOpt = typer.Option(None, "--log-level", "-l")


def _configure_logging(level: str) -> None:
    import logging

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
    )
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
    )


def _load_settings(storage_path: str | None, log_level: str | None) -> Settings:
    overrides: dict[str, str] = {}
    if storage_path:
        overrides["storage_path"] = storage_path
    if log_level:
        overrides["log_level"] = log_level
    settings = Settings(**overrides)
    _configure_logging(settings.log_level)
    return settings


@contextlib.asynccontextmanager
async def _controller(settings: Settings, community: str) -> AsyncIterator:
    from flair_census.page_source import RedditFlairSource, open_session
    from flair_census.state import ScanController
    from flair_census.storage import StorageBackend

    storage = StorageBackend.from_settings(settings)
    storage.check_credentials()

    async with open_session(settings) as session:
        source = RedditFlairSource(session, community, settings)
        controller = ScanController.from_settings(settings, community, source, storage=storage)
        try:
            yield controller
        finally:
            # chunks that lost the quick-scan race persist their own results
            await controller.racer.wait_background()


def _run(settings: Settings, community: str, action: Callable[..., Awaitable[T]]) -> T:
    from flair_census.page_source import PageSourceError
    from flair_census.storage import CredentialError

    async def main() -> T:
        async with _controller(settings, community) as controller:
            return await action(controller)

    try:
        return asyncio.run(main())
    except PageSourceError as exc:
        console.print(f"[bold red]Scan failed:[/bold red] {exc}")
        raise typer.Exit(code=1) from exc
    except CredentialError as exc:
        console.print(f"[bold red]Storage error:[/bold red] {exc}")
        raise typer.Exit(code=2) from exc


def _show(status) -> None:
    from flair_census.view import render

    view = render(status)
    console.print(f"[bold]{view.title}[/bold]")
    console.print(view.preview)
    if view.notice:
        console.print(f"[yellow]{view.notice}[/yellow]")
    console.print(f"\n[dim]Next action:[/dim] {view.accept_label}")


@app.command("open")
def open_scan(
    community: str = CommunityArg,
    storage_path: str | None = StoragePathOpt,
    log_level: str | None = LogLevelOpt,
) -> None:
    """Show the current scan; start one if none exists."""
    settings = _load_settings(storage_path, log_level)

    async def action(controller):
        return await controller.open(settings.app_version)

    _show(_run(settings, community, action))


@app.command()
def accept(
    community: str = CommunityArg,
    storage_path: str | None = StoragePathOpt,
    log_level: str | None = LogLevelOpt,
) -> None:
    """Continue, retry, refresh or start the scan."""
    settings = _load_settings(storage_path, log_level)

    async def action(controller):
        controller.reset_if_version_changed(settings.app_version)
        await controller.accept()
        return controller.status()

    _show(_run(settings, community, action))


@app.command()
def cancel(
    community: str = CommunityArg,
    storage_path: str | None = StoragePathOpt,
    log_level: str | None = LogLevelOpt,
) -> None:
    """Discard the current scan and all its progress."""
    settings = _load_settings(storage_path, log_level)

    async def action(controller):
        controller.cancel("operator cancelled")
        return controller.status()

    _show(_run(settings, community, action))


@app.command()
def status(
    community: str = CommunityArg,
    storage_path: str | None = StoragePathOpt,
) -> None:
    """Dump every stored scan key."""
    settings = _load_settings(storage_path, None)

    async def action(controller):
        return controller.state(), controller.inspect()

    state, keys = _run(settings, community, action)

    console.print(f"[bold]Scan state:[/bold] {state}")
    console.print(f"[bold]Storage:[/bold] {settings.community_path(community)}")
    for key, value in keys.items():
        console.print(f"  {key}: {value}")


@app.command()
def breakdown(
    community: str = CommunityArg,
    flair_filter: str = typer.Option("", "--filter", "-f", help="Only flairs containing this text"),
    storage_path: str | None = StoragePathOpt,
) -> None:
    """List the members of each flair from the last completed scan."""
    from flair_census.view import filter_groups, format_breakdown

    settings = _load_settings(storage_path, None)

    async def action(controller):
        return controller.status().result

    result = _run(settings, community, action)
    if result is None or not result.completed:
        console.print("No completed scan yet.")
        raise typer.Exit(code=1)

    groups = filter_groups(result.groups, flair_filter)
    if not groups:
        console.print("No matching flairs.")
        return
    console.print(format_breakdown(groups))


@app.command()
def export(
    community: str = CommunityArg,
    storage_path: str | None = StoragePathOpt,
) -> None:
    """Write the last completed scan to Parquet."""
    from flair_census.report import ReportWriter, label_counts
    from flair_census.storage import StorageBackend

    settings = _load_settings(storage_path, None)

    async def action(controller):
        return controller.status().result

    result = _run(settings, community, action)
    if result is None or not result.completed:
        console.print("No completed scan yet.")
        raise typer.Exit(code=1)

    path = settings.report_path(community)
    table = ReportWriter(StorageBackend.from_settings(settings), path).save(result)
    console.print(f"[bold]Report:[/bold] {path}")
    console.print(f"  Rows: {table.num_rows}")
    console.print(f"  Flairs: {len(label_counts(table))}")


if __name__ == "__main__":
    app()
