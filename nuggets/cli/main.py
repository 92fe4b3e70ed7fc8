"""
Typer CLI for the nuggets content pipeline.

Commands:
    nuggets db init             - Initialize database tables
    nuggets worker              - Run the job worker pool
    nuggets watch               - Run folder watchers and URL monitors
    nuggets folders add         - Register a watched folder
    nuggets folders remove      - Remove a watched folder
    nuggets jobs list           - List ingestion jobs
    nuggets jobs cancel         - Cancel a pending ingestion job
    nuggets jobs retry          - Retry a failed ingestion job
    nuggets jobs delete         - Delete a finished ingestion job
    nuggets urls add            - Register a monitored URL
    nuggets urls check          - Check a monitored URL now
    nuggets similar             - Find nuggets similar to a text

Usage:
    nuggets --help
    nuggets db init
    nuggets worker --queue ingestion --queue embedding
    nuggets folders add /incoming --org acme --types pdf,md
    nuggets jobs list --status failed
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from typing import TypeVar

import typer
from loguru import logger
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from nuggets.config import get_settings
from nuggets.context import ServiceContainer
from nuggets.exceptions import NuggetsError
from nuggets.jobs.payloads import QueueName

T = TypeVar("T")

app = typer.Typer(help="nuggets: adaptive learning content pipeline")
console = Console()


def configure_logging(level: str | None = None, log_file: str | None = None) -> None:
    """Send logs to stderr and, when configured, to rotating files (AI usage records get their own)."""
    settings = get_settings()
    level = level or settings.log_level
    log_file = log_file or settings.log_file

    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {message}",
    )
    if log_file:
        logger.add(log_file, level=level, rotation="10 MB", retention=5)
    if settings.usage_log_file:
        logger.add(
            settings.usage_log_file,
            level="INFO",
            serialize=True,
            filter=lambda record: "usage" in record["extra"],
            rotation="10 MB",
            retention=5,
        )


@app.callback()
def main_callback(
    log_level: str = typer.Option(None, "--log-level", help="Override LOG_LEVEL"),
) -> None:
    """Adaptive learning content pipeline."""
    configure_logging(level=log_level)


def _run(factory: Callable[[ServiceContainer], Awaitable[T]]) -> T:
    """Run a coroutine against a fresh container; pipeline errors exit with code 1."""

    async def runner() -> T:
        async with ServiceContainer() as services:
            return await factory(services)

    try:
        return asyncio.run(runner())
    except NuggetsError as e:
        rprint(f"[red]✗[/red] {e}")
        raise typer.Exit(code=1) from e


async def _wait_forever() -> None:
    await asyncio.Event().wait()


# ========================================
# DATABASE COMMANDS
# ========================================

db_app = typer.Typer(help="Database management")
app.add_typer(db_app, name="db")


@db_app.command("init")
def db_init() -> None:
    """
    Initialize database tables from SQLAlchemy models.

    Safe to run multiple times (idempotent).
    """
    logger.info("Initializing database tables...")
    _run(lambda services: services.db.create_all())
    rprint("[green]✓[/green] Database initialized!")


# ========================================
# SERVICE COMMANDS
# ========================================


@app.command("worker")
def worker(
    queue: list[QueueName] = typer.Option(None, "--queue", "-q", help="Queues to serve (default: all)"),
    concurrency: int = typer.Option(None, "--concurrency", "-c", help="Workers per queue"),
) -> None:
    """Run the worker pool until interrupted."""

    async def serve(services: ServiceContainer) -> None:
        pool = services.worker_pool
        if queue:
            pool.queues = [q.value for q in queue]
        if concurrency:
            pool.concurrency = concurrency
        pool.start()
        try:
            await _wait_forever()
        finally:
            await pool.stop()

    try:
        _run(serve)
    except KeyboardInterrupt:
        rprint("\n[yellow]Worker stopped[/yellow]")


@app.command("watch")
def watch(
    with_workers: bool = typer.Option(False, "--with-workers", help="Also run the worker pool"),
) -> None:
    """Run watchers for all enabled folders and monitors for all enabled URLs."""

    async def serve(services: ServiceContainer) -> None:
        folders = await services.file_watcher.initialize_watchers()
        urls = await services.url_monitor.initialize_monitors()
        rprint(f"[cyan]Watching {folders} folders and {urls} URLs[/cyan]")
        if with_workers:
            services.worker_pool.start()
        await _wait_forever()

    try:
        _run(serve)
    except KeyboardInterrupt:
        rprint("\n[yellow]Watchers stopped[/yellow]")


# ========================================
# FOLDER COMMANDS
# ========================================

folders_app = typer.Typer(help="Watched folders")
app.add_typer(folders_app, name="folders")


@folders_app.command("add")
def folders_add(
    path: str = typer.Argument(..., help="Folder to watch"),
    org: str = typer.Option(..., "--org", help="Organization id"),
    types: str = typer.Option(None, "--types", help="Comma-separated extensions (default: pdf,txt,md,html)"),
    recursive: bool = typer.Option(True, "--recursive/--flat", help="Watch subfolders"),
    auto_process: bool = typer.Option(True, "--auto/--no-auto", help="Enqueue ingestion automatically"),
) -> None:
    """Register a watched folder."""
    file_types = [t.strip() for t in types.split(",") if t.strip()] if types else None

    folder = _run(
        lambda services: services.file_watcher.register_folder(
            org, path, file_types, recursive=recursive, auto_process=auto_process, start=False
        )
    )
    rprint(f"[green]✓[/green] Watching {folder.path} as {folder.id}")


@folders_app.command("remove")
def folders_remove(folder_id: str = typer.Argument(..., help="Watched folder id")) -> None:
    """Remove a watched folder."""
    _run(lambda services: services.file_watcher.remove_folder(folder_id))
    rprint(f"[green]✓[/green] Removed folder {folder_id}")


# ========================================
# JOB COMMANDS
# ========================================

jobs_app = typer.Typer(help="Ingestion job administration")
app.add_typer(jobs_app, name="jobs")


@jobs_app.command("list")
def jobs_list(
    org: str = typer.Option(None, "--org", help="Filter by organization"),
    status: str = typer.Option(None, "--status", help="pending, processing, completed or failed"),
    limit: int = typer.Option(50, "--limit", help="Maximum rows"),
) -> None:
    """List ingestion jobs, newest first."""
    jobs = _run(lambda services: services.orchestrator.list_jobs(org, status, limit))

    table = Table(title="Ingestion Jobs", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Type")
    table.add_column("Source")
    table.add_column("Status")
    table.add_column("Nuggets", justify="right")
    table.add_column("Error", style="red")

    styles = {"completed": "green", "failed": "red", "processing": "yellow"}
    for job in jobs:
        style = styles.get(job.status, "dim")
        table.add_row(
            job.id,
            job.type,
            job.source,
            f"[{style}]{job.status}[/{style}]",
            str(job.nugget_count or 0),
            job.error_message or "-",
        )
    console.print(table)


@jobs_app.command("cancel")
def jobs_cancel(job_id: str = typer.Argument(..., help="Ingestion job id")) -> None:
    """Cancel a pending ingestion job."""
    _run(lambda services: services.orchestrator.cancel(job_id))
    rprint(f"[green]✓[/green] Cancelled job {job_id}")


@jobs_app.command("retry")
def jobs_retry(job_id: str = typer.Argument(..., help="Ingestion job id")) -> None:
    """Retry a failed ingestion job."""
    handle = _run(lambda services: services.orchestrator.retry(job_id))
    rprint(f"[green]✓[/green] Re-enqueued job {job_id} (entry {handle.entry_id})")


@jobs_app.command("delete")
def jobs_delete(job_id: str = typer.Argument(..., help="Ingestion job id")) -> None:
    """Delete a completed or failed ingestion job."""
    _run(lambda services: services.orchestrator.delete(job_id))
    rprint(f"[green]✓[/green] Deleted job {job_id}")


# ========================================
# URL COMMANDS
# ========================================

urls_app = typer.Typer(help="Monitored URLs")
app.add_typer(urls_app, name="urls")


@urls_app.command("add")
def urls_add(
    url: str = typer.Argument(..., help="Page to monitor"),
    org: str = typer.Option(..., "--org", help="Organization id"),
    interval: int = typer.Option(None, "--interval", help="Check interval in seconds"),
    selector: str = typer.Option(None, "--selector", help="CSS selector for the content"),
    auto_process: bool = typer.Option(True, "--auto/--no-auto", help="Enqueue ingestion on change"),
) -> None:
    """Register a monitored URL."""
    check_interval = interval or get_settings().url_default_check_interval
    monitored = _run(
        lambda services: services.url_monitor.register_url(
            org, url, check_interval, selector, auto_process=auto_process, start=False
        )
    )
    rprint(f"[green]✓[/green] Monitoring {monitored.url} as {monitored.id} (every {check_interval}s)")


@urls_app.command("check")
def urls_check(url_id: str = typer.Argument(..., help="Monitored URL id")) -> None:
    """Check a monitored URL now."""
    result = _run(lambda services: services.url_monitor.trigger_check(url_id))
    if not result.ok:
        rprint(f"[yellow]⚠[/yellow] Check failed: {result.error}")
        raise typer.Exit(code=1)
    if result.changed:
        rprint(f"[green]✓[/green] Content changed ({result.content_hash[:12]})")
        if result.job_id:
            rprint(f"  Queued ingestion job {result.job_id}")
    else:
        rprint("[dim]No change[/dim]")


# ========================================
# SEARCH COMMANDS
# ========================================


@app.command("similar")
def similar(
    text: str = typer.Argument(..., help="Query text"),
    org: str = typer.Option(..., "--org", help="Organization id"),
    threshold: float = typer.Option(None, "--threshold", help="Minimum similarity"),
    limit: int = typer.Option(None, "--limit", help="Maximum results"),
) -> None:
    """Find ready nuggets similar to a text."""
    hits = _run(lambda services: services.embeddings.find_similar_to_text(text, org, threshold, limit))

    table = Table(title="Similar Nuggets", show_header=True)
    table.add_column("Similarity", justify="right", style="green")
    table.add_column("ID", style="cyan")
    table.add_column("Content")
    for hit in hits:
        preview = hit.nugget.content[:80].replace("\n", " ")
        table.add_row(f"{hit.similarity:.3f}", hit.nugget.id, preview)
    console.print(table)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
