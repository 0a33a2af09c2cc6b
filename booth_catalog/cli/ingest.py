"""
Ingestion CLI Commands
======================

``booth-catalog ingest ...``: start crawls (inline or through the arq
queue), run the worker, and look at configured sources and queued jobs.
"""

from __future__ import annotations

import asyncio
from typing import Any, NoReturn, Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from booth_catalog.core.enums import ExtractionMode
from booth_catalog.ingestion.extractors import EXTRACTOR_REGISTRY, get_agent_extractor
from booth_catalog.ingestion.jobs import (
    JobStatus,
    crawl_source_sync,
    enqueue_crawl,
    get_job_status,
)
from booth_catalog.ingestion.registry import SourceConfig, get_default_registry

console = Console()
ingest_app = typer.Typer(help="Crawl booth sources and manage the job queue")
sources_app = typer.Typer(help="Inspect sources from sources.yaml")
jobs_app = typer.Typer(help="Inspect queued crawl jobs")

ingest_app.add_typer(sources_app, name="sources")
ingest_app.add_typer(jobs_app, name="jobs")

STATUS_COLORS = {
    JobStatus.COMPLETED.value: "green",
    JobStatus.RUNNING.value: "blue",
    JobStatus.PENDING.value: "yellow",
    JobStatus.FAILED.value: "red",
}

# (label, JobResult field) pairs printed under "Statistics"
RESULT_COUNTERS = [
    ("URLs discovered", "urls_discovered"),
    ("URLs fetched", "urls_fetched"),
    ("Fallbacks to agent", "fallbacks"),
    ("Patterns learned", "patterns_learned"),
    ("Booths extracted", "booths_extracted"),
    ("Booths geocoded", "geocoded"),
    ("Duplicates merged", "duplicates_merged"),
    ("Booths saved", "booths_saved"),
    ("Review queue", "review_queue_count"),
]

MAX_ERRORS_SHOWN = 10


def _abort(message: str, *hints: str) -> NoReturn:
    rprint(f"[red]Error:[/red] {message}")
    for hint in hints:
        rprint(hint)
    raise typer.Exit(1)


def _enabled_label(source: SourceConfig) -> str:
    return "[green]enabled[/green]" if source.enabled else "[yellow]disabled[/yellow]"


def _print_list(title: str, items: list[str]) -> None:
    if not items:
        return
    rprint(f"\n[bold]{title}:[/bold]")
    for item in items:
        rprint(f"  • {item}")


@ingest_app.command("run")
def run_crawl(
    source: str = typer.Option(..., "--source", "-s", help="Name of the source to crawl"),
    max_urls: Optional[int] = typer.Option(None, "--max", "-m", help="Stop after this many pages"),
    mode: Optional[ExtractionMode] = typer.Option(
        None, "--mode", help="Use this extraction mode for every page"
    ),
    sync: bool = typer.Option(False, "--sync", help="Crawl in this process instead of queueing"),
    no_geocode: bool = typer.Option(False, "--no-geocode", help="Leave missing coordinates empty"),
) -> None:
    """
    Crawl one source.

    Examples:
        booth-catalog ingest run --source=fixture-booths --sync
        booth-catalog ingest run -s photobooth-net -m 50
    """
    registry = get_default_registry()
    config = registry.get_source(source)

    if config is None:
        known = [f"  • {s.name} ({_enabled_label(s)})" for s in registry.list_sources()]
        _abort(f"Source '{source}' not found", "\nAvailable sources:", *known)
    if not config.enabled:
        _abort(f"Source '{source}' is disabled", "Set enabled: true in sources.yaml to crawl it")

    effective_mode = mode or config.extraction_mode
    rprint(f"\n[bold]Crawling {source}[/bold] ({config.domain})")
    rprint(f"  Extractor: {config.extractor}")
    rprint(f"  Mode: {effective_mode.value}{' (forced)' if mode else ''}")
    if max_urls:
        rprint(f"  Page limit: {max_urls}")

    forced = mode.value if mode else None

    if not sync:
        try:
            job_id = asyncio.run(enqueue_crawl(source, max_urls, forced))
        except OSError as e:
            _abort(f"Could not reach the job queue: {e}", "\nStart Redis or rerun with --sync")
        rprint(f"\n[green]Queued[/green] job [bold]{job_id}[/bold]")
        rprint(f"Follow it with: booth-catalog ingest jobs status {job_id}")
        return

    rprint("\n[dim]Crawling inline...[/dim]")
    result = asyncio.run(crawl_source_sync(source, max_urls, forced, geocode=not no_geocode))
    _display_job_result(result.to_dict())
    if result.status == JobStatus.FAILED:
        raise typer.Exit(1)


@ingest_app.command("worker")
def start_worker(
    burst: bool = typer.Option(False, "--burst", help="Exit once the queue is drained"),
) -> None:
    """Process queued crawl jobs until interrupted."""
    from arq import run_worker

    from booth_catalog.ingestion.jobs import WorkerSettings

    rprint("[bold]Crawl worker listening[/bold] (Ctrl+C to stop)")
    try:
        run_worker(WorkerSettings, burst=burst)
    except OSError as e:
        _abort(f"Worker stopped: {e}", "\nIs Redis reachable?")


@sources_app.command("list")
def list_sources(
    all_sources: bool = typer.Option(False, "--all", "-a", help="Include disabled sources"),
) -> None:
    """Tabulate the configured sources."""
    registry = get_default_registry()
    shown = registry.list_sources() if all_sources else registry.list_enabled_sources()

    if not shown:
        rprint("[yellow]Nothing to show.[/yellow] Sources are declared in sources.yaml")
        return

    table = Table(title="Crawl Sources")
    for column in ("Name", "Domain", "Type", "Mode", "Extractor", "Status"):
        table.add_column(column, style="bold" if column == "Name" else None)

    for entry in shown:
        table.add_row(
            entry.name,
            entry.domain,
            entry.source_type.value,
            entry.extraction_mode.value,
            entry.extractor,
            _enabled_label(entry),
        )

    console.print(table)


@sources_app.command("show")
def show_source(
    name: str = typer.Argument(..., help="Source name"),
) -> None:
    """Print everything known about one source."""
    config = get_default_registry().get_source(name)
    if config is None:
        _abort(f"Source '{name}' not found")

    rprint(f"\n[bold]{config.name}[/bold] {_enabled_label(config)}")
    rprint(f"  Domain: {config.domain}")
    rprint(f"  Type: {config.source_type.value}")
    rprint(f"  Extraction mode: {config.extraction_mode.value}")
    if config.description:
        rprint(f"  {config.description}")
    rprint(
        f"  Pacing: {config.rate_limit.requests_per_second} req/s, "
        f"bursts of {config.rate_limit.burst_limit}"
    )

    _print_list("Allowlist", config.allowlist)
    _print_list("Denylist", config.denylist)
    _print_list("Seed URLs", config.seed_urls)

    extractor = get_agent_extractor(config.extractor, config.custom_config)
    if extractor is None:
        rprint(f"\n[red]No extractor named '{config.extractor}'[/red]")
        rprint(f"Registered extractors: {', '.join(EXTRACTOR_REGISTRY)}")
        return

    info = extractor.get_info()
    rprint(f"\n[bold]Extractor:[/bold] {info['name']} {info['version']} ({info['class']})")


@jobs_app.command("status")
def job_status(
    job_id: str = typer.Argument(..., help="ID printed when the job was queued"),
) -> None:
    """Report on a queued or finished crawl job."""
    try:
        info = asyncio.run(get_job_status(job_id))
    except OSError as e:
        _abort(f"Could not reach the job queue: {e}")

    if info is None:
        rprint(f"[yellow]No job with ID '{job_id}'[/yellow]")
        raise typer.Exit(1)

    rprint(f"\n[bold]Job {job_id}[/bold]: {info.get('status', 'unknown')}")
    if isinstance(info.get("result"), dict):
        _display_job_result(info["result"])


def _display_job_result(result: dict[str, Any]) -> None:
    status = result.get("status", "unknown")
    color = STATUS_COLORS.get(status, "white")

    rprint(f"\n[bold]{result.get('source_name', '?')}[/bold]: [{color}]{status}[/{color}]")
    if result.get("duration_seconds"):
        rprint(f"  Took {result['duration_seconds']:.1f}s")

    rprint(
        f"  Pages via agent / direct: {result.get('pages_agent', 0)} / {result.get('pages_direct', 0)}"
    )
    for label, key in RESULT_COUNTERS:
        rprint(f"  {label}: {result.get(key, 0)}")

    errors = result.get("errors") or []
    if errors:
        rprint(f"\n[bold red]{len(errors)} error(s):[/bold red]")
        for error in errors[:MAX_ERRORS_SHOWN]:
            rprint(f"  • {error}")
        if len(errors) > MAX_ERRORS_SHOWN:
            rprint(f"  (+{len(errors) - MAX_ERRORS_SHOWN} more)")
