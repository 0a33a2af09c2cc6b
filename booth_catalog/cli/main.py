"""Booth Catalog CLI using Typer."""

import json
import logging
import os
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from pydantic import ValidationError
from rich import print as rprint
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from booth_catalog.cli.ingest import ingest_app

# First .env wins: working directory, then the checkout root
DOTENV_CANDIDATES = [Path.cwd() / ".env", Path(__file__).resolve().parents[2] / ".env"]
DOTENV_PATH = next((p for p in DOTENV_CANDIDATES if p.exists()), None)
if DOTENV_PATH is not None:
    load_dotenv(DOTENV_PATH)

console = Console()
app = typer.Typer(
    name="booth-catalog",
    help="Booth Catalog - crawl, deduplicate and geocode analog photo booth listings",
    add_completion=False,
)
patterns_app = typer.Typer(help="Learned pattern commands")

app.add_typer(ingest_app, name="ingest")
app.add_typer(patterns_app, name="patterns")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _check_extractor_config() -> None:
    """Display AI extraction service configuration status."""
    endpoint = os.environ.get("AGENT_EXTRACTOR_URL", "")
    if endpoint:
        auth = "with token" if os.environ.get("AGENT_EXTRACTOR_TOKEN") else "no token"
        typer.echo(f"  Agent extractor: {endpoint} ({auth})")
    else:
        typer.echo("  Agent extractor: Not configured (only fixture sources will extract)")
        typer.echo("  Tip: Set AGENT_EXTRACTOR_URL in .env file")


def _check_geocoding_config() -> None:
    """Display which geocoding tiers have credentials."""
    from booth_catalog.geocoding.providers import get_google_api_key

    typer.echo("  Geocoding tiers:")
    typer.echo("    Nominatim: available")
    mapbox = "configured" if os.environ.get("MAPBOX_API_TOKEN") else "no MAPBOX_API_TOKEN"
    typer.echo(f"    Mapbox: {mapbox}")
    google = "configured" if get_google_api_key() else "no GOOGLE_MAPS_API_KEY"
    typer.echo(f"    Google: {google}")


@app.command()
def init_db() -> None:
    """Create the catalog tables if they do not exist yet."""
    from booth_catalog.db.engine import get_database_url, init_db as db_init

    db_init()
    typer.echo(f"Tables ready in {get_database_url()}")


@app.command()
def version() -> None:
    """Show the Booth Catalog version."""
    typer.echo("Booth Catalog v0.1.0")


@app.command()
def check_config() -> None:
    """Report which settings, credentials and files are in effect."""
    from booth_catalog.db.engine import get_database_url
    from booth_catalog.ingestion.registry import get_default_registry

    typer.echo("Booth Catalog Configuration")
    typer.echo("=" * 40)

    typer.echo(f"  .env: {DOTENV_PATH or 'none found'}")

    registry = get_default_registry()
    if registry.config_path:
        typer.echo(f"  Sources config: {registry.config_path}")
        typer.echo(f"  Sources: {len(registry.list_sources())} ({len(registry.list_enabled_sources())} enabled)")
    else:
        typer.echo("  Sources config: Not found")

    _check_extractor_config()
    _check_geocoding_config()

    typer.echo(f"  Database: {get_database_url()}")


# Pattern subcommands


@patterns_app.command("list")
def list_patterns(
    source: str = typer.Argument(..., help="Source name"),
) -> None:
    """
    List learned patterns for a source.

    Examples:
        booth-catalog patterns list photobooth-net
    """
    from booth_catalog.db.engine import get_session, init_db as db_init
    from booth_catalog.db.repositories import SqlPatternRepository, SqlSourceRepository

    db_init()
    with get_session() as session:
        crawl_source = SqlSourceRepository(session).get_by_name(source)
        if crawl_source is None:
            rprint(f"[red]Error:[/red] Source '{source}' has never been crawled")
            raise typer.Exit(1)
        patterns = SqlPatternRepository(session).list_patterns(crawl_source.id)

    rprint(f"\n[bold]Source: {crawl_source.name}[/bold]")
    rprint(f"  Mode: {crawl_source.extraction_mode.value}")
    rprint(f"  Learning: {crawl_source.pattern_learning_status.value}")
    if crawl_source.pattern_learned_at:
        rprint(f"  Learned at: {crawl_source.pattern_learned_at:%Y-%m-%d %H:%M}")

    if not patterns:
        rprint("\n[yellow]No patterns learned yet[/yellow]")
        return

    table = Table(title="Learned Patterns")
    table.add_column("Field", style="bold")
    table.add_column("Type")
    table.add_column("Selector")
    table.add_column("Confidence", justify="right")
    table.add_column("Success/Fail", justify="right")
    table.add_column("Active")

    for pattern in patterns:
        active = "[green]yes[/green]" if pattern.is_active else "[red]no[/red]"
        table.add_row(
            pattern.field_name,
            pattern.pattern_type.value,
            pattern.selector,
            f"{pattern.confidence_score:.2f}",
            f"{pattern.success_count}/{pattern.failure_count}",
            active,
        )

    console.print(table)


@patterns_app.command("stats")
def pattern_stats() -> None:
    """
    Summarize extraction modes and pattern health across sources.

    Examples:
        booth-catalog patterns stats
    """
    from booth_catalog.db.engine import get_session, init_db as db_init
    from booth_catalog.db.repositories import SqlPatternRepository, SqlSourceRepository
    from booth_catalog.ingestion.registry import get_default_registry
    from booth_catalog.ingestion.strategy import summarize_strategy

    db_init()
    with get_session() as session:
        sources = SqlSourceRepository(session).list_all()
        pattern_repo = SqlPatternRepository(session)
        patterns_by_source = {s.id: pattern_repo.list_patterns(s.id) for s in sources}

    stats = summarize_strategy(sources, patterns_by_source, get_default_registry().extraction)

    rprint("\n[bold]Extraction Strategy[/bold]")
    rprint(f"  Sources: {stats.total_sources}")
    rprint(f"  With patterns: {stats.sources_with_patterns}")
    rprint(f"  Direct-eligible: {stats.direct_enabled}")
    rprint(f"  Modes: {stats.agent_only} agent / {stats.hybrid_mode} hybrid / {stats.direct_mode} direct")
    rprint(f"  Patterns: {stats.active_patterns} active of {stats.total_patterns}")
    rprint(f"  Avg confidence: {stats.avg_pattern_confidence:.2f}")
    rprint(f"  Est. monthly savings: ${stats.estimated_monthly_savings_usd:.2f}")


@app.command()
def geocode(
    address: str = typer.Argument(..., help="Street address"),
    name: str = typer.Option("", "--name", "-n", help="Venue name"),
    city: Optional[str] = typer.Option(None, "--city", help="City"),
    state: Optional[str] = typer.Option(None, "--state", help="State or region"),
    country: Optional[str] = typer.Option(None, "--country", help="Country"),
) -> None:
    """
    Geocode one address through the provider cascade.

    Examples:
        booth-catalog geocode "Kastanienallee 5" --city Berlin --country Germany
    """
    from booth_catalog.core.schema import GeocodeQuery
    from booth_catalog.geocoding.cascade import GeocodingCascade
    from booth_catalog.ingestion.registry import get_default_registry

    registry = get_default_registry()
    query = GeocodeQuery(name=name, address=address, city=city, state=state, country=country)
    cascade = GeocodingCascade.from_config(registry.geocoding, registry.global_config.user_agent)
    try:
        with console.status("[bold blue]Geocoding...[/bold blue]"):
            result = cascade.geocode(query)
    finally:
        cascade.close()

    if result is None:
        rprint("[yellow]Could not geocode this address[/yellow]")
        raise typer.Exit(1)

    colour = {"high": "green", "medium": "yellow"}.get(result.confidence.value, "red")
    rprint(f"\n[bold]{result.display_address or address}[/bold]")
    rprint(f"  Coordinates: {result.latitude:.6f}, {result.longitude:.6f}")
    rprint(f"  Provider: {result.provider.value}")
    rprint(f"  Confidence: [{colour}]{result.confidence.value}[/{colour}]")
    rprint(f"  Match score: {result.match_score:.0f}")
    if result.needs_review:
        rprint("  [yellow]Needs review[/yellow]")
    for issue in result.validation_issues:
        rprint(f"  • {issue}")


@app.command()
def dedupe(
    input_file: Path = typer.Argument(..., help="JSON file with a list of booth records"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write survivors here"),
    geocode_missing: bool = typer.Option(False, "--geocode", help="Geocode records lacking coordinates"),
) -> None:
    """
    Deduplicate booth records from a JSON file.

    Examples:
        booth-catalog dedupe booths.json --output deduped.json
    """
    from booth_catalog.core.schema import CandidateRecord
    from booth_catalog.geocoding.cascade import GeocodingCascade
    from booth_catalog.ingestion.deduplication import Deduplicator
    from booth_catalog.ingestion.registry import get_default_registry

    if not input_file.exists():
        rprint(f"[red]Error:[/red] File not found: {input_file}")
        raise typer.Exit(1)

    try:
        raw = json.loads(input_file.read_text())
        records = [CandidateRecord.model_validate(item) for item in raw]
    except (ValueError, TypeError, ValidationError) as e:
        rprint(f"[red]Error:[/red] Invalid booth file: {e}")
        raise typer.Exit(1)

    registry = get_default_registry()
    geocoder = (
        GeocodingCascade.from_config(registry.geocoding, registry.global_config.user_agent)
        if geocode_missing
        else None
    )
    try:
        valid = [r for r in records if r.is_valid]
        result = Deduplicator(registry.deduplication, geocoder).deduplicate(valid)
    finally:
        if geocoder is not None:
            geocoder.close()

    stats = result.stats
    rprint("\n[bold]Deduplication:[/bold]")
    rprint(f"  Input records: {len(records)} ({len(records) - len(valid)} invalid dropped)")
    rprint(f"  Survivors: {stats.deduplicated_count}")
    rprint(f"  Merged: {stats.merged_count}")
    rprint(f"  Exact / high / probable: {stats.exact_matches} / {stats.high_confidence_matches} / {stats.probable_matches}")
    rprint(f"  Manual review: {stats.manual_review_count}")

    if result.review_matches:
        table = Table(title="Needs Review")
        table.add_column("Booth 1", style="bold")
        table.add_column("Booth 2", style="bold")
        table.add_column("Confidence", justify="right")
        table.add_column("Conflicts")
        for match in result.review_matches:
            table.add_row(
                match.booth1.name,
                match.booth2.name,
                f"{match.confidence_score:.1f}",
                ", ".join(match.conflicts) or "-",
            )
        console.print(table)

    if output is not None:
        output.write_text(
            json.dumps([r.model_dump(mode="json") for r in result.records], indent=2)
        )
        rprint(f"\n[green]Wrote {len(result.records)} records to {output}[/green]")


if __name__ == "__main__":
    app()
