"""Typer CLI entry point for angle-finder."""

from __future__ import annotations

import asyncio
import json
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import httpx
import structlog
import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from angle_finder import __version__
from angle_finder.api.server import run_server
from angle_finder.config import Settings, format_validation_error
from angle_finder.discovery import DiscoveryRequest
from angle_finder.exceptions import AngleFinderError, StoreError
from angle_finder.logging import configure_logging, generate_session_id
from angle_finder.models import Source, SourceType, Strategy
from angle_finder.records import Timeframe
from angle_finder.scheduler import BackgroundAnalysisScheduler
from angle_finder.services import Services, build_services
from angle_finder.store import RecordStore

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterator

    from angle_finder.models import AnalysisResult, ProductProfile
    from angle_finder.scheduler import AnalysisOutcome

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="angle-finder",
    help="Discover sources and mine them for marketing claims and hooks.",
    no_args_is_help=True,
)
cache_app = typer.Typer(help="Content cache administration.")
app.add_typer(cache_app, name="cache")

ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Path to config YAML file."),
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_settings(config_path: Path | None = None, **overrides: Any) -> Settings:
    """Load settings, rendering validation errors as a panel."""
    try:
        settings = Settings.load(config_path=config_path, **overrides)
    except ValidationError as exc:
        err_console.print(
            Panel(
                format_validation_error(exc),
                title="Configuration Error",
                border_style="red",
            )
        )
        raise typer.Exit(code=1) from exc
    configure_logging(
        settings.logging.level,
        settings.logging.format,
        settings.logging.file,
    )
    return settings


def _run_with_services(
    settings: Settings, work: Callable[[Services], Awaitable[Any]]
) -> Any:
    async def runner() -> Any:
        services = build_services(settings)
        try:
            return await work(services)
        finally:
            await services.aclose()

    return asyncio.run(runner())


@contextmanager
def _open_store(settings: Settings) -> Iterator[RecordStore]:
    """Open the record store, exiting with status 1 when it is unreadable."""
    store = RecordStore(settings.store.directory)
    try:
        yield store
    except StoreError as exc:
        err_console.print(f"[red]Store error:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    finally:
        store.close()


def _sources_table(sources: list[Source]) -> Table:
    table = Table(title="Discovered Sources", show_lines=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Title")
    table.add_column("Views", justify="right")
    table.add_column("Modifier", style="magenta")
    for index, source in enumerate(sources, start=1):
        table.add_row(
            str(index),
            str(source.type),
            source.title[:80],
            f"{source.views:,}" if source.views else "",
            source.modifier_used or "",
        )
    return table


def _print_result(result: AnalysisResult) -> None:
    console.print(Panel(f"[bold]{result.source_name}[/bold]\n{result.source_url}"))
    claims = Table(title="Claims", show_lines=True)
    claims.add_column("Claim")
    claims.add_column("Surprise", justify="right")
    claims.add_column("Awareness")
    claims.add_column("Momentum", justify="right")
    for claim in result.claims:
        marker = " [green](sweet spot)[/green]" if claim.is_sweet_spot else ""
        claims.add_row(
            claim.claim,
            str(claim.surprise_score),
            f"{claim.awareness_level}{marker}",
            str(claim.momentum_score),
        )
    console.print(claims)

    hooks = Table(title="Hooks", show_lines=True)
    hooks.add_column("Headline")
    hooks.add_column("Bridge")
    hooks.add_column("Virality", justify="right")
    hooks.add_column("Awareness")
    for hook in result.hooks:
        hooks.add_row(
            hook.headline,
            str(hook.bridge_distance),
            str(hook.virality_score.total),
            str(hook.awareness_level),
        )
    console.print(hooks)


def _dump(model_json: str, output: Path | None) -> None:
    if output is None:
        return
    output.write_text(model_json, encoding="utf-8")
    console.print(f"[green]Saved:[/green] {output}")


# ---------------------------------------------------------------------------
# Version callback
# ---------------------------------------------------------------------------


def _version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]angle-finder[/bold] {__version__}")
        raise typer.Exit


@app.callback()
def common(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=_version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """angle-finder global options."""


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def discover(
    niche: Annotated[str, typer.Argument(help="Market niche, e.g. 'sleep supplements'.")],
    product: Annotated[str, typer.Option("--product", "-p", help="Product description.")],
    source_types: Annotated[
        list[SourceType],
        typer.Option("--type", "-t", help="Provider type to search (repeatable)."),
    ],
    categories: Annotated[
        list[str] | None,
        typer.Option("--category", help="Topic category to explore (repeatable)."),
    ] = None,
    strategy: Annotated[
        Strategy, typer.Option("--strategy", "-s", help="translocate or direct.")
    ] = Strategy.TRANSLOCATE,
    page: Annotated[int, typer.Option("--page", min=1, help="1-based page.")] = 1,
    use_modifiers: Annotated[
        bool, typer.Option("--modifiers", help="Expand queries with intent modifiers.")
    ] = False,
    output: Annotated[
        Path | None, typer.Option("--output", "-o", help="Write sources as JSON.")
    ] = None,
    config: ConfigOption = None,
) -> None:
    """Discover sources across the selected providers."""
    settings = _load_settings(config)
    request = DiscoveryRequest(
        niche=niche,
        product=product,
        strategy=strategy,
        categories=categories or [],
        source_types=source_types,
        page=page,
        use_modifiers=use_modifiers,
    )

    async def work(services: Services) -> list[Source]:
        return await services.orchestrator.discover(request, session_id=generate_session_id())

    with console.status("Searching providers..."):
        sources = _run_with_services(settings, work)

    if not sources:
        console.print("[yellow]No sources found.[/yellow]")
        raise typer.Exit(code=1)
    console.print(_sources_table(sources))
    _dump(
        json.dumps([source.model_dump(mode="json", by_alias=True) for source in sources], indent=2),
        output,
    )


@app.command()
def analyze(
    sources_file: Annotated[
        Path,
        typer.Argument(help="JSON file of sources (as written by `discover -o`).", exists=True),
    ],
    niche: Annotated[str, typer.Option("--niche", "-n", help="Market niche.")],
    product: Annotated[str, typer.Option("--product", "-p", help="Product description.")],
    strategy: Annotated[
        Strategy, typer.Option("--strategy", "-s", help="translocate or direct.")
    ] = Strategy.TRANSLOCATE,
    output: Annotated[
        Path | None, typer.Option("--output", "-o", help="Write results as JSON.")
    ] = None,
    config: ConfigOption = None,
) -> None:
    """Analyze a set of sources into claims and hooks."""
    settings = _load_settings(config)
    try:
        raw = json.loads(sources_file.read_text(encoding="utf-8"))
        sources = [Source.model_validate(item) for item in raw]
    except (json.JSONDecodeError, ValidationError, TypeError) as exc:
        err_console.print(f"[red]Invalid sources file:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    session_id = generate_session_id()

    async def work(services: Services) -> list[AnalysisOutcome]:
        async def run_one(source: Source) -> AnalysisResult:
            return await services.pipeline.analyze(
                source,
                niche=niche,
                product=product,
                strategy=strategy,
                session_id=session_id,
            )

        scheduler = BackgroundAnalysisScheduler.from_settings(settings.scheduler, run_one)
        try:
            return await scheduler.analyze_selection(sources)
        finally:
            await scheduler.close()

    with console.status(f"Analyzing {len(sources)} source(s)..."):
        outcomes = _run_with_services(settings, work)

    results = []
    for outcome in outcomes:
        if outcome.result is None:
            err_console.print(f"[red]Failed:[/red] {outcome.source.title} ({outcome.error})")
            continue
        _print_result(outcome.result)
        results.append(outcome.result.model_dump(mode="json", by_alias=True))
    _dump(json.dumps(results, indent=2), output)
    if not results:
        raise typer.Exit(code=1)


@app.command("analyze-url")
def analyze_url(
    url: Annotated[str, typer.Argument(help="Product landing page URL.")],
    output: Annotated[
        Path | None, typer.Option("--output", "-o", help="Write the profile as JSON.")
    ] = None,
    config: ConfigOption = None,
) -> None:
    """Infer product name, niche and description from a product page."""
    settings = _load_settings(config)

    async def work(services: Services) -> ProductProfile:
        return await services.pipeline.analyze_product_url(
            url, session_id=generate_session_id()
        )

    try:
        with console.status("Reading product page..."):
            profile = _run_with_services(settings, work)
    except (httpx.HTTPError, AngleFinderError) as exc:
        err_console.print(f"[red]Failed to analyze URL:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    table = Table(title="Product", show_lines=True)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Name", profile.product_name)
    table.add_row("Niche", profile.detected_niche)
    if profile.custom_niche:
        table.add_row("Custom niche", profile.custom_niche)
    table.add_row("Description", profile.product_description)
    console.print(table)
    _dump(profile.model_dump_json(by_alias=True, indent=2), output)


@cache_app.command("stats")
def cache_stats(config: ConfigOption = None) -> None:
    """Show content cache statistics."""
    settings = _load_settings(config)
    with _open_store(settings) as store:
        stats = store.cache_stats()
    table = Table(title="Content Cache", show_lines=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Value")
    table.add_row("Entries", str(stats.total_entries))
    table.add_row("Size", f"{stats.total_size_bytes:,} bytes")
    table.add_row("Hits", str(stats.total_hits))
    table.add_row("Avg fetch", f"{stats.avg_fetch_duration_ms:.0f} ms")
    table.add_row("Expired", str(stats.expired_count))
    table.add_row(
        "By type",
        ", ".join(f"{key}={value}" for key, value in sorted(stats.by_source_type.items())),
    )
    console.print(table)


@cache_app.command("sweep")
def cache_sweep(config: ConfigOption = None) -> None:
    """Remove expired cache entries."""
    settings = _load_settings(config)
    with _open_store(settings) as store:
        removed = store.clear_expired_cache()
    console.print(f"[green]Removed {removed} expired entr{'y' if removed == 1 else 'ies'}.[/green]")


@cache_app.command("clear")
def cache_clear(
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation.")] = False,
    config: ConfigOption = None,
) -> None:
    """Remove every cache entry."""
    settings = _load_settings(config)
    if not yes and not typer.confirm("Clear the entire content cache?"):
        raise typer.Exit
    with _open_store(settings) as store:
        removed = store.clear_all_cache()
    console.print(f"[green]Removed {removed} cache entr{'y' if removed == 1 else 'ies'}.[/green]")


@app.command()
def usage(
    timeframe: Annotated[
        Timeframe, typer.Option("--timeframe", "-t", help="day, week, month or all.")
    ] = Timeframe.WEEK,
    config: ConfigOption = None,
) -> None:
    """Summarize LLM usage telemetry."""
    settings = _load_settings(config)
    with _open_store(settings) as store:
        summary = store.usage_summary(timeframe)
    table = Table(title=f"LLM Usage ({timeframe})", show_lines=True)
    table.add_column("Endpoint", style="cyan")
    table.add_column("Requests", justify="right")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Rate limited", justify="right")
    table.add_column("Avg ms", justify="right")
    for endpoint, row in sorted(summary.by_endpoint.items()):
        table.add_row(
            endpoint,
            str(row.requests),
            f"{row.input_tokens:,}",
            f"{row.output_tokens:,}",
            str(row.rate_limited),
            f"{row.avg_duration_ms:.0f}",
        )
    console.print(table)
    credentials = ", ".join(
        f"{slot}={count}" for slot, count in sorted(summary.by_credential.items())
    )
    console.print(
        f"Requests: [bold]{summary.total_requests}[/bold]  "
        f"Cache read: {summary.total_cache_read_tokens:,}  "
        f"Cache write: {summary.total_cache_creation_tokens:,}  "
        f"Credentials: {credentials or '-'}  "
        f"Est. cost: [bold]${summary.estimated_cost_usd:.4f}[/bold]"
    )


@app.command()
def errors(
    limit: Annotated[int, typer.Option("--limit", "-n", min=1, help="Entries to show.")] = 20,
    clear: Annotated[bool, typer.Option("--clear", help="Delete the error log.")] = False,
    config: ConfigOption = None,
) -> None:
    """Show (or clear) the durable error log."""
    settings = _load_settings(config)
    with _open_store(settings) as store:
        if clear:
            removed = store.clear_errors()
        else:
            records = store.list_errors(limit)
    if clear:
        console.print(f"[green]Removed {removed} error record(s).[/green]")
        return
    if not records:
        console.print("[dim]No errors logged.[/dim]")
        return
    table = Table(title="Errors", show_lines=True)
    table.add_column("When", style="dim")
    table.add_column("Endpoint", style="cyan")
    table.add_column("Kind")
    table.add_column("Status", justify="right")
    table.add_column("Message")
    for record in records:
        table.add_row(
            record.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            record.endpoint,
            str(record.kind),
            str(record.status_code or ""),
            record.message[:120],
        )
    console.print(table)


@app.command()
def serve(
    port: Annotated[int | None, typer.Option("--port", help="Port to bind.")] = None,
    host: Annotated[
        str | None, typer.Option("--host", help="Host/interface to bind.")
    ] = None,
    config: ConfigOption = None,
) -> None:
    """Run the FastAPI server."""
    settings = _load_settings(config)
    if port is not None:
        settings.api.port = port
    if host is not None:
        settings.api.host = host
    run_server(settings)


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
