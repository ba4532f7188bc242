"""CLI entry point for location enrichment runs.

This module provides the command-line interface for enriching a list of
locations through an HTTP endpoint with retries, circuit breaking, caching,
progress indicators and error handling.
"""

import asyncio
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Set, Tuple

import click
import yaml
from pydantic import BaseModel, Field, ValidationError
from rich.console import Console
from rich.markup import escape
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from site_enrichment.models.config import ConfigManager, EnrichmentConfig
from site_enrichment.models.data_models import (
    BatchItem,
    EnrichmentRunResult,
    RecoveryGuard,
    RecoveryStrategy,
)
from site_enrichment.pipeline.orchestrator import EnrichmentOrchestrator
from site_enrichment.pipeline.output import JSONOutputFormatter
from site_enrichment.scheduler.http_operation import HTTPLocationOperation


console = Console()


class LocationInput(BaseModel):
    """One entry of the input file."""
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    priority: float = 0.0


def load_items(path: Path) -> List[BatchItem]:
    """
    Read a YAML or JSON list of ``{lat, lng, priority}`` entries.

    Raises:
        ValueError: If the file is not a list or an entry is invalid
    """
    with open(path, 'r', encoding='utf-8') as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, list):
        raise ValueError(f"{path} must contain a list of locations")

    items = []
    for index, entry in enumerate(raw):
        try:
            location = LocationInput.model_validate(entry)
        except ValidationError as e:
            raise ValueError(f"invalid location at index {index}: {e}") from e
        items.append(BatchItem(lat=location.lat, lng=location.lng, priority=location.priority))
    return items


@click.command()
@click.argument(
    "locations",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "--url-template",
    "-u",
    required=True,
    help="Endpoint URL with {lat} and {lng} placeholders",
)
@click.option(
    "--config",
    "-c",
    type=click.Path(dir_okay=False, path_type=Path),
    default="config/config.yaml",
    help="Path to configuration YAML file",
)
@click.option(
    "--service",
    "-s",
    default="LocationAPI",
    show_default=True,
    help="Service name used for circuit breaking and health reporting",
)
@click.option(
    "--timeout",
    "-t",
    type=float,
    help="Total run timeout in seconds (overrides config)",
)
@click.option(
    "--batch-size",
    "-b",
    type=int,
    help="Items per chunk (overrides config)",
)
@click.option(
    "--concurrency",
    "-n",
    type=int,
    help="Maximum in-flight requests (overrides config)",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    help="Output JSON file path (overrides config)",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level (overrides config)",
)
@click.option(
    "--no-progress",
    is_flag=True,
    help="Disable progress bars (useful for CI/CD)",
)
@click.version_option(version="1.0.0", prog_name="site-enrichment")
def main(
    locations: Path,
    url_template: str,
    config: Path,
    service: str,
    timeout: Optional[float],
    batch_size: Optional[int],
    concurrency: Optional[int],
    output: Optional[Path],
    log_level: Optional[str],
    no_progress: bool,
) -> None:
    """
    Site Enrichment - resilient batch enrichment of candidate locations.

    Reads LOCATIONS (YAML or JSON list of {lat, lng, priority}), calls the
    endpoint for every location in priority order and writes JSON results
    together with a service health report.

    Examples:

        # Enrich locations against a local service
        $ site-enrichment sites.yaml -u "http://localhost:8000/analysis?lat={lat}&lng={lng}"

        # Smaller chunks, fewer concurrent requests
        $ site-enrichment sites.yaml -u "..." --batch-size 3 --concurrency 2

        # Disable progress bars for CI/CD
        $ site-enrichment sites.yaml -u "..." --no-progress
    """
    try:
        cli_overrides = {}
        if timeout is not None:
            cli_overrides["total_timeout"] = timeout
        if batch_size is not None:
            cli_overrides["batch_size"] = batch_size
        if concurrency is not None:
            cli_overrides["concurrency"] = concurrency
        if log_level is not None:
            cli_overrides["log_level"] = log_level.upper()

        config_manager = ConfigManager(config)
        enrichment_config = config_manager.load_config(cli_overrides)

        output_path = output if output else enrichment_config.output_path
        items = load_items(locations)

        _display_config_summary(enrichment_config, len(items), no_progress)

        run = asyncio.run(
            _run_with_progress(enrichment_config, items, url_template, service, no_progress)
        )

        formatter = JSONOutputFormatter()
        formatter.save(run, str(output_path))

        _display_results(run, output_path, no_progress)

        sys.exit(0)

    except KeyboardInterrupt:
        console.print("\n[yellow]Enrichment interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {escape(str(e))}", style="bold red")
        sys.exit(1)


async def _run_with_progress(
    config: EnrichmentConfig,
    items: List[BatchItem],
    url_template: str,
    service: str,
    no_progress: bool,
) -> EnrichmentRunResult:
    """Run the enrichment, advancing a progress bar as each location finishes."""
    orchestrator = EnrichmentOrchestrator(config)
    options = config.batch_options(recovery=RecoveryGuard(service_name=service, strategy=RecoveryStrategy.retry()))

    async with HTTPLocationOperation(url_template) as http_operation:
        if no_progress:
            console.print("[cyan]Running enrichment...[/cyan]")
            return await orchestrator.run(items, http_operation, options)

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            task_id = progress.add_task("[cyan]Enriching locations...", total=len(items))

            run = await orchestrator.run(
                items,
                _progress_tracked(http_operation, lambda: progress.advance(task_id)),
                options
            )
            progress.update(task_id, completed=len(items))
            return run


def _progress_tracked(
    operation: Callable[[float, float], Awaitable[Any]],
    advance: Callable[[], None],
) -> Callable[[float, float], Awaitable[Any]]:
    """Wrap ``operation`` so ``advance`` fires once per location, not once per retry."""
    finished: Set[Tuple[float, float]] = set()

    async def tracked_operation(lat: float, lng: float):
        try:
            return await operation(lat, lng)
        finally:
            if (lat, lng) not in finished:
                finished.add((lat, lng))
                advance()

    return tracked_operation


def _display_config_summary(config: EnrichmentConfig, items: int, no_progress: bool) -> None:
    if no_progress:
        return

    console.print("\n[bold cyan]Enrichment Configuration[/bold cyan]")
    console.print(f"  Locations: {items}")
    console.print(f"  Batch Size: {config.batch_size}")
    console.print(f"  Concurrency: {config.concurrency}")
    console.print(f"  Retry Attempts: {config.max_retry_attempts}")
    console.print(f"  Circuit Breaker: {config.circuit_breaker_threshold} failures / {config.circuit_breaker_timeout_ms:.0f}ms")
    console.print(f"  Timeout: {config.total_timeout}s")
    console.print()


def _display_results(
    run: EnrichmentRunResult,
    output_path: Path,
    no_progress: bool,
) -> None:
    """Display final results summary."""
    failed = sum(1 for entry in run.results if entry.error is not None)

    if no_progress:
        console.print(f"✓ Enrichment complete: {len(run.results) - failed}/{len(run.results)} locations")
        console.print(f"✓ Output saved to: {output_path}")
        return

    console.print("\n[bold green]Enrichment Complete![/bold green]\n")

    summary_table = Table(title="Execution Summary", show_header=False)
    summary_table.add_column("Metric", style="cyan")
    summary_table.add_column("Value", style="green")

    summary_table.add_row("Locations", str(len(run.results)))
    summary_table.add_row("Failed", str(failed))
    summary_table.add_row("Cache Hit Rate", f"{run.metrics.cache_hit_rate * 100:.1f}%")
    summary_table.add_row("Processing Time", f"{run.elapsed_seconds:.2f}s")
    summary_table.add_row("Overall Health", run.health_report["overall_health"])

    console.print(summary_table)
    console.print()

    services = run.health_report["service_health"]
    if services:
        health_table = Table(title="Service Health")
        health_table.add_column("Service", style="cyan")
        health_table.add_column("Status", style="green")
        health_table.add_column("Success Rate", justify="right", style="green")
        health_table.add_column("Errors", justify="right", style="yellow")
        health_table.add_column("Breaker", style="magenta")

        breakers = run.health_report["error_statistics"]["circuit_breaker_status"]
        for health in services:
            health_table.add_row(
                health["service"],
                health["status"],
                f"{health['success_rate'] * 100:.1f}%",
                str(health["error_count"]),
                "open" if breakers.get(health["service"]) else "closed",
            )

        console.print(health_table)
        console.print()

    console.print(f"[bold]Output saved to:[/bold] {output_path}")
    console.print()


if __name__ == "__main__":
    main()
