"""Command-line interface for lookupguard."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from lookupguard import __version__
from lookupguard.config import find_config_file
from lookupguard.container import DependencyContainer
from lookupguard.detection import BotSignalClassifier
from lookupguard.lookup import CampaignControl
from lookupguard.observability import configure_logging, start_metrics_server

console = Console()
logger = structlog.get_logger(__name__)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level (overrides the configuration file)",
)
@click.option("--session", "-s", default="default", show_default=True, help="Scraping session id")
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str], session: str) -> None:
    """lookupguard - rate-limited provider lookups with bot-signal detection."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else find_config_file()
    ctx.obj["log_level"] = log_level
    ctx.obj["session_id"] = session


def _container(ctx: click.Context) -> DependencyContainer:
    container = DependencyContainer(ctx.obj["config_path"])
    container.load_config()
    assert container.config is not None
    if ctx.obj["log_level"]:
        container.config.monitoring.log_level = ctx.obj["log_level"]
    configure_logging(container.config.monitoring)
    return container


@cli.command()
@click.argument("phone_numbers", nargs=-1, required=True)
@click.option("--retry/--no-retry", default=True, help="Replay ready retries after the lookups")
@click.option("--output", "-o", type=click.Path(), help="Write results as JSON to this file")
@click.pass_context
def lookup(ctx: click.Context, phone_numbers: tuple[str, ...], retry: bool, output: Optional[str]) -> None:
    """Look up the service provider for each PHONE_NUMBER."""
    numbers = list(dict.fromkeys(p.strip() for p in phone_numbers if p.strip()))
    container = _container(ctx)
    session_id = ctx.obj["session_id"]

    async def run_lookups() -> Dict[str, str]:
        async with container.lifecycle():
            assert container.config is not None
            start_metrics_server(container.config.monitoring)

            control = CampaignControl()
            service = await container.create_lookup_service(session_id, control=control)
            results = await service.lookup_providers(numbers)

            if retry and control.should_continue():
                retry_results = await service.retry_failed()
                if retry_results:
                    console.print(f"[cyan]Replayed {len(retry_results)} retry item(s)[/cyan]")
                results.update({p: v for p, v in service.recovered.items() if p in numbers})

            for alert in control.alerts:
                console.print(
                    Panel(alert.message, title=f"{alert.type.value} ({alert.severity.value})", border_style="red")
                )
            console.print(_statistics_table(service.controller.get_statistics()))
            return results

    results = asyncio.run(run_lookups())

    table = Table(title="Provider Lookups")
    table.add_column("Phone", style="cyan")
    table.add_column("Provider", style="magenta")
    for phone in numbers:
        table.add_row(phone, results.get(phone, "[red]pending retry[/red]"))
    console.print(table)

    if output:
        Path(output).write_text(json.dumps(results, indent=2), encoding="utf-8")
        console.print(f"[green]Results written to {output}[/green]")

    if len(results) < len(numbers):
        sys.exit(1)


def _statistics_table(stats: Dict[str, Any]) -> Table:
    table = Table(title="Batch Controller")
    table.add_column("Statistic", style="cyan")
    table.add_column("Value", style="magenta")
    for key, value in stats.items():
        table.add_row(key, str(value))
    return table


@cli.command("retry-stats")
@click.pass_context
def retry_stats(ctx: click.Context) -> None:
    """Show retry queue totals for the session."""
    container = _container(ctx)
    session_id = ctx.obj["session_id"]

    async def collect() -> Dict[str, Any]:
        async with container.lifecycle():
            queue = await container.get_retry_queue(session_id)
            return await queue.get_stats()

    stats = asyncio.run(collect())
    console.print(
        Panel.fit(
            f"Total items: {stats['total_items']}\nReady now: {stats['ready_items']}",
            title=f"Retry queue [{session_id}]",
        )
    )

    table = Table(title="By item type")
    table.add_column("Type", style="cyan")
    table.add_column("Count", style="magenta")
    for item_type, count in stats["items_by_type"].items():
        table.add_row(item_type, str(count))
    console.print(table)

    if stats["items_by_attempts"]:
        table = Table(title="By attempts")
        table.add_column("Attempts", style="cyan")
        table.add_column("Count", style="magenta")
        for attempts, count in sorted(stats["items_by_attempts"].items()):
            table.add_row(str(attempts), str(count))
        console.print(table)


@cli.command("retry-list")
@click.option("--json", "as_json", is_flag=True, help="Print rows as JSON")
@click.pass_context
def retry_list(ctx: click.Context, as_json: bool) -> None:
    """List queued retry items, earliest first."""
    container = _container(ctx)
    session_id = ctx.obj["session_id"]

    async def collect() -> Any:
        async with container.lifecycle():
            queue = await container.get_retry_queue(session_id)
            return await queue.get_all_items()

    items = asyncio.run(collect())

    if as_json:
        rows = [
            {
                "id": item.id,
                "item_type": item.item_type.value,
                "payload": item.payload,
                "attempts": item.attempts,
                "next_retry_time": item.next_retry_time.isoformat(),
            }
            for item in items
        ]
        click.echo(json.dumps(rows, indent=2))
        return

    table = Table(title=f"Retry queue [{session_id}]")
    table.add_column("ID", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Attempts", justify="right")
    table.add_column("Next retry", style="magenta")
    table.add_column("Payload")
    for item in items:
        table.add_row(
            item.id[:8],
            item.item_type.value,
            str(item.attempts),
            item.next_retry_time.isoformat(timespec="seconds"),
            json.dumps(item.payload),
        )
    console.print(table)


@cli.command("retry-clear")
@click.confirmation_option(prompt="Delete every retry item for this session?")
@click.pass_context
def retry_clear(ctx: click.Context) -> None:
    """Delete all retry items for the session."""
    container = _container(ctx)
    session_id = ctx.obj["session_id"]

    async def clear() -> int:
        async with container.lifecycle():
            queue = await container.get_retry_queue(session_id)
            return await queue.clear()

    deleted = asyncio.run(clear())
    console.print(f"[green]Removed {deleted} retry item(s) from session {session_id}[/green]")


@cli.command("check-rate")
@click.argument("success", type=click.IntRange(min=0))
@click.argument("total", type=click.IntRange(min=0))
@click.option("--threshold", type=click.FloatRange(0.0, 1.0), default=None, help="Override the failure threshold")
@click.pass_context
def check_rate(ctx: click.Context, success: int, total: int, threshold: Optional[float]) -> None:
    """Evaluate a SUCCESS/TOTAL lookup count against the failure-rate threshold."""
    if success > total:
        raise click.BadParameter("SUCCESS cannot exceed TOTAL", param_hint="SUCCESS")

    container = _container(ctx)
    assert container.config is not None
    classifier = BotSignalClassifier.from_config(container.config.detection)
    if threshold is not None:
        classifier.failed_lookup_threshold = threshold

    result = classifier.detect_failed_lookup_rate(success, total)
    if result.detected:
        action = classifier.handle_detection(result)
        console.print(f"[red]Bot signal: failure rate {result.details['failure_rate']:.2f} -> {action.value}[/red]")
        sys.exit(2)

    console.print("[green]No bot signal[/green]")


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
