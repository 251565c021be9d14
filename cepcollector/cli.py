"""cepcollector CLI: run collection walks and maintain the dataset.

Usage:
    cepcollector range 38400-000 38400-999            # Walk a code range
    cepcollector range 38400000 38400100 --max-results 20 --region MG
    cepcollector locality "Uberlândia" --region MG    # Walk a city listing
    cepcollector import extractions.csv               # Merge a file
    cepcollector stats                                # Dataset statistics
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click
from pydantic import ValidationError

from cepcollector.common.exceptions import CollectorException, MergeIOError
from cepcollector.common.settings import CollectorSettings
from cepcollector.data_types import (
    LocalityWalk,
    RangeWalk,
    RunStatus,
    RunSummary,
    WalkRequest,
)
from cepcollector.dataset import DatasetStore, region_counts
from cepcollector.pipeline import import_batch, run_pipeline

logger = logging.getLogger(__name__)

DEFAULT_DATASET = "public/ceps.json"

EXIT_FAILED = 1
EXIT_CANCELLED = 130


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_settings(
    config_path: str | None, delay: float | None, headed: bool
) -> CollectorSettings:
    """Build settings from an optional JSON file plus CLI overrides."""
    try:
        settings = (
            CollectorSettings.from_file(Path(config_path))
            if config_path
            else CollectorSettings()
        )
    except CollectorException as e:
        raise click.BadParameter(str(e), param_hint="--config") from e

    overrides: dict[str, Any] = {}
    if delay is not None:
        overrides["politeness_interval"] = delay
    if headed:
        overrides["headless"] = False
    return settings.model_copy(update=overrides) if overrides else settings


def _finish(summary: RunSummary) -> None:
    """Print the summary as JSON and exit with the status's code."""
    click.echo(summary.to_json())
    if summary.ok:
        return
    if summary.status is RunStatus.CANCELLED:
        raise SystemExit(EXIT_CANCELLED)
    raise SystemExit(EXIT_FAILED)


def _run_walk(
    walk: WalkRequest, dataset: str, settings: CollectorSettings
) -> RunSummary:
    """Run the pipeline, turning SIGINT/SIGTERM into a graceful stop."""

    async def _go() -> RunSummary:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def handle_signal(signum: int, frame: Any) -> None:
            sig_name = signal.Signals(signum).name
            logger.info(f"Received {sig_name}, stopping after current query")
            loop.call_soon_threadsafe(stop_event.set)

        previous = {
            sig: signal.signal(sig, handle_signal)
            for sig in (signal.SIGINT, signal.SIGTERM)
        }
        try:
            return await run_pipeline(
                walk, dataset, settings, stop_event=stop_event
            )
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    return asyncio.run(_go())


def walk_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by the browser-driven commands."""
    options = [
        click.option(
            "--dataset",
            type=click.Path(dir_okay=False),
            default=DEFAULT_DATASET,
            show_default=True,
            help="Canonical dataset file.",
        ),
        click.option(
            "--config",
            "config_path",
            type=click.Path(exists=True, dir_okay=False),
            default=None,
            help="JSON settings file.",
        ),
        click.option(
            "--delay",
            type=click.FloatRange(min=0),
            default=None,
            help="Politeness interval between queries, in seconds.",
        ),
        click.option(
            "--headed", is_flag=True, help="Show the browser window."
        ),
        click.option("-v", "--verbose", is_flag=True, help="Verbose logging."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
@click.version_option(package_name="cepcollector")
def cli() -> None:
    """cepcollector: postal-address collection pipeline."""


@cli.command("range")
@click.argument("start")
@click.argument("end")
@click.option(
    "--max-results",
    type=click.IntRange(min=1),
    default=100,
    show_default=True,
    help="Maximum number of codes to query.",
)
@click.option(
    "--region",
    default=None,
    help="Region stamped on records whose page shows none.",
)
@walk_options
def range_command(
    start: str,
    end: str,
    max_results: int,
    region: str | None,
    dataset: str,
    config_path: str | None,
    delay: float | None,
    headed: bool,
    verbose: bool,
) -> None:
    """Query every postal code from START to END inclusive.

    \b
    Examples:
        cepcollector range 38400-000 38400-999
        cepcollector range 38400000 38400100 --max-results 20 --delay 5
    """
    _configure_logging(verbose)
    settings = _load_settings(config_path, delay, headed)
    try:
        walk = RangeWalk(
            start_code=start,
            end_code=end,
            max_results=max_results,
            region=region,
        )
    except ValidationError as e:
        raise click.BadParameter(_first_error(e)) from e

    _finish(_run_walk(walk, dataset, settings))


@cli.command("locality")
@click.argument("city")
@click.option(
    "--region",
    default="MG",
    show_default=True,
    help="Two-letter region code.",
)
@click.option(
    "--max-results",
    type=click.IntRange(min=1),
    default=500,
    show_default=True,
    help="Maximum number of records to collect.",
)
@walk_options
def locality_command(
    city: str,
    region: str,
    max_results: int,
    dataset: str,
    config_path: str | None,
    delay: float | None,
    headed: bool,
    verbose: bool,
) -> None:
    """Collect every street listed for CITY."""
    _configure_logging(verbose)
    settings = _load_settings(config_path, delay, headed)
    try:
        walk = LocalityWalk(city=city, region=region, max_results=max_results)
    except ValidationError as e:
        raise click.BadParameter(_first_error(e)) from e

    _finish(_run_walk(walk, dataset, settings))


@cli.command("import")
@click.argument("source", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--dataset",
    type=click.Path(dir_okay=False),
    default=DEFAULT_DATASET,
    show_default=True,
    help="Canonical dataset file.",
)
@click.option("-v", "--verbose", is_flag=True, help="Verbose logging.")
def import_command(source: str, dataset: str, verbose: bool) -> None:
    """Merge records from a JSON or CSV file into the dataset."""
    _configure_logging(verbose)
    _finish(import_batch(source, dataset))


@cli.command("stats")
@click.option(
    "--dataset",
    type=click.Path(dir_okay=False),
    default=DEFAULT_DATASET,
    show_default=True,
    help="Canonical dataset file.",
)
def stats_command(dataset: str) -> None:
    """Show record counts per region."""
    try:
        records = DatasetStore(dataset).load()
    except MergeIOError as e:
        raise click.ClickException(e.message) from e

    stats = {
        "total": len(records),
        "cities": len({(r.region, r.city) for r in records}),
        "regions": region_counts(records),
    }
    click.echo(json.dumps(stats, ensure_ascii=False, indent=2))


def _first_error(error: ValidationError) -> str:
    first = error.errors()[0]
    field_name = ".".join(str(part) for part in first["loc"])
    return f"{field_name}: {first['msg']}" if field_name else first["msg"]


def main() -> None:
    """Entry point for the ``cepcollector`` console script."""
    cli()
