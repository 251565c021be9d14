"""Run wiring: browser session, walk, merge, summary.

run_pipeline() is the single entry point for a collection run. It opens
one browser session, walks the requested keys, merges the collected batch
into the canonical dataset once, and reports a RunSummary. Fatal errors
are reported in the summary rather than raised:

- FatalInitError: the session could not be created; the dataset is not
  touched at all.
- MergeIOError: the dataset could not be read or written; the atomic write
  leaves the previous file in place.

import_batch() merges records from a JSON or CSV file through the same
normalizer and merge engine, without a browser.
"""

from __future__ import annotations

import asyncio
import csv
import json
import logging
import time
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from pathlib import Path
from typing import Any

from cepcollector.common.exceptions import (
    CollectorException,
    FatalInitError,
    MergeIOError,
)
from cepcollector.common.normalizer import normalize
from cepcollector.common.settings import CollectorSettings
from cepcollector.data_types import (
    AddressRecord,
    RawFields,
    Rejected,
    RunStatus,
    RunSummary,
    WalkRequest,
)
from cepcollector.dataset import DatasetStore, MergeResult
from cepcollector.driver.playwright_driver import BrowserSession
from cepcollector.driver.rate_limiter import PolitenessLimiter
from cepcollector.driver.walker import Extractor, RangeWalker

logger = logging.getLogger(__name__)

SessionFactory = Callable[
    [CollectorSettings], AbstractAsyncContextManager[Extractor]
]

# Dataset field names accepted in import files, mapped to record fields.
IMPORT_FIELDS: dict[str, str] = {
    "cep": "code",
    "logradouro": "street",
    "bairro": "neighborhood",
    "cidade": "city",
    "estado": "region",
    "localidade": "locality",
    "code": "code",
    "street": "street",
    "neighborhood": "neighborhood",
    "city": "city",
    "region": "region",
    "locality": "locality",
}


def _summary(
    mode: str,
    status: RunStatus,
    started: float,
    walker: RangeWalker | None = None,
    merge: MergeResult | None = None,
    error: str | None = None,
) -> RunSummary:
    return RunSummary(
        mode=mode,
        status=status,
        processed=walker.processed if walker else 0,
        found=walker.found if walker else 0,
        failed=walker.failed if walker else 0,
        rejected=walker.rejected if walker else 0,
        added=merge.added if merge else 0,
        duplicates=merge.duplicates if merge else 0,
        new_regions=merge.new_regions if merge else (),
        elapsed_seconds=time.monotonic() - started,
        error=error,
    )


async def run_pipeline(
    walk: WalkRequest,
    dataset_path: Path | str,
    settings: CollectorSettings | None = None,
    session_factory: SessionFactory | None = None,
    stop_event: asyncio.Event | None = None,
    limiter: PolitenessLimiter | None = None,
) -> RunSummary:
    """Collect records for *walk* and merge them into the dataset.

    Args:
        walk: What to query (RangeWalk or LocalityWalk).
        dataset_path: Canonical dataset file.
        settings: Collector settings; defaults target the Correios site.
        session_factory: Callable returning an async context manager that
            yields an extractor. Defaults to BrowserSession.open.
        stop_event: When set, the walk stops at the next politeness
            boundary and nothing is merged.
        limiter: Politeness limiter override.

    Returns:
        The RunSummary for the run.
    """
    settings = settings or CollectorSettings()
    factory = session_factory or BrowserSession.open
    started = time.monotonic()
    walker: RangeWalker | None = None

    logger.info(f"Starting {walk.mode} run into {dataset_path}")
    try:
        async with factory(settings) as session:
            walker = RangeWalker(session, settings, stop_event, limiter)
            records = await walker.walk(walk)
    except FatalInitError as e:
        logger.error(f"Run aborted: {e.message}")
        return _summary(
            walk.mode, RunStatus.FAILED, started, walker, error=e.message
        )

    if walker.cancelled:
        logger.warning(
            f"Run cancelled after {walker.processed} queries; "
            f"{len(records)} collected records discarded"
        )
        return _summary(walk.mode, RunStatus.CANCELLED, started, walker)

    try:
        merge = DatasetStore(dataset_path).merge_batch(records)
    except MergeIOError as e:
        logger.error(f"Merge failed: {e.message}")
        return _summary(
            walk.mode, RunStatus.FAILED, started, walker, error=e.message
        )

    summary = _summary(walk.mode, RunStatus.COMPLETED, started, walker, merge)
    logger.info(
        f"Run completed: {summary.processed} processed, {summary.found} found, "
        f"{summary.failed} failed, {summary.added} added"
    )
    return summary


# =============================================================================
# Import from files
# =============================================================================


def read_import_rows(source: Path) -> list[Any]:
    """Read raw rows from a JSON (array or object) or CSV file.

    Raises:
        CollectorException: If the file cannot be read or parsed.
    """
    try:
        text = source.read_text(encoding="utf-8-sig")
    except OSError as e:
        raise CollectorException(
            f"Could not read import file: {e}", {"path": str(source)}
        ) from e

    if source.suffix.lower() == ".csv":
        try:
            return list(csv.DictReader(text.splitlines()))
        except csv.Error as e:
            raise CollectorException(
                f"Invalid CSV: {e}", {"path": str(source)}
            ) from e

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise CollectorException(
            f"Invalid JSON: {e}", {"path": str(source)}
        ) from e
    return data if isinstance(data, list) else [data]


def _raw_fields(row: dict[str, Any]) -> RawFields:
    fields: RawFields = {}
    for key, value in row.items():
        field_name = IMPORT_FIELDS.get(str(key).strip().lower())
        if field_name and value is not None and field_name not in fields:
            fields[field_name] = str(value)
    return fields


def import_batch(source: Path | str, dataset_path: Path | str) -> RunSummary:
    """Normalize the rows of *source* and merge them into the dataset.

    Returns:
        A RunSummary with mode "import"; processed counts rows read.
    """
    source = Path(source)
    started = time.monotonic()

    def failed(error: str, **counts: int) -> RunSummary:
        return RunSummary(
            mode="import",
            status=RunStatus.FAILED,
            elapsed_seconds=time.monotonic() - started,
            error=error,
            **counts,
        )

    try:
        rows = read_import_rows(source)
    except CollectorException as e:
        logger.error(f"Import aborted: {e.message}")
        return failed(e.message)

    records: list[AddressRecord] = []
    rejected = 0
    for index, row in enumerate(rows):
        if not isinstance(row, dict):
            rejected += 1
            logger.warning(f"Skipping non-object row {index} in {source}")
            continue
        outcome = normalize(_raw_fields(row))
        if isinstance(outcome, Rejected):
            rejected += 1
            logger.warning(f"Rejected row {index} in {source}: {outcome.reason}")
            continue
        records.append(outcome)

    counts = {
        "processed": len(rows),
        "found": len(records),
        "rejected": rejected,
    }
    try:
        merge = DatasetStore(dataset_path).merge_batch(records)
    except MergeIOError as e:
        logger.error(f"Merge failed: {e.message}")
        return failed(e.message, **counts)

    return RunSummary(
        mode="import",
        status=RunStatus.COMPLETED,
        added=merge.added,
        duplicates=merge.duplicates,
        new_regions=merge.new_regions,
        elapsed_seconds=time.monotonic() - started,
        **counts,
    )
