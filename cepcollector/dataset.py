"""Canonical dataset storage and the dedup/merge engine.

The canonical dataset is a single JSON array of address objects, sorted by
region, city and street, holding at most one entry per postal code. It is
read fully and written fully; writes go through a temporary file in the
same directory that is renamed over the target, so a reader never sees a
partially written file.

The merge engine is the only writer and runs once per pipeline run, after
the whole batch is collected.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from cepcollector.common.exceptions import MergeIOError
from cepcollector.data_types import AddressRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeResult:
    """Outcome of merging one batch into the dataset.

    Attributes:
        records: The merged dataset, sorted.
        added: Incoming records appended to the dataset.
        duplicates: Incoming records discarded because the code existed.
        new_regions: Regions present after the merge but not before, sorted.
    """

    records: tuple[AddressRecord, ...]
    added: int
    duplicates: int
    new_regions: tuple[str, ...] = ()


def merge_records(
    existing: Iterable[AddressRecord], incoming: Iterable[AddressRecord]
) -> MergeResult:
    """Merge *incoming* into *existing*, keeping one record per code.

    Codes are compared in their digit-only form. On a collision the existing
    record is kept and the incoming one counted as a duplicate; a code that
    repeats inside *incoming* is a duplicate the second time. The result is
    sorted by ``(region, city, street)``.
    """
    merged = list(existing)
    seen = {record.code_key for record in merged}
    regions_before = {record.region for record in merged if record.region}

    added = 0
    duplicates = 0
    for record in incoming:
        if record.code_key in seen:
            duplicates += 1
            continue
        seen.add(record.code_key)
        merged.append(record)
        added += 1

    merged.sort(key=lambda record: record.sort_key)
    regions_after = {record.region for record in merged if record.region}

    return MergeResult(
        records=tuple(merged),
        added=added,
        duplicates=duplicates,
        new_regions=tuple(sorted(regions_after - regions_before)),
    )


def region_counts(records: Iterable[AddressRecord]) -> dict[str, int]:
    """Number of records per region, ordered by region."""
    counts = Counter(record.region for record in records)
    return dict(sorted(counts.items()))


class DatasetStore:
    """Reads and atomically rewrites the canonical dataset file.

    Args:
        path: Location of the dataset JSON file.

    Example:
        store = DatasetStore(Path("public/ceps.json"))
        result = store.merge_batch(records)
        print(result.added, result.duplicates)
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def load(self) -> list[AddressRecord]:
        """Read every record in the dataset.

        A missing or blank file is an empty dataset.

        Raises:
            MergeIOError: If the file cannot be read or does not hold a JSON
                array of valid address objects.
        """
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info(f"Dataset {self.path} does not exist yet; starting empty")
            return []
        except OSError as e:
            raise MergeIOError(
                f"Could not read dataset: {e}", str(self.path)
            ) from e

        if not text.strip():
            return []

        try:
            entries = json.loads(text)
        except json.JSONDecodeError as e:
            raise MergeIOError(
                f"Dataset is not valid JSON: {e}", str(self.path)
            ) from e

        if not isinstance(entries, list):
            raise MergeIOError(
                "Dataset must be a JSON array",
                str(self.path),
                {"found": type(entries).__name__},
            )

        records: list[AddressRecord] = []
        for index, entry in enumerate(entries):
            try:
                records.append(AddressRecord.model_validate(entry))
            except ValidationError as e:
                raise MergeIOError(
                    f"Invalid dataset entry at index {index}",
                    str(self.path),
                    {"errors": e.errors()},
                ) from e
        return records

    def save(self, records: Iterable[AddressRecord]) -> None:
        """Replace the dataset with *records*.

        The content is written to a temporary file in the same directory,
        flushed to disk and renamed over the target.

        Raises:
            MergeIOError: If the file cannot be written. The previous
                dataset is left in place.
        """
        payload = (
            json.dumps(
                [record.to_dataset_dict() for record in records],
                ensure_ascii=False,
                indent=2,
            )
            + "\n"
        )

        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=directory, prefix=f".{self.path.name}.", suffix=".tmp"
            )
        except OSError as e:
            raise MergeIOError(
                f"Could not create temporary dataset file: {e}",
                str(self.path),
            ) from e

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            tmp_path.replace(self.path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise MergeIOError(
                f"Could not write dataset: {e}", str(self.path)
            ) from e

    def merge_batch(self, batch: Iterable[AddressRecord]) -> MergeResult:
        """Load, merge *batch* and save.

        The file is rewritten whenever records were added or the merged
        order differs from the stored one, so an unsorted file comes back
        sorted; otherwise it is left untouched.

        Raises:
            MergeIOError: If the dataset cannot be read or written.
        """
        existing = self.load()
        result = merge_records(existing, batch)
        if result.added:
            self.save(result.records)
            logger.info(
                f"Merged {result.added} new records into {self.path} "
                f"({result.duplicates} duplicates, "
                f"{len(result.records)} total)"
            )
        elif list(result.records) != existing:
            self.save(result.records)
            logger.info(
                f"No new records for {self.path}; re-sorted "
                f"{len(result.records)} records "
                f"({result.duplicates} duplicates)"
            )
        else:
            logger.info(
                f"No new records for {self.path} "
                f"({result.duplicates} duplicates)"
            )
        if result.new_regions:
            logger.info(f"New regions: {', '.join(result.new_regions)}")
        return result
