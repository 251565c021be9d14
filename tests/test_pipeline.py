"""Tests for run wiring: session, walk, merge and the RunSummary."""

import asyncio
import csv
import json

import pytest

from cepcollector.common.exceptions import FatalInitError
from cepcollector.data_types import (
    Found,
    LocalityWalk,
    PostalCodeKey,
    RangeWalk,
    RunStatus,
)
from cepcollector.dataset import DatasetStore
from cepcollector.pipeline import import_batch, run_pipeline
from tests.utils import FakeExtractor, FakeSessionFactory, found_row

RANGE = RangeWalk(start_code="38400-000", end_code="38400-005", max_results=3)


class TestRunPipeline:
    @pytest.mark.asyncio
    async def test_completed_run_merges_batch(
        self, dataset_path, fast_settings
    ):
        factory = FakeSessionFactory()

        summary = await run_pipeline(
            RANGE, dataset_path, fast_settings, session_factory=factory
        )

        assert summary.status is RunStatus.COMPLETED
        assert summary.mode == "range"
        assert summary.ok
        assert summary.processed == 3
        assert summary.found == 3
        assert summary.added == 3
        assert summary.new_regions == ("MG",)
        assert summary.elapsed_seconds >= 0
        assert factory.opened and factory.closed
        assert [r.code for r in DatasetStore(dataset_path).load()] == [
            "38400-000",
            "38400-001",
            "38400-002",
        ]

    @pytest.mark.asyncio
    async def test_second_run_finds_only_duplicates(
        self, dataset_path, fast_settings
    ):
        await run_pipeline(
            RANGE,
            dataset_path,
            fast_settings,
            session_factory=FakeSessionFactory(),
        )

        summary = await run_pipeline(
            RANGE,
            dataset_path,
            fast_settings,
            session_factory=FakeSessionFactory(),
        )

        assert summary.added == 0
        assert summary.duplicates == 3
        assert summary.new_regions == ()

    @pytest.mark.asyncio
    async def test_fatal_error_on_first_call_leaves_dataset_untouched(
        self, dataset_path, fast_settings, sample_records
    ):
        DatasetStore(dataset_path).save(sample_records)
        before = dataset_path.read_bytes()
        factory = FakeSessionFactory(FakeExtractor(fatal_on_call=1))

        summary = await run_pipeline(
            RANGE, dataset_path, fast_settings, session_factory=factory
        )

        assert summary.status is RunStatus.FAILED
        assert summary.processed == 0
        assert summary.found == 0
        assert not summary.ok
        assert summary.error == "Browser crashed"
        assert dataset_path.read_bytes() == before
        assert factory.closed

    @pytest.mark.asyncio
    async def test_fatal_error_mid_walk_keeps_counters(
        self, dataset_path, fast_settings
    ):
        factory = FakeSessionFactory(FakeExtractor(fatal_on_call=3))

        summary = await run_pipeline(
            RANGE, dataset_path, fast_settings, session_factory=factory
        )

        assert summary.status is RunStatus.FAILED
        assert summary.processed == 2
        assert summary.added == 0
        assert not dataset_path.exists()

    @pytest.mark.asyncio
    async def test_session_that_cannot_open(self, dataset_path, fast_settings):
        factory = FakeSessionFactory(
            open_error=FatalInitError("Could not launch chromium")
        )

        summary = await run_pipeline(
            RANGE, dataset_path, fast_settings, session_factory=factory
        )

        assert summary.status is RunStatus.FAILED
        assert summary.processed == 0
        assert "chromium" in summary.error
        assert not dataset_path.exists()

    @pytest.mark.asyncio
    async def test_cancelled_run_does_not_merge(
        self, dataset_path, fast_settings
    ):
        stop_event = asyncio.Event()
        stop_event.set()

        summary = await run_pipeline(
            RANGE,
            dataset_path,
            fast_settings,
            session_factory=FakeSessionFactory(),
            stop_event=stop_event,
        )

        assert summary.status is RunStatus.CANCELLED
        assert not dataset_path.exists()
        assert not summary.ok

    @pytest.mark.asyncio
    async def test_unreadable_dataset_fails_run(
        self, dataset_path, fast_settings
    ):
        dataset_path.parent.mkdir(parents=True)
        dataset_path.write_text("{broken", encoding="utf-8")

        summary = await run_pipeline(
            RANGE,
            dataset_path,
            fast_settings,
            session_factory=FakeSessionFactory(),
        )

        assert summary.status is RunStatus.FAILED
        assert summary.found == 3
        assert summary.added == 0
        assert dataset_path.read_text(encoding="utf-8") == "{broken"

    @pytest.mark.asyncio
    async def test_locality_run(self, dataset_path, fast_settings):
        extractor = FakeExtractor(
            default=Found(
                (
                    found_row("38400-100", city="Uberlândia"),
                    found_row("38400-102", city="Uberlândia", street="Rua B"),
                )
            )
        )

        summary = await run_pipeline(
            LocalityWalk(city="Uberlândia", region="MG", max_results=2),
            dataset_path,
            fast_settings,
            session_factory=FakeSessionFactory(extractor),
        )

        assert summary.mode == "locality"
        assert summary.found == 2
        assert summary.added == 2
        assert len(extractor.calls) == 1

    @pytest.mark.asyncio
    async def test_summary_serializes(self, dataset_path, fast_settings):
        extractor = FakeExtractor(
            results={PostalCodeKey("38400-001"): Found((found_row("bad"),))}
        )

        summary = await run_pipeline(
            RANGE,
            dataset_path,
            fast_settings,
            session_factory=FakeSessionFactory(extractor),
        )

        data = json.loads(summary.to_json())
        assert data["status"] == "completed"
        assert data["rejected"] == 1
        assert data["new_regions"] == ["MG"]


class TestImportBatch:
    def test_imports_json_array(self, tmp_path, dataset_path):
        source = tmp_path / "extractions.json"
        source.write_text(
            json.dumps(
                [
                    {
                        "cep": "38400100",
                        "logradouro": "Avenida Afonso Pena",
                        "bairro": "Centro",
                        "cidade": "Uberlândia",
                        "estado": "MG",
                    },
                    {"cep": "38400102", "logradouro": "", "cidade": "X"},
                ]
            ),
            encoding="utf-8",
        )

        summary = import_batch(source, dataset_path)

        assert summary.mode == "import"
        assert summary.status is RunStatus.COMPLETED
        assert summary.processed == 2
        assert summary.found == 1
        assert summary.rejected == 1
        assert summary.added == 1
        (record,) = DatasetStore(dataset_path).load()
        assert record.code == "38400-100"
        assert record.locality == "Uberlândia/MG"

    def test_imports_single_json_object(self, tmp_path, dataset_path):
        source = tmp_path / "one.json"
        source.write_text(
            json.dumps(
                {
                    "cep": "01310-100",
                    "logradouro": "Avenida Paulista",
                    "cidade": "São Paulo",
                    "estado": "SP",
                }
            ),
            encoding="utf-8",
        )

        summary = import_batch(source, dataset_path)

        assert summary.added == 1
        assert summary.new_regions == ("SP",)

    def test_imports_csv(self, tmp_path, dataset_path):
        source = tmp_path / "extractions.csv"
        with source.open("w", newline="", encoding="utf-8") as handle:
            writer = csv.DictWriter(
                handle,
                fieldnames=["cep", "logradouro", "bairro", "cidade", "estado"],
            )
            writer.writeheader()
            writer.writerow(
                {
                    "cep": "38400-104",
                    "logradouro": "Praça Tubal Vilela",
                    "bairro": "Centro",
                    "cidade": "Uberlândia",
                    "estado": "MG",
                }
            )

        summary = import_batch(source, dataset_path)

        assert summary.added == 1
        assert DatasetStore(dataset_path).load()[0].street == (
            "Praça Tubal Vilela"
        )

    def test_invalid_source_fails(self, tmp_path, dataset_path):
        source = tmp_path / "broken.json"
        source.write_text("[{", encoding="utf-8")

        summary = import_batch(source, dataset_path)

        assert summary.status is RunStatus.FAILED
        assert summary.error
        assert not dataset_path.exists()
