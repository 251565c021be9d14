"""Query-key generation and outcome aggregation.

RangeWalker owns one run's walk over the source site. It generates query
keys (successive postal codes, or successive locality result pages), hands
each to a browser session one at a time with the politeness delay in
between, normalizes every row that comes back and keeps the counters that
end up in the RunSummary.

Per-key failures are logged and skipped; nothing is retried within a run.
A FatalInitError from the session propagates to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from typing_extensions import assert_never

from cepcollector.common import postal_codes
from cepcollector.common.normalizer import normalize
from cepcollector.common.settings import CollectorSettings
from cepcollector.data_types import (
    AddressRecord,
    ExtractionResult,
    Failed,
    Found,
    LocalityKey,
    LocalityWalk,
    NotFound,
    PostalCodeKey,
    QueryKey,
    RangeWalk,
    Rejected,
    WalkRequest,
)
from cepcollector.driver.rate_limiter import PolitenessLimiter

logger = logging.getLogger(__name__)


class Extractor(Protocol):
    """Anything that can answer one query key (BrowserSession or a fake)."""

    async def extract(self, key: QueryKey) -> ExtractionResult: ...


class RangeWalker:
    """Sequential walk over the source site.

    Attributes:
        processed: Query keys that returned a result.
        found: Records that passed normalization.
        failed: Query keys whose extraction failed.
        rejected: Raw rows the normalizer rejected.
        cancelled: True if the stop event ended the walk early.
        records: Accepted records, in the order they were found.

    Example:
        async with BrowserSession.open(settings) as session:
            walker = RangeWalker(session, settings)
            records = await walker.walk(RangeWalk(
                start_code="38400-000", end_code="38400-999", max_results=50,
            ))
    """

    def __init__(
        self,
        session: Extractor,
        settings: CollectorSettings | None = None,
        stop_event: asyncio.Event | None = None,
        limiter: PolitenessLimiter | None = None,
    ) -> None:
        self.session = session
        self.settings = settings or CollectorSettings()
        self.stop_event = stop_event
        self.limiter = limiter or PolitenessLimiter(
            self.settings.politeness_interval
        )

        self.processed = 0
        self.found = 0
        self.failed = 0
        self.rejected = 0
        self.cancelled = False
        self.records: list[AddressRecord] = []

    async def walk(self, request: WalkRequest) -> list[AddressRecord]:
        """Run the walk described by *request* and return accepted records."""
        match request:
            case RangeWalk():
                return await self.walk_range(request)
            case LocalityWalk():
                return await self.walk_locality(request)
            case _:
                assert_never(request)

    async def walk_range(self, request: RangeWalk) -> list[AddressRecord]:
        """Query successive postal codes from start to end inclusive.

        Stops once max_results codes have been attempted or the range is
        exhausted.
        """
        logger.info(
            f"Range walk {request.start_code}..{request.end_code} "
            f"(max {request.max_results})"
        )
        for code in postal_codes.iter_codes(
            request.start_code, request.end_code
        ):
            if self.processed >= request.max_results:
                break

            key = PostalCodeKey(code)
            result = await self._query(key)
            if result is None:
                break
            self._absorb(key, result, request.region)

        return self.records

    async def walk_locality(
        self, request: LocalityWalk
    ) -> list[AddressRecord]:
        """Page through a city's locality listing.

        Stops at the first NotFound page, once max_results records were
        found (surplus rows on the last page are dropped), or after
        max_locality_pages pages.
        """
        logger.info(
            f"Locality walk {request.city}/{request.region} "
            f"(max {request.max_results})"
        )
        for page in range(1, self.settings.max_locality_pages + 1):
            if self.found >= request.max_results:
                break

            key = LocalityKey(request.city, request.region, page)
            result = await self._query(key)
            if result is None:
                break
            self._absorb(key, result, request.region, request.max_results)
            if isinstance(result, NotFound):
                break

        return self.records

    async def _query(self, key: QueryKey) -> ExtractionResult | None:
        """Wait out the politeness delay, then extract; None if cancelled."""
        if not await self.limiter.acquire(self.stop_event):
            logger.info(f"Walk cancelled before {key}")
            self.cancelled = True
            return None
        return await self.session.extract(key)

    def _absorb(
        self,
        key: QueryKey,
        result: ExtractionResult,
        expected_region: str | None,
        limit: int | None = None,
    ) -> None:
        self.processed += 1

        match result:
            case Found(rows=rows):
                for raw in rows:
                    if limit is not None and self.found >= limit:
                        logger.debug(
                            f"Dropping surplus rows for {key}; "
                            f"reached {limit} records"
                        )
                        break
                    outcome = normalize(raw, expected_region)
                    if isinstance(outcome, Rejected):
                        self.rejected += 1
                        logger.warning(
                            f"Rejected row for {key}: {outcome.reason}"
                        )
                        continue
                    self.found += 1
                    self.records.append(outcome)
                    logger.info(
                        f"Found {outcome.code}: {outcome.street}, "
                        f"{outcome.city}/{outcome.region}"
                    )
            case NotFound():
                logger.debug(f"No result for {key}")
            case Failed(reason=reason, detail=detail):
                self.failed += 1
                logger.warning(f"Failed {key} ({reason.value}): {detail}")
            case _:
                assert_never(result)
