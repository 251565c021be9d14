"""Politeness interval between outbound queries.

Provides PolitenessLimiter, a pyrate_limiter Limiter over an in-memory
bucket holding a single ``Rate(1, interval)``: at most one query may start
in any window of the politeness interval. The first query goes out
immediately; each later one waits until the window has passed, whatever
the previous outcome was.
"""

from __future__ import annotations

import asyncio
import logging

from pyrate_limiter import BucketAsyncWrapper, InMemoryBucket, Limiter, Rate

logger = logging.getLogger(__name__)


class PolitenessLimiter:
    """Enforces a minimum delay between consecutive queries.

    The wait can be cut short by a stop event, which lets a run be aborted
    at the politeness boundary.

    Example:
        limiter = PolitenessLimiter(interval=2.0)
        for key in keys:
            if not await limiter.acquire(stop_event):
                break
            await session.extract(key)
    """

    def __init__(self, interval: float, name: str = "query") -> None:
        """Initialize the limiter.

        Args:
            interval: Minimum seconds between two acquisitions. Zero disables
                the limiter.
            name: Item name recorded in the bucket.
        """
        self.interval = interval
        self.name = name
        self._rates: list[Rate] = []
        if interval > 0:
            self._rates = [Rate(1, max(1, round(interval * 1000)))]
        self._limiter: Limiter | None = None

    @property
    def rates(self) -> list[Rate]:
        return list(self._rates)

    def _get_limiter(self) -> Limiter:
        # Built on first use so the bucket's leak task binds to the running loop
        if self._limiter is None:
            bucket = BucketAsyncWrapper(InMemoryBucket(self._rates))
            self._limiter = Limiter(
                bucket,
                raise_when_fail=False,
                max_delay=self._rates[0].interval * 2,
            )
            logger.info(
                "Politeness limiter initialized: "
                + ", ".join(f"{r.limit}/{r.interval}ms" for r in self._rates)
            )
        return self._limiter

    async def _take_token(self) -> bool:
        limiter = self._get_limiter()
        while not await limiter.try_acquire_async(name=self.name, weight=1):
            logger.debug(f"Politeness delay for {self.name}: retrying")
        return True

    async def acquire(self, stop_event: asyncio.Event | None = None) -> bool:
        """Wait until the next query may be issued.

        Args:
            stop_event: Optional event; when set, the wait ends early.

        Returns:
            True when the caller may proceed, False if stop_event was set.
        """
        if stop_event is not None and stop_event.is_set():
            return False
        if not self._rates:
            return True
        if stop_event is None:
            return await self._take_token()

        token = asyncio.ensure_future(self._take_token())
        stopped = asyncio.ensure_future(stop_event.wait())
        done, pending = await asyncio.wait(
            {token, stopped}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if stopped in done:
            logger.debug("Politeness wait interrupted by stop event")
            return False
        return token.result()
