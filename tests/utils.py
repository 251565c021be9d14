"""Test utilities for the collector tests.

This module provides fakes standing in for Playwright objects and for a
whole browser session, so the driver, walker and pipeline can be tested
without launching a browser.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from typing import Any

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from cepcollector.common.exceptions import FatalInitError
from cepcollector.common.settings import CollectorSettings
from cepcollector.data_types import (
    ExtractionResult,
    Found,
    NotFound,
    PostalCodeKey,
    QueryKey,
)
from cepcollector.driver.rate_limiter import PolitenessLimiter

logger = logging.getLogger(__name__)


# =============================================================================
# Playwright fakes
# =============================================================================


class FakeElement:
    """Element handle returned by FakePage.query_selector."""

    def __init__(self, page: "FakePage") -> None:
        self.page = page

    async def click(self) -> None:
        self.page.calls.append(("click_next",))
        self.page.page_index += 1


class FakePage:
    """Scripted stand-in for a Playwright Page.

    Args:
        pages: HTML snapshots; content() returns the one for the current
            result page (advanced by clicking the next-page control).
        missing_selectors: Selectors whose wait times out.
        goto_error: Exception raised by goto().
        content_error: Exception raised by content().
        next_selector: Selector of the next-page control.
    """

    def __init__(
        self,
        pages: Iterable[str] = ("<html></html>",),
        missing_selectors: Iterable[str] = (),
        goto_error: Exception | None = None,
        content_error: Exception | None = None,
        next_selector: str = "#btn_proximo",
    ) -> None:
        self.pages = list(pages)
        self.missing_selectors = set(missing_selectors)
        self.goto_error = goto_error
        self.content_error = content_error
        self.next_selector = next_selector
        self.page_index = 0
        self.url = "about:blank"
        self.closed = False
        self.calls: list[tuple[Any, ...]] = []

    async def goto(self, url: str, wait_until: str | None = None) -> None:
        self.calls.append(("goto", url))
        if self.goto_error is not None:
            raise self.goto_error
        self.url = url

    async def wait_for_selector(
        self, selector: str, timeout: float | None = None
    ) -> None:
        self.calls.append(("wait_for_selector", selector))
        if selector in self.missing_selectors:
            raise PlaywrightTimeoutError(
                f"Timeout {timeout}ms exceeded waiting for {selector}"
            )

    async def wait_for_load_state(
        self, state: str | None = None, timeout: float | None = None
    ) -> None:
        self.calls.append(("wait_for_load_state", state))

    async def fill(self, selector: str, value: str) -> None:
        self.calls.append(("fill", selector, value))

    async def click(self, selector: str) -> None:
        self.calls.append(("click", selector))

    async def select_option(self, selector: str, value: str) -> None:
        self.calls.append(("select_option", selector, value))

    async def query_selector(self, selector: str) -> FakeElement | None:
        self.calls.append(("query_selector", selector))
        if (
            selector == self.next_selector
            and self.page_index < len(self.pages) - 1
        ):
            return FakeElement(self)
        return None

    async def content(self) -> str:
        if self.content_error is not None:
            raise self.content_error
        return self.pages[self.page_index]

    async def close(self) -> None:
        self.closed = True


class FakeContext:
    """Stand-in for a Playwright BrowserContext handing out FakePages.

    Args:
        page_factory: Called for every new_page(); returns the FakePage.
        new_page_error: Exception raised by new_page() instead.
    """

    def __init__(
        self,
        page_factory: Callable[[], FakePage] = FakePage,
        new_page_error: Exception | None = None,
    ) -> None:
        self.page_factory = page_factory
        self.new_page_error = new_page_error
        self.pages: list[FakePage] = []

    async def new_page(self) -> FakePage:
        if self.new_page_error is not None:
            raise self.new_page_error
        page = self.page_factory()
        self.pages.append(page)
        return page


# =============================================================================
# Session fakes
# =============================================================================


def found_row(
    code: str,
    street: str = "Rua Teste",
    city: str = "Uberlândia/MG",
    neighborhood: str = "Centro",
) -> dict[str, str]:
    """A raw extracted row as the browser session reports it."""
    return {
        "code": code,
        "street": street,
        "neighborhood": neighborhood,
        "city": city,
    }


class FakeExtractor:
    """Scripted extractor recording every key it is asked for.

    Args:
        results: Maps a key to its result; missing keys get *default*.
        default: Result for unscripted keys; by default every postal code
            is found with a generic street.
        fatal_on_call: 1-based call number that raises FatalInitError.

    Attributes:
        calls: Keys in the order they were extracted.
        call_times: time.monotonic() at each call.
    """

    def __init__(
        self,
        results: dict[QueryKey, ExtractionResult] | None = None,
        default: ExtractionResult | None = None,
        fatal_on_call: int | None = None,
    ) -> None:
        self.results = results or {}
        self.default = default
        self.fatal_on_call = fatal_on_call
        self.calls: list[QueryKey] = []
        self.call_times: list[float] = []

    async def extract(self, key: QueryKey) -> ExtractionResult:
        self.call_times.append(time.monotonic())
        if (
            self.fatal_on_call is not None
            and len(self.calls) + 1 == self.fatal_on_call
        ):
            raise FatalInitError("Browser crashed")
        self.calls.append(key)

        if key in self.results:
            return self.results[key]
        if self.default is not None:
            return self.default
        if isinstance(key, PostalCodeKey):
            return Found((found_row(key.code),))
        return NotFound()


class FakeSessionFactory:
    """Session factory yielding a FakeExtractor, tracking its lifecycle.

    Args:
        extractor: The extractor to hand out.
        open_error: Exception raised instead of opening the session.
    """

    def __init__(
        self,
        extractor: FakeExtractor | None = None,
        open_error: Exception | None = None,
    ) -> None:
        self.extractor = extractor or FakeExtractor()
        self.open_error = open_error
        self.opened = False
        self.closed = False

    @asynccontextmanager
    async def __call__(
        self, settings: CollectorSettings
    ) -> AsyncIterator[FakeExtractor]:
        if self.open_error is not None:
            raise self.open_error
        self.opened = True
        try:
            yield self.extractor
        finally:
            self.closed = True


class CountingLimiter(PolitenessLimiter):
    """PolitenessLimiter that counts the acquisitions it granted."""

    def __init__(self, interval: float) -> None:
        super().__init__(interval)
        self.acquired = 0

    async def acquire(self, stop_event: asyncio.Event | None = None) -> bool:
        allowed = await super().acquire(stop_event)
        if allowed:
            self.acquired += 1
        return allowed
