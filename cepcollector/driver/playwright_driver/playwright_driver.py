"""Playwright browser session for the Correios search forms.

The session keeps step logic away from live browser objects:

1. Drive the form in a real browser (fill, select, click)
2. Serialize the rendered DOM to HTML
3. Parse the snapshot with lxml (see cepcollector.common.page_parser)
4. Report a tagged ExtractionResult

Key features:
- One browser context per session, opened and torn down by
  BrowserSession.open() on every exit path
- One fresh page per postal-code query, closed before extract() returns
- One page per locality dialogue, kept open so that each later result
  page is a single "next" click away
- Exactly one query in flight per session
- Selector timeouts and navigation errors become Failed results; only a
  session that cannot create pages at all raises (FatalInitError)
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    async_playwright,
)
from playwright.async_api import (
    Error as PlaywrightError,
)
from playwright.async_api import (
    TimeoutError as PlaywrightTimeoutError,
)
from typing_extensions import assert_never

from cepcollector.common.exceptions import (
    FatalInitError,
    MalformedResultException,
    NavigationException,
    SelectorTimeoutException,
)
from cepcollector.common.page_parser import (
    extract_address,
    extract_address_list,
    has_street_and_city,
)
from cepcollector.common.settings import CollectorSettings
from cepcollector.data_types import (
    ExtractionResult,
    Failed,
    FailureReason,
    Found,
    LocalityKey,
    NotFound,
    PostalCodeKey,
    QueryKey,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable

logger = logging.getLogger(__name__)


@dataclass
class _LocalityDialogue:
    """An open locality listing and the result page it currently shows."""

    page: Page
    city: str
    region: str
    page_number: int = 1

    def continues_with(self, key: LocalityKey) -> bool:
        return (
            key.city == self.city
            and key.region == self.region
            and key.page == self.page_number + 1
        )


class BrowserSession:
    """Playwright-backed extractor for postal-code and locality queries.

    Args:
        browser_context: Playwright browser context to open pages in.
        settings: Collector settings (URLs, selectors, timeouts, labels).

    Example:
        async with BrowserSession.open(settings) as session:
            result = await session.extract(PostalCodeKey("38400-100"))
    """

    def __init__(
        self,
        browser_context: BrowserContext,
        settings: CollectorSettings | None = None,
    ) -> None:
        self.browser_context = browser_context
        self.settings = settings or CollectorSettings()
        # One query in flight per session
        self._lock = asyncio.Lock()
        self._dialogue: _LocalityDialogue | None = None

    @classmethod
    @asynccontextmanager
    async def open(
        cls, settings: CollectorSettings | None = None
    ) -> AsyncIterator[BrowserSession]:
        """Open a browser session as an async context manager.

        Starts Playwright, launches the configured browser and creates one
        context. Context, browser and Playwright are closed in reverse order
        however the block exits.

        Raises:
            FatalInitError: If Playwright, the browser or the context cannot
                be started.
        """
        settings = settings or CollectorSettings()

        try:
            playwright = await async_playwright().start()
        except (PlaywrightError, OSError) as e:
            raise FatalInitError(f"Could not start Playwright: {e}") from e

        try:
            browser_launcher = getattr(playwright, settings.browser_type)
            try:
                browser: Browser = await browser_launcher.launch(
                    headless=settings.headless
                )
            except PlaywrightError as e:
                raise FatalInitError(
                    f"Could not launch {settings.browser_type}: {e}",
                    {"browser_type": settings.browser_type},
                ) from e

            try:
                context_kwargs: dict[str, Any] = {
                    "viewport": settings.viewport,
                    "locale": settings.locale,
                    "timezone_id": settings.timezone_id,
                }
                if settings.user_agent:
                    context_kwargs["user_agent"] = settings.user_agent

                try:
                    browser_context = await browser.new_context(
                        **context_kwargs
                    )
                except PlaywrightError as e:
                    raise FatalInitError(
                        f"Could not create browser context: {e}"
                    ) from e

                try:
                    browser_context.set_default_navigation_timeout(
                        settings.navigation_timeout_ms
                    )
                    logger.info(
                        f"Browser session opened ({settings.browser_type}, "
                        f"headless={settings.headless})"
                    )
                    session = cls(browser_context, settings)
                    try:
                        yield session
                    finally:
                        await session.close_dialogue()

                finally:
                    await browser_context.close()

            finally:
                await browser.close()

        finally:
            await playwright.stop()
            logger.info("Browser session closed")

    async def extract(self, key: QueryKey) -> ExtractionResult:
        """Run one query and report its outcome.

        Never raises for per-query problems; those come back as NotFound or
        Failed. A postal-code page is closed on every exit path. A locality
        page stays open while its listing keeps yielding rows, and is closed
        as soon as the listing ends, a query fails or another query starts.

        Raises:
            FatalInitError: If the session cannot open a page at all.
        """
        async with self._lock:
            if isinstance(key, PostalCodeKey):
                await self.close_dialogue()
                page = await self._new_page()
                try:
                    return await self._guarded(
                        key, self._extract_postal_code(page, key)
                    )
                finally:
                    await self._close_page(page)

            elif isinstance(key, LocalityKey):
                result = await self._guarded(key, self._extract_locality(key))
                if not isinstance(result, Found):
                    await self.close_dialogue()
                return result

            else:
                assert_never(key)

    async def close_dialogue(self) -> None:
        """Close the open locality listing page, if any."""
        dialogue, self._dialogue = self._dialogue, None
        if dialogue is not None:
            await self._close_page(dialogue.page)

    async def _guarded(
        self, key: QueryKey, steps: Awaitable[ExtractionResult]
    ) -> ExtractionResult:
        """Await the query steps, mapping per-query errors to outcomes."""
        try:
            return await steps

        except FatalInitError:
            raise

        except SelectorTimeoutException as e:
            logger.warning(f"Selector timeout for {key}: {e.message}")
            return Failed(FailureReason.SELECTOR_TIMEOUT, e.message)

        except NavigationException as e:
            logger.warning(f"Navigation failed for {key}: {e.message}")
            return Failed(FailureReason.NAVIGATION_ERROR, e.message)

        except MalformedResultException as e:
            logger.debug(f"Malformed result page for {key}: {e.message}")
            return NotFound(e.message)

        except PlaywrightTimeoutError as e:
            logger.warning(f"Playwright timeout for {key}: {e}")
            return Failed(FailureReason.SELECTOR_TIMEOUT, str(e))

        except PlaywrightError as e:
            logger.warning(f"Playwright error for {key}: {e}")
            return Failed(FailureReason.NAVIGATION_ERROR, str(e))

        except Exception as e:
            logger.error(
                f"Unexpected error extracting {key}: {e}", exc_info=True
            )
            return Failed(FailureReason.UNEXPECTED_PAGE, str(e))

    async def _extract_postal_code(
        self, page: Page, key: PostalCodeKey
    ) -> ExtractionResult:
        """Direct lookup: fill the code field, submit, read the result."""
        settings = self.settings
        url = settings.postal_code_url

        await self._goto(page, url)
        await self._wait_for(page, settings.postal_code_input_selector, url)
        await page.fill(settings.postal_code_input_selector, key.code)
        await self._click(page, settings.submit_selector, url)
        await self._await_result(page)

        content = await page.content()
        fields = extract_address(content, settings.labels, page.url)
        if not has_street_and_city(fields):
            return NotFound(f"No address listed for {key.code}")

        fields.setdefault("code", key.code)
        return Found((fields,))

    async def _extract_locality(self, key: LocalityKey) -> ExtractionResult:
        """Locality dialogue: region, then letter index / city, then pages.

        Page 1 submits the form on a new page. Page N+1 is one click on the
        next-page control of the dialogue left open at page N.
        """
        dialogue = self._dialogue
        if dialogue is not None and dialogue.continues_with(key):
            return await self._next_locality_page(dialogue, key)

        await self.close_dialogue()
        if key.page != 1:
            return Failed(
                FailureReason.UNEXPECTED_PAGE,
                f"No open listing at page {key.page - 1} for {key}",
            )

        settings = self.settings
        url = settings.locality_url
        page = await self._new_page()
        self._dialogue = _LocalityDialogue(page, key.city, key.region)

        await self._goto(page, url)
        await self._wait_for(page, settings.region_select_selector, url)
        await page.select_option(settings.region_select_selector, key.region)

        if settings.letter_link_selector and key.letter:
            letter_selector = settings.letter_link_selector.format(
                letter=key.letter
            )
            await self._click(page, letter_selector, url)

        await self._wait_for(page, settings.locality_input_selector, url)
        await page.fill(settings.locality_input_selector, key.city)
        await self._click(page, settings.submit_selector, url)
        await self._await_result(page)

        return await self._read_locality_page(page, key)

    async def _next_locality_page(
        self, dialogue: _LocalityDialogue, key: LocalityKey
    ) -> ExtractionResult:
        page = dialogue.page
        next_control = await page.query_selector(
            self.settings.next_page_selector
        )
        if next_control is None:
            return NotFound(f"No result page {key.page} for {key}")

        await next_control.click()
        await self._settle(page)
        dialogue.page_number = key.page
        return await self._read_locality_page(page, key)

    async def _read_locality_page(
        self, page: Page, key: LocalityKey
    ) -> ExtractionResult:
        settings = self.settings
        content = await page.content()
        rows = extract_address_list(
            content, settings.labels, settings.locality_columns, page.url
        )
        if not rows:
            return NotFound(f"No addresses listed for {key}")
        return Found(tuple(rows))

    async def _new_page(self) -> Page:
        try:
            return await self.browser_context.new_page()
        except PlaywrightError as e:
            raise FatalInitError(f"Could not open a browser page: {e}") from e

    async def _close_page(self, page: Page) -> None:
        try:
            await page.close()
        except PlaywrightError as e:
            logger.warning(f"Failed to close page: {e}")

    async def _goto(self, page: Page, url: str) -> None:
        try:
            await page.goto(url, wait_until="domcontentloaded")
        except PlaywrightTimeoutError as e:
            raise NavigationException(
                f"Timed out loading {url}", url
            ) from e
        except PlaywrightError as e:
            raise NavigationException(f"Could not load {url}: {e}", url) from e

    async def _wait_for(self, page: Page, selector: str, url: str) -> None:
        timeout = self.settings.selector_timeout_ms
        try:
            await page.wait_for_selector(selector, timeout=timeout)
        except PlaywrightTimeoutError as e:
            raise SelectorTimeoutException(selector, timeout, url) from e

    async def _click(self, page: Page, selector: str, url: str) -> None:
        await self._wait_for(page, selector, url)
        await page.click(selector)

    async def _await_result(self, page: Page) -> None:
        """Wait for the result table; a timeout means snapshot as-is."""
        try:
            await page.wait_for_selector(
                self.settings.result_selector,
                timeout=self.settings.result_timeout_ms,
            )
        except PlaywrightTimeoutError:
            logger.debug(
                f"Result selector {self.settings.result_selector} did not "
                f"appear within {self.settings.result_timeout_ms:.0f}ms"
            )

    async def _settle(self, page: Page) -> None:
        """Wait for the page to go network-idle, bounded by the result timeout."""
        try:
            await page.wait_for_load_state(
                "networkidle", timeout=self.settings.result_timeout_ms
            )
        except PlaywrightTimeoutError:
            logger.debug("Page did not reach network idle; snapshotting as-is")
