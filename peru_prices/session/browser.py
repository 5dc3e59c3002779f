"""Playwright browser session.

The session owns one browser for the whole run. It is connected lazily on
the first fetch: to a Playwright server when the endpoint is a ``ws://``
URL, over CDP when it is an ``http://`` URL, or by launching a local
browser when no endpoint is configured. A disconnected browser is
reconnected on the next fetch.

Every fetch gets its own browser context and page, released in ``finally``
whether the fetch succeeds, fails or is cancelled, so each fetch can be
retried on its own. The snapshot is taken only once the target's wait
conditions hold, after scrolling infinite-scrolling pages to the end.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from playwright.async_api import (
    Browser,
    Error as PlaywrightError,
    Page,
    Playwright,
    Route,
    async_playwright,
)
from playwright.async_api import (
    TimeoutError as PlaywrightTimeoutError,
)
from typing_extensions import assert_never

from peru_prices.common.exceptions import FetchError, FetchErrorKind
from peru_prices.common.pacing import NavigationPacer
from peru_prices.common.selector_utils import playwright_selector
from peru_prices.configuration import BrowserSettings
from peru_prices.data_types import (
    RenderedContent,
    ScrollSettings,
    Target,
    WaitCondition,
    WaitForLoadState,
    WaitForSelector,
    WaitForTimeout,
    WaitForURL,
)
from peru_prices.session.base import (
    DEFAULT_ATTEMPT_TIMEOUT,
    BaseSession,
    classify_status,
)

logger = logging.getLogger(__name__)

_NAVIGATION_MARKERS = (
    "err_name_not_resolved",
    "err_name_resolution_failed",
    "invalid url",
    "err_invalid_url",
    "err_unknown_url_scheme",
    "ns_error_unknown_host",
)

_SCROLL_HEIGHT = "document.body.scrollHeight"
_SCROLL_TO_END = "window.scrollTo(0, document.body.scrollHeight)"


def classify_playwright_error(error: PlaywrightError) -> FetchErrorKind:
    """Map a Playwright error to a fetch error kind.

    Timeouts are TIMEOUT, unresolvable hosts and malformed URLs are
    NAVIGATION. Everything else (refused or reset connections, a closed
    page, context or browser) is CONNECTION.
    """
    if isinstance(error, PlaywrightTimeoutError):
        return FetchErrorKind.TIMEOUT
    text = str(error).lower()
    if any(marker in text for marker in _NAVIGATION_MARKERS):
        return FetchErrorKind.NAVIGATION
    return FetchErrorKind.CONNECTION


class BrowserSession(BaseSession):
    """Renders targets in a Playwright-controlled browser.

    Example::

        async with BrowserSession.open(settings.browser) as session:
            content = await session.fetch(target)
    """

    def __init__(
        self,
        settings: BrowserSettings | None = None,
        concurrency: int = 2,
        attempt_timeout: float = DEFAULT_ATTEMPT_TIMEOUT,
        pacer: NavigationPacer | None = None,
    ) -> None:
        """Initialize the session. No browser is started until first use.

        Args:
            settings: Browser endpoint and context settings.
            concurrency: Maximum simultaneous pages.
            attempt_timeout: Seconds allowed for navigation, readiness and
                snapshot of one attempt.
            pacer: Shared navigation pacer.
        """
        super().__init__(concurrency, attempt_timeout, pacer)
        self.settings = settings or BrowserSettings()
        self.blocked_resource_types = set(
            self.settings.blocked_resource_types
        )
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._connect_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    def _context_kwargs(self) -> dict[str, Any]:
        context_kwargs: dict[str, Any] = {
            "viewport": {
                "width": self.settings.viewport_width,
                "height": self.settings.viewport_height,
            },
            "locale": self.settings.locale,
            "timezone_id": self.settings.timezone_id,
        }
        if self.settings.user_agent:
            context_kwargs["user_agent"] = self.settings.user_agent
        return context_kwargs

    async def _connect(self) -> Browser:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        launcher = getattr(self._playwright, self.settings.browser_type)
        endpoint = self.settings.endpoint
        timeout_ms = self.attempt_timeout * 1000

        if endpoint is None:
            logger.info(f"Launching local {self.settings.browser_type}")
            return await launcher.launch(headless=self.settings.headless)
        if endpoint.startswith(("ws://", "wss://")):
            logger.info(f"Connecting to Playwright server at {endpoint}")
            return await launcher.connect(endpoint, timeout=timeout_ms)
        logger.info(f"Connecting over CDP to {endpoint}")
        return await launcher.connect_over_cdp(endpoint, timeout=timeout_ms)

    async def _ensure_browser(self, target: Target) -> Browser:
        """Return a connected browser, connecting or reconnecting as needed.

        Raises:
            FetchError: CONNECTION if the endpoint cannot be reached.
        """
        async with self._connect_lock:
            if self._browser is not None:
                if self._browser.is_connected():
                    return self._browser
                logger.warning("Browser disconnected; reconnecting")
                self._browser = None
            try:
                self._browser = await self._connect()
            except PlaywrightError as e:
                raise FetchError(
                    FetchErrorKind.CONNECTION,
                    f"Could not reach browser: {e}",
                    target.id,
                    url=self.settings.endpoint or "",
                ) from e
            return self._browser

    async def _block_resources(self, route: Route) -> None:
        if route.request.resource_type in self.blocked_resource_types:
            await route.abort()
        else:
            await route.continue_()

    async def _fetch(self, target: Target) -> RenderedContent:
        browser = await self._ensure_browser(target)
        context = None
        try:
            context = await browser.new_context(**self._context_kwargs())
            context.set_default_timeout(self.attempt_timeout * 1000)
            page = await context.new_page()
            if self.blocked_resource_types:
                await page.route("**/*", self._block_resources)

            response = await page.goto(
                target.url, wait_until="domcontentloaded"
            )
            status = response.status if response is not None else None
            kind = classify_status(status)
            if kind is not None:
                raise FetchError(
                    kind,
                    f"HTTP {status} from {target.url}",
                    target.id,
                    url=target.url,
                    status=status,
                )

            ready = await self._process_await_list(page, target)
            if ready and target.scroll is not None:
                await self._scroll_to_end(page, target.scroll)

            markup = await page.content()
            return RenderedContent(
                target_id=target.id,
                url=page.url,
                markup=markup,
                fetched_at=datetime.now(timezone.utc),
                status=status,
            )
        except PlaywrightError as e:
            kind = classify_playwright_error(e)
            logger.warning(
                f"Playwright {kind.value} error for {target.id}: {e}",
                extra={"target_id": target.id, "error_kind": kind.value},
            )
            raise FetchError(
                kind,
                f"Playwright error: {e}",
                target.id,
                url=target.url,
            ) from e
        finally:
            if context is not None:
                await self._close_context(context, target)

    async def _close_context(self, context: Any, target: Target) -> None:
        try:
            await context.close()
        except PlaywrightError as e:
            # The browser may already be gone; the context went with it.
            logger.warning(
                f"Could not close browser context for {target.id}: {e}",
                extra={"target_id": target.id},
            )

    @property
    def item_wait_ms(self) -> int:
        """Timeout of the default wait for a target's items."""
        seconds = min(
            self.settings.item_wait_timeout, self.attempt_timeout / 2
        )
        return int(seconds * 1000)

    async def _process_await_list(self, page: Page, target: Target) -> bool:
        """Wait for the target's page-ready conditions before snapshotting.

        Configured conditions must all hold. Without any, the session waits
        for the target's items; if they never appear the page still loaded,
        so the snapshot is taken anyway and extraction reports the missing
        items as NO_RECORDS_FOUND.

        Returns:
            False if the default item wait timed out, True otherwise.

        Raises:
            FetchError: TIMEOUT if a configured condition or the page load
                never completes.
        """
        for condition in target.ready_conditions():
            items_wait = not target.wait_for and isinstance(
                condition, WaitForSelector
            )
            if items_wait:
                condition = replace(condition, timeout=self.item_wait_ms)
            try:
                await self._wait_for(page, condition)
            except PlaywrightTimeoutError as e:
                if items_wait:
                    logger.warning(
                        f"No items appeared on {target.id} within "
                        f"{self.item_wait_ms}ms; snapshotting anyway",
                        extra={"target_id": target.id},
                    )
                    return False
                raise FetchError(
                    FetchErrorKind.TIMEOUT,
                    f"Wait condition timeout: {condition}",
                    target.id,
                    url=target.url,
                ) from e
        return True

    async def _wait_for(self, page: Page, condition: WaitCondition) -> None:
        match condition:
            case WaitForSelector():
                await page.wait_for_selector(
                    playwright_selector(condition.selector),
                    state=condition.state,
                    timeout=condition.timeout,
                )
            case WaitForLoadState(state=state, timeout=timeout):
                await page.wait_for_load_state(state, timeout=timeout)
            case WaitForURL(url=url, timeout=timeout):
                await page.wait_for_url(url, timeout=timeout)
            case WaitForTimeout(timeout=timeout):
                await asyncio.sleep(timeout / 1000.0)
            case _:
                assert_never(condition)

    async def _scroll_to_end(self, page: Page, scroll: ScrollSettings) -> int:
        """Scroll until the page height stops growing.

        Returns:
            Number of scrolls performed.
        """
        last_height = await page.evaluate(_SCROLL_HEIGHT)
        unchanged = 0
        scrolls = 0
        while unchanged < scroll.scroll_checks:
            await page.evaluate(_SCROLL_TO_END)
            scrolls += 1
            await asyncio.sleep(scroll.scroll_delay_ms / 1000.0)
            height = await page.evaluate(_SCROLL_HEIGHT)
            if height == last_height:
                unchanged += 1
            else:
                unchanged = 0
                last_height = height
        logger.debug(f"Scrolled {scrolls} times to height {last_height}")
        return scrolls

    async def close(self) -> None:
        """Close the browser and stop Playwright."""
        async with self._connect_lock:
            try:
                if self._browser is not None:
                    await self._browser.close()
            finally:
                self._browser = None
                self._release_pacer()
                if self._playwright is not None:
                    await self._playwright.stop()
                    self._playwright = None
