"""Tests for the Playwright browser session.

The unit tests drive the readiness and scrolling logic with fake page
objects. The integration tests render the mock supermarket in a real
Chromium and are skipped when no browser is installed.
"""

from typing import Any

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from peru_prices.common.exceptions import (
    ExtractionError,
    ExtractionErrorKind,
    FetchError,
    FetchErrorKind,
)
from peru_prices.configuration import BrowserSettings
from peru_prices.data_types import (
    ScrollSettings,
    WaitForLoadState,
    WaitForSelector,
    WaitForTimeout,
    WaitForURL,
)
from peru_prices.extractor import extract
from peru_prices.pipeline import Pipeline
from peru_prices.report import TargetStatus
from peru_prices.session import BrowserSession
from peru_prices.session.browser import classify_playwright_error
from peru_prices.store import CsvStore
from tests.utils import EMPTY_HTML, fast_settings, make_target

SCROLL_HEIGHT = "document.body.scrollHeight"


class FakePage:
    """Records the waits and scripts the session asks a page for."""

    def __init__(self, heights: list[int] | None = None) -> None:
        self.heights = list(heights or [1000])
        self.calls: list[tuple[Any, ...]] = []
        self.scrolls = 0

    async def wait_for_selector(self, selector, state=None, timeout=None):
        self.calls.append(("selector", selector, state, timeout))

    async def wait_for_load_state(self, state, timeout=None):
        self.calls.append(("load_state", state, timeout))

    async def wait_for_url(self, url, timeout=None):
        self.calls.append(("url", url, timeout))

    async def evaluate(self, expression: str) -> int | None:
        if expression == SCROLL_HEIGHT:
            if len(self.heights) > 1:
                return self.heights.pop(0)
            return self.heights[0]
        self.scrolls += 1
        return None


class TimingOutPage(FakePage):
    async def wait_for_selector(self, selector, state=None, timeout=None):
        raise PlaywrightTimeoutError("Timeout 100ms exceeded.")


class FakeResponse:
    status = 200


class LoadedPage(TimingOutPage):
    """A page that loads fine but never shows the expected items."""

    def __init__(self, markup: str) -> None:
        super().__init__()
        self.markup = markup
        self.url = "about:blank"

    async def route(self, pattern, handler) -> None:
        pass

    async def goto(self, url: str, wait_until=None) -> FakeResponse:
        self.url = url
        return FakeResponse()

    async def content(self) -> str:
        return self.markup


class FakeBrowser:
    """Hands out contexts whose pages all serve the same markup."""

    def __init__(self, markup: str) -> None:
        self.markup = markup
        self.contexts_closed = 0

    def is_connected(self) -> bool:
        return True

    async def new_context(self, **kwargs) -> "FakeBrowser":
        return self

    def set_default_timeout(self, timeout: float) -> None:
        pass

    async def new_page(self) -> LoadedPage:
        return LoadedPage(self.markup)

    async def close(self) -> None:
        self.contexts_closed += 1


class TestClassifyPlaywrightError:
    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (
                PlaywrightTimeoutError("Timeout 30000ms exceeded."),
                FetchErrorKind.TIMEOUT,
            ),
            (
                PlaywrightError("net::ERR_NAME_NOT_RESOLVED at https://x.pe"),
                FetchErrorKind.NAVIGATION,
            ),
            (
                PlaywrightError(
                    "Protocol error: Cannot navigate to invalid URL"
                ),
                FetchErrorKind.NAVIGATION,
            ),
            (
                PlaywrightError("net::ERR_CONNECTION_REFUSED at http://x"),
                FetchErrorKind.CONNECTION,
            ),
            (
                PlaywrightError(
                    "Target page, context or browser has been closed"
                ),
                FetchErrorKind.CONNECTION,
            ),
        ],
    )
    def test_classification(self, error, expected):
        assert classify_playwright_error(error) is expected


class TestReadiness:
    @pytest.mark.asyncio
    async def test_default_waits_for_items(self):
        page = FakePage()
        session = BrowserSession()

        ready = await session._process_await_list(page, make_target())

        assert ready
        assert page.calls == [
            ("selector", "div.product-item[data-id]", "attached", 10_000)
        ]

    def test_item_wait_is_capped_by_attempt_timeout(self):
        session = BrowserSession(
            BrowserSettings(item_wait_timeout=10.0), attempt_timeout=4.0
        )

        assert session.item_wait_ms == 2000

    @pytest.mark.asyncio
    async def test_configured_conditions_in_order(self):
        page = FakePage()
        target = make_target(
            wait_for=(
                WaitForSelector("//div[@id='grid']", timeout=500),
                WaitForLoadState("networkidle"),
                WaitForURL("**/arroz"),
                WaitForTimeout(1),
            )
        )

        await BrowserSession()._process_await_list(page, target)

        assert page.calls == [
            ("selector", "xpath=//div[@id='grid']", "visible", 500),
            ("load_state", "networkidle", None),
            ("url", "**/arroz", None),
        ]

    @pytest.mark.asyncio
    async def test_missing_items_do_not_time_out(self):
        ready = await BrowserSession()._process_await_list(
            TimingOutPage(), make_target()
        )

        assert not ready

    @pytest.mark.asyncio
    async def test_configured_wait_timeout_is_fetch_timeout(self):
        target = make_target(
            wait_for=(WaitForSelector("div.banner", timeout=100),)
        )

        with pytest.raises(FetchError) as exc_info:
            await BrowserSession()._process_await_list(
                TimingOutPage(), target
            )

        assert exc_info.value.kind is FetchErrorKind.TIMEOUT
        assert exc_info.value.target_id == "metro-arroz"

    @pytest.mark.asyncio
    async def test_layout_drift_is_reported_as_no_data(self, tmp_path):
        session = BrowserSession()
        session._browser = FakeBrowser(EMPTY_HTML)
        target = make_target()

        report = await Pipeline(
            session, CsvStore(tmp_path), fast_settings(max_retries=3)
        ).run([target])

        outcome = report.outcome("metro-arroz")
        assert outcome.status is TargetStatus.NO_DATA
        assert outcome.error_kind == "no_records_found"
        assert outcome.attempts == 1
        assert session._browser.contexts_closed == 1


class TestScrolling:
    @pytest.mark.asyncio
    async def test_scrolls_until_height_settles(self):
        page = FakePage(heights=[1000, 2000, 3000, 3000])

        scrolls = await BrowserSession()._scroll_to_end(
            page, ScrollSettings(scroll_delay_ms=0, scroll_checks=2)
        )

        assert scrolls == 4
        assert page.scrolls == 4

    @pytest.mark.asyncio
    async def test_static_page_stops_after_checks(self):
        page = FakePage(heights=[1000])

        scrolls = await BrowserSession()._scroll_to_end(
            page, ScrollSettings(scroll_delay_ms=0, scroll_checks=3)
        )

        assert scrolls == 3


class TestSessionSetup:
    def test_context_settings(self):
        settings = BrowserSettings(
            locale="es-PE", viewport_width=1280, user_agent="bot"
        )

        kwargs = BrowserSession(settings)._context_kwargs()

        assert kwargs["locale"] == "es-PE"
        assert kwargs["timezone_id"] == "America/Lima"
        assert kwargs["viewport"] == {"width": 1280, "height": 1080}
        assert kwargs["user_agent"] == "bot"

    def test_not_connected_until_first_fetch(self):
        assert not BrowserSession().connected

    @pytest.mark.asyncio
    async def test_unreachable_endpoint_is_connection(self, unused_url: str):
        endpoint = unused_url.replace("/metro/arroz", "")
        session = BrowserSession(
            BrowserSettings(endpoint=endpoint), attempt_timeout=2.0
        )
        try:
            with pytest.raises(FetchError) as exc_info:
                await session.fetch(make_target())
        finally:
            await session.close()

        assert exc_info.value.kind is FetchErrorKind.CONNECTION


@pytest.fixture(scope="module")
def chromium() -> None:
    """Skip the module's browser tests when Chromium cannot be launched."""
    try:
        with sync_playwright() as p:
            p.chromium.launch(headless=True).close()
    except PlaywrightError as e:
        pytest.skip(f"Chromium not available: {e}")


@pytest.mark.browser
@pytest.mark.usefixtures("chromium")
class TestBrowserIntegration:
    @pytest.mark.asyncio
    async def test_renders_listing(self, server_url: str):
        target = make_target(url=f"{server_url}/metro/arroz")

        async with BrowserSession.open(attempt_timeout=15.0) as session:
            content = await session.fetch(target)

        assert content.status == 200
        assert [c.fields["item_id"] for c in extract(target, content)] == [
            "A100",
            "A200",
            "A300",
        ]

    @pytest.mark.asyncio
    async def test_missing_page_is_navigation(self, server_url: str):
        target = make_target(url=f"{server_url}/metro/caviar")

        async with BrowserSession.open(attempt_timeout=15.0) as session:
            with pytest.raises(FetchError) as exc_info:
                await session.fetch(target)

        assert exc_info.value.kind is FetchErrorKind.NAVIGATION
        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_page_without_items_is_snapshotted(self, server_url: str):
        target = make_target(url=f"{server_url}/empty")
        settings = BrowserSettings(item_wait_timeout=0.5)

        async with BrowserSession.open(
            settings, attempt_timeout=15.0
        ) as session:
            content = await session.fetch(target)

        assert "Sin resultados" in content.markup
        with pytest.raises(ExtractionError) as exc_info:
            extract(target, content)
        assert exc_info.value.kind is ExtractionErrorKind.NO_RECORDS_FOUND

    @pytest.mark.asyncio
    async def test_configured_condition_never_met_is_timeout(
        self, server_url: str
    ):
        target = make_target(
            url=f"{server_url}/empty",
            wait_for=(WaitForSelector("div.product-item", timeout=300),),
        )

        async with BrowserSession.open(attempt_timeout=15.0) as session:
            with pytest.raises(FetchError) as exc_info:
                await session.fetch(target)

        assert exc_info.value.kind is FetchErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_infinite_scroll_collects_every_batch(
        self, server_url: str
    ):
        target = make_target(
            url=f"{server_url}/scroll",
            scroll=ScrollSettings(scroll_delay_ms=200, scroll_checks=2),
        )

        async with BrowserSession.open(attempt_timeout=20.0) as session:
            content = await session.fetch(target)

        candidates = extract(target, content)
        assert len(candidates) == 9
        assert candidates[-1].fields["item_id"] == "S22"

    @pytest.mark.asyncio
    async def test_reconnects_after_disconnect(self, server_url: str):
        target = make_target(url=f"{server_url}/metro/leches")

        async with BrowserSession.open(attempt_timeout=15.0) as session:
            await session.fetch(target)
            await session._browser.close()
            content = await session.fetch(target)

        assert 'data-id="L200"' in content.markup
