"""Plain HTTP session for static pages.

Some supermarket listings are server-rendered and paginate through plain
links, so there is no need to drive a browser for them. HttpSession
fulfils the same fetch contract as the browser session with an
httpx.AsyncClient.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import httpx

from peru_prices.common.exceptions import FetchError, FetchErrorKind
from peru_prices.common.pacing import NavigationPacer
from peru_prices.configuration import HttpSettings
from peru_prices.data_types import RenderedContent, Target
from peru_prices.session.base import (
    DEFAULT_ATTEMPT_TIMEOUT,
    BaseSession,
    classify_status,
)

logger = logging.getLogger(__name__)

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "name resolution",
    "no address associated",
)


def _is_dns_failure(error: Exception) -> bool:
    text = str(error).lower()
    return any(marker in text for marker in _DNS_MARKERS)


class HttpSession(BaseSession):
    """Fetches targets over HTTP.

    Example::

        async with HttpSession.open(settings.http, concurrency=2) as session:
            content = await session.fetch(target)
    """

    def __init__(
        self,
        settings: HttpSettings | None = None,
        concurrency: int = 2,
        attempt_timeout: float = DEFAULT_ATTEMPT_TIMEOUT,
        pacer: NavigationPacer | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the session.

        Args:
            settings: HTTP settings (user agent, redirects).
            concurrency: Maximum simultaneous requests.
            attempt_timeout: Seconds allowed per request.
            pacer: Shared navigation pacer.
            transport: Optional httpx transport, mainly for tests.
        """
        super().__init__(concurrency, attempt_timeout, pacer)
        self.settings = settings or HttpSettings()
        self._client = httpx.AsyncClient(
            headers={"User-Agent": self.settings.user_agent},
            follow_redirects=self.settings.follow_redirects,
            timeout=attempt_timeout,
            transport=transport,
        )

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        try:
            await self._client.aclose()
        finally:
            self._release_pacer()

    async def _fetch(self, target: Target) -> RenderedContent:
        try:
            response = await self._client.get(target.url)
        except httpx.TimeoutException as e:
            raise FetchError(
                FetchErrorKind.TIMEOUT,
                f"Request to {target.url} timed out",
                target.id,
                url=target.url,
            ) from e
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            raise FetchError(
                FetchErrorKind.NAVIGATION,
                f"Invalid URL {target.url}: {e}",
                target.id,
                url=target.url,
            ) from e
        except httpx.TransportError as e:
            kind = (
                FetchErrorKind.NAVIGATION
                if _is_dns_failure(e)
                else FetchErrorKind.CONNECTION
            )
            raise FetchError(
                kind,
                f"Request to {target.url} failed: {e}",
                target.id,
                url=target.url,
            ) from e

        kind = classify_status(response.status_code)
        if kind is not None:
            raise FetchError(
                kind,
                f"HTTP {response.status_code} from {target.url}",
                target.id,
                url=target.url,
                status=response.status_code,
            )

        logger.debug(
            f"Fetched {target.url} ({response.status_code})",
            extra={"target_id": target.id},
        )
        return RenderedContent(
            target_id=target.id,
            url=str(response.url),
            markup=response.text,
            fetched_at=datetime.now(timezone.utc),
            status=response.status_code,
        )
