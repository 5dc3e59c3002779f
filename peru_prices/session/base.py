"""The fetch contract shared by browser and HTTP sessions.

The pipeline only ever calls ``fetch(target)``. Anything implementing the
Fetcher protocol can stand in for a real session; tests use a scripted
fake. BaseSession adds what every real session needs around its own
``_fetch``: a concurrency bound, per-source pacing and a per-attempt
timeout.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any, Protocol, runtime_checkable

from peru_prices.common.exceptions import FetchError, FetchErrorKind
from peru_prices.common.pacing import NavigationPacer
from peru_prices.data_types import FetcherKind, RenderedContent, Target

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPT_TIMEOUT = 30.0


@runtime_checkable
class Fetcher(Protocol):
    async def fetch(self, target: Target) -> RenderedContent: ...

    async def close(self) -> None: ...


def classify_status(status: int | None) -> FetchErrorKind | None:
    """Map an HTTP status of the document response to a fetch error kind.

    4xx means the page moved or never existed, which retrying cannot fix.
    5xx is the server struggling and may succeed on retry.
    """
    if status is None or status < 400:
        return None
    if status < 500:
        return FetchErrorKind.NAVIGATION
    return FetchErrorKind.CONNECTION


class BaseSession:
    """Common machinery for sessions that render targets.

    Subclasses implement ``_fetch`` and ``close``.

    Args:
        concurrency: Maximum simultaneous fetches through this session.
        attempt_timeout: Seconds allowed for one fetch attempt.
        pacer: Shared navigation pacer; one is created if not given.
    """

    def __init__(
        self,
        concurrency: int = 2,
        attempt_timeout: float = DEFAULT_ATTEMPT_TIMEOUT,
        pacer: NavigationPacer | None = None,
    ) -> None:
        self.concurrency = concurrency
        self.attempt_timeout = attempt_timeout
        self.pacer = pacer or NavigationPacer()
        self._owns_pacer = pacer is None
        self._semaphore = asyncio.Semaphore(concurrency)

    @classmethod
    @asynccontextmanager
    async def open(cls, *args: Any, **kwargs: Any) -> AsyncIterator[Any]:
        """Open the session as an async context manager.

        Example:
            async with HttpSession.open(settings.http) as session:
                content = await session.fetch(target)
        """
        session = cls(*args, **kwargs)
        try:
            yield session
        finally:
            await session.close()

    async def fetch(self, target: Target) -> RenderedContent:
        """Render a target once.

        Raises:
            FetchError: TIMEOUT, NAVIGATION or CONNECTION.
        """
        async with self._semaphore:
            await self.pacer.wait(target.source, target.delay_ms)
            try:
                return await asyncio.wait_for(
                    self._fetch(target), timeout=self.attempt_timeout
                )
            except TimeoutError as e:
                raise FetchError(
                    FetchErrorKind.TIMEOUT,
                    f"Fetch timed out after {self.attempt_timeout}s",
                    target.id,
                    url=target.url,
                ) from e

    async def _fetch(self, target: Target) -> RenderedContent:
        raise NotImplementedError

    def _release_pacer(self) -> None:
        """Close the pacer if this session created it."""
        if self._owns_pacer:
            self.pacer.close()

    async def close(self) -> None:
        raise NotImplementedError


class RoutingFetcher:
    """Dispatches each target to the session named by its ``fetcher`` field."""

    def __init__(self, sessions: Mapping[FetcherKind, Fetcher]) -> None:
        self.sessions = dict(sessions)

    async def fetch(self, target: Target) -> RenderedContent:
        session = self.sessions.get(target.fetcher)
        if session is None:
            raise FetchError(
                FetchErrorKind.NAVIGATION,
                f"No session configured for fetcher {target.fetcher.value!r}",
                target.id,
                url=target.url,
            )
        return await session.fetch(target)

    async def close(self) -> None:
        errors: list[BaseException] = []
        for kind, session in self.sessions.items():
            try:
                await session.close()
            except Exception as e:
                logger.exception(f"Failed to close {kind.value} session")
                errors.append(e)
        if errors:
            raise errors[0]
