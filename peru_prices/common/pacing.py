"""Per-source navigation pacing.

Sources ask for a minimum gap between page loads (``delay_ms``). Each
source gets its own pyrate_limiter Limiter allowing one navigation per
``delay_ms`` window; ``try_acquire_async`` blocks until the window has
room, and concurrent callers queue on the limiter's async lock so they are
staggered instead of all waking at once:

- Worker A: acquires at T=0, no wait
- Worker B: acquires at T=delay
- Worker C: acquires at T=2*delay
"""

from __future__ import annotations

import logging
import time

from pyrate_limiter import Limiter, Rate

logger = logging.getLogger(__name__)

# Slack pyrate_limiter adds to each computed wait, in milliseconds.
PACING_BUFFER_MS = 10


class NavigationPacer:
    """Keeps navigations to the same source at least ``delay_ms`` apart."""

    def __init__(self) -> None:
        self._limiters: dict[tuple[str, int], Limiter] = {}

    def limiter_for(self, source: str, delay_ms: int) -> Limiter:
        key = (source, delay_ms)
        limiter = self._limiters.get(key)
        if limiter is None:
            limiter = Limiter(Rate(1, delay_ms), buffer_ms=PACING_BUFFER_MS)
            self._limiters[key] = limiter
        return limiter

    async def wait(self, source: str, delay_ms: int) -> float:
        """Wait for this source's next navigation slot.

        Args:
            source: Name of the source (site) being navigated.
            delay_ms: Minimum milliseconds between navigations to it.

        Returns:
            Seconds actually waited.
        """
        if delay_ms <= 0:
            return 0.0

        start = time.monotonic()
        await self.limiter_for(source, delay_ms).try_acquire_async(
            name=f"navigation:{source}", weight=1
        )
        waited = time.monotonic() - start
        if waited > PACING_BUFFER_MS / 1000:
            logger.debug(
                f"Paced {source}: waited {waited:.2f}s",
                extra={"source": source},
            )
        return waited

    def close(self) -> None:
        """Stop the limiters' background leak workers."""
        for limiter in self._limiters.values():
            limiter.close()
        self._limiters.clear()
