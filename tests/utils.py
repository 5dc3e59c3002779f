"""Test utilities shared by the pipeline, store and session tests.

FakeFetcher stands in for a real session: each target gets a script of
pages and errors that is played back one entry per fetch, so retry,
isolation and deadline behavior can be tested without a browser.
"""

import asyncio
from collections import defaultdict
from collections.abc import Sequence
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Union

import yaml

from peru_prices.common.exceptions import (
    FetchError,
    FetchErrorKind,
    WriteError,
    WriteErrorKind,
)
from peru_prices.configuration import PipelineSettings
from peru_prices.data_types import (
    PriceRecord,
    RenderedContent,
    Target,
    WriteResult,
)
from peru_prices.store import CsvStore
from tests.mock_server import PRODUCTS, generate_listing_html

# 10:00 in Lima
FETCHED_AT = datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc)
OBSERVED_ON = date(2026, 10, 19)

DEFAULT_RULES: dict[str, Any] = {
    "item_selector": "div.product-item[data-id]",
    "fields": {
        "item_id": {"attribute": "data-id"},
        "name": {"attribute": "data-name"},
        "brand": {"attribute": "data-brand"},
        "category": {"attribute": "data-category"},
        "url": {"attribute": "data-uri"},
        "price": {"selector": ".product-prices__value--best-price"},
    },
}

ARROZ_HTML = generate_listing_html(PRODUCTS["arroz"], "Arroz")
LECHES_HTML = generate_listing_html(PRODUCTS["leches"], "Leches")
EMPTY_HTML = generate_listing_html([], "Sin resultados")

ScriptStep = Union[str, FetchErrorKind, BaseException]


def make_target(
    target_id: str = "metro-arroz",
    url: str = "https://www.metro.pe/abarrotes/arroz",
    source: str = "metro",
    **overrides: Any,
) -> Target:
    """Build a Target with rules matching the mock listing layout."""
    data: dict[str, Any] = {
        "id": target_id,
        "source": source,
        "url": url,
        "rules": DEFAULT_RULES,
    }
    data.update(overrides)
    return Target.model_validate(data)


def make_content(
    target: Target, markup: str, fetched_at: datetime = FETCHED_AT
) -> RenderedContent:
    return RenderedContent(
        target_id=target.id,
        url=target.url,
        markup=markup,
        fetched_at=fetched_at,
        status=200,
    )


def make_record(
    item_id: str = "A100",
    price: str = "21.90",
    target_id: str = "metro-arroz",
    **overrides: Any,
) -> PriceRecord:
    data: dict[str, Any] = {
        "target_id": target_id,
        "item_id": item_id,
        "price": Decimal(price),
        "currency": "PEN",
        "unit": "unit",
        "observed_on": OBSERVED_ON,
        "scraped_at": FETCHED_AT,
        "name": f"Producto {item_id}",
    }
    data.update(overrides)
    return PriceRecord.model_validate(data)


def fast_settings(**overrides: Any) -> PipelineSettings:
    """Pipeline settings without backoff waits."""
    data: dict[str, Any] = {
        "concurrency": 2,
        "max_retries": 3,
        "backoff_initial": 0.0,
        "fetch_timeout": 5.0,
    }
    data.update(overrides)
    return PipelineSettings.model_validate(data)


def write_config(config_dir: Path, name: str, data: dict[str, Any]) -> Path:
    config_dir.mkdir(parents=True, exist_ok=True)
    path = config_dir / f"{name}.yaml"
    path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    return path


class FakeFetcher:
    """Scripted Fetcher.

    Each target id maps to a sequence of steps played back one per fetch;
    the last step repeats. A step is markup to return, a FetchErrorKind to
    raise as a FetchError, or an exception instance to raise as is.
    Targets without a script get ``default``.

    Example:
        fetcher = FakeFetcher({"t1": [FetchErrorKind.TIMEOUT, ARROZ_HTML]})
        pipeline = Pipeline(fetcher, store, fast_settings())
        report = await pipeline.run([make_target("t1")])
        assert fetcher.calls["t1"] == 2
    """

    def __init__(
        self,
        scripts: dict[str, Any] | None = None,
        default: ScriptStep = ARROZ_HTML,
        delays: dict[str, float] | None = None,
        default_delay: float = 0.0,
        fetched_at: datetime = FETCHED_AT,
    ) -> None:
        self.scripts: dict[str, list[ScriptStep]] = {}
        for target_id, script in (scripts or {}).items():
            if isinstance(script, (str, FetchErrorKind, BaseException)):
                script = [script]
            self.scripts[target_id] = list(script)
        self.default = default
        self.delays = delays or {}
        self.default_delay = default_delay
        self.fetched_at = fetched_at
        self.calls: defaultdict[str, int] = defaultdict(int)
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    def _next_step(self, target_id: str) -> ScriptStep:
        script = self.scripts.get(target_id)
        if not script:
            return self.default
        index = min(self.calls[target_id], len(script)) - 1
        return script[index]

    async def fetch(self, target: Target) -> RenderedContent:
        self.calls[target.id] += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delays.get(target.id, self.default_delay)
            if delay:
                await asyncio.sleep(delay)
            step = self._next_step(target.id)
            if isinstance(step, FetchErrorKind):
                raise FetchError(
                    step,
                    f"scripted {step.value}",
                    target.id,
                    url=target.url,
                )
            if isinstance(step, BaseException):
                raise step
            return make_content(target, step, self.fetched_at)
        finally:
            self.in_flight -= 1

    async def close(self) -> None:
        self.closed = True


class UnavailableStore(CsvStore):
    """Store whose disk is gone: every record write fails fatally."""

    def __init__(self, out_path: Path | str, **kwargs: Any) -> None:
        super().__init__(out_path, **kwargs)
        self.write_calls = 0

    async def write(self, records: Sequence[PriceRecord]) -> WriteResult:
        self.write_calls += 1
        raise WriteError(
            WriteErrorKind.STORAGE_UNAVAILABLE,
            "No space left on device",
            records[0].target_id if records else "",
        )


class SlowStore(CsvStore):
    """Store whose writes take ``delay`` seconds before committing."""

    def __init__(
        self, out_path: Path | str, delay: float, **kwargs: Any
    ) -> None:
        super().__init__(out_path, **kwargs)
        self.delay = delay

    async def write(self, records: Sequence[PriceRecord]) -> WriteResult:
        await asyncio.sleep(self.delay)
        return await super().write(records)
