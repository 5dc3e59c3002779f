"""Data types flowing through the price pipeline.

The pipeline is a straight line of immutable values:

1. Target - what to scrape, built once from configuration
2. RenderedContent - the markup a session produced for a target
3. CandidateRecord - raw field strings pulled out of one page fragment
4. PriceRecord - the validated, canonical observation that gets stored

Targets and PriceRecords are frozen pydantic models because they come from
untrusted input (YAML, scraped strings). The ephemeral values in between
are frozen dataclasses.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
)
from pydantic_core import PydanticCustomError

from peru_prices.common.deferred_validation import DeferredValidation
from peru_prices.common.selector_utils import can_playwright_wait

DEFAULT_MAX_PRICE = Decimal("100000")

# Columns of the output CSV, in order.
RECORD_FIELDS: tuple[str, ...] = (
    "item_id",
    "price",
    "currency",
    "unit",
    "observed_on",
    "scraped_at",
    "name",
    "brand",
    "category",
    "url",
)


class FetcherKind(str, Enum):
    BROWSER = "browser"
    HTTP = "http"


class DatePolicy(str, Enum):
    """Where a record's observation date comes from.

    FETCH uses the fetch timestamp in the pipeline's timezone. PAGE requires
    a ``date`` field extracted from the page itself.
    """

    FETCH = "fetch"
    PAGE = "page"


class MergePolicy(str, Enum):
    REJECT = "reject"
    OVERWRITE = "overwrite"
    APPEND_VERSIONED = "append-versioned"


# =============================================================================
# Page-ready conditions
# =============================================================================


@dataclass(frozen=True)
class WaitForSelector:
    """Wait for a selector to appear in the DOM before the snapshot.

    Attributes:
        selector: CSS or XPath selector to wait for.
        state: State to wait for ('attached', 'detached', 'visible', 'hidden').
        timeout: Optional timeout in milliseconds. If None, the attempt
            timeout applies.
    """

    selector: str
    state: str = "visible"
    timeout: int | None = None


@dataclass(frozen=True)
class WaitForLoadState:
    """Wait for a load state ('load', 'domcontentloaded', 'networkidle')."""

    state: str = "load"
    timeout: int | None = None


@dataclass(frozen=True)
class WaitForURL:
    """Wait for the page URL to match a glob pattern."""

    url: str
    timeout: int | None = None


@dataclass(frozen=True)
class WaitForTimeout:
    """Wait a fixed number of milliseconds."""

    timeout: int


WaitCondition = Union[
    WaitForSelector, WaitForLoadState, WaitForURL, WaitForTimeout
]


@dataclass(frozen=True)
class ScrollSettings:
    """Infinite-scroll behavior for pages that lazy-load their products.

    The page is scrolled to the bottom every ``scroll_delay_ms`` until
    ``document.body.scrollHeight`` stays the same for ``scroll_checks``
    consecutive checks.
    """

    scroll_delay_ms: int = 1000
    scroll_checks: int = 3


# =============================================================================
# Catalog
# =============================================================================


class FieldRule(BaseModel):
    """How to pull one field out of an item fragment.

    Attributes:
        selector: Selector relative to the fragment. None means the fragment
            element itself.
        attribute: Attribute to read. None means the normalized text content.
        pattern: Optional regex; the first group (or whole match) is kept.
        position: Which match to use when the selector matches several.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    selector: str | None = None
    attribute: str | None = None
    pattern: str | None = None
    position: int = Field(default=0, ge=0)

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, value: str | None) -> str | None:
        if value is not None:
            try:
                re.compile(value)
            except re.error as e:
                raise ValueError(f"invalid pattern {value!r}: {e}") from e
        return value


class ExtractionRules(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    item_selector: str = Field(min_length=1)
    fields: dict[str, FieldRule]


class Target(BaseModel):
    """A single page to scrape, immutable once the catalog is built."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1)
    source: str
    url: str
    fetcher: FetcherKind = FetcherKind.BROWSER
    rules: ExtractionRules
    schema_version: int = 1
    currency: str | None = "PEN"
    unit: str = "unit"
    decimal_separator: Literal[".", ","] = "."
    date_policy: DatePolicy = DatePolicy.FETCH
    date_format: str = "%Y-%m-%d"
    wait_for: tuple[WaitCondition, ...] = ()
    scroll: ScrollSettings | None = None
    delay_ms: int = Field(default=0, ge=0)
    max_price: Decimal = Field(default=DEFAULT_MAX_PRICE, gt=0)

    def ready_conditions(self) -> tuple[WaitCondition, ...]:
        """Return the page-ready conditions, defaulting to the items."""
        if self.wait_for:
            return self.wait_for
        if can_playwright_wait(self.rules.item_selector):
            return (
                WaitForSelector(self.rules.item_selector, state="attached"),
            )
        return (WaitForLoadState("load"),)


# =============================================================================
# Ephemeral values
# =============================================================================


@dataclass(frozen=True)
class RenderedContent:
    """Markup a session produced for a target.

    Attributes:
        target_id: The target that was fetched.
        url: Final URL after any redirects.
        markup: Raw HTML of the page.
        fetched_at: UTC timestamp of the snapshot.
        status: HTTP status of the document response, when known.
    """

    target_id: str
    url: str
    markup: str
    fetched_at: datetime
    status: int | None = None


@dataclass(frozen=True)
class CandidateRecord:
    """Raw field values extracted from one fragment, absent fields omitted."""

    target_id: str
    fields: dict[str, str]
    position: int
    source_url: str = ""


# =============================================================================
# Canonical record
# =============================================================================


class PriceRecord(BaseModel):
    """A validated price observation.

    (target_id, item_id, observed_on) identifies the observation; under the
    append-versioned merge policy scraped_at distinguishes versions.

    Pass ``context={"max_price": Decimal(...)}`` to model_validate to apply
    a per-target price ceiling.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    target_id: str = Field(min_length=1)
    item_id: str = Field(min_length=1)
    price: Decimal = Field(gt=0)
    currency: str = Field(pattern=r"^[A-Z]{3}$")
    unit: str = Field(min_length=1)
    observed_on: date
    scraped_at: datetime
    name: str | None = None
    brand: str | None = None
    category: str | None = None
    url: str | None = None

    @field_validator("price")
    @classmethod
    def _price_within_ceiling(
        cls, value: Decimal, info: ValidationInfo
    ) -> Decimal:
        ceiling = (info.context or {}).get("max_price", DEFAULT_MAX_PRICE)
        if value > ceiling:
            raise PydanticCustomError(
                "out_of_range",
                "price {price} exceeds the maximum of {ceiling}",
                {"price": str(value), "ceiling": str(ceiling)},
            )
        return value

    @classmethod
    def raw(
        cls,
        position: int | None = None,
        context: dict[str, Any] | None = None,
        **data: Any,
    ) -> DeferredValidation[PriceRecord]:
        """Wrap raw field values for validation on confirm()."""
        return DeferredValidation(
            cls,
            data,
            target_id=str(data.get("target_id") or ""),
            position=position,
            context=context,
        )

    @property
    def key(self) -> tuple[str, str, date]:
        return (self.target_id, self.item_id, self.observed_on)

    def same_observation(self, other: PriceRecord) -> bool:
        """True when both records report the same price for the same key."""
        return (
            self.key == other.key
            and self.price == other.price
            and self.currency == other.currency
            and self.unit == other.unit
        )

    def to_row(self) -> dict[str, str]:
        """Serialize to a CSV row keyed by RECORD_FIELDS."""
        return {
            "item_id": self.item_id,
            "price": str(self.price),
            "currency": self.currency,
            "unit": self.unit,
            "observed_on": self.observed_on.isoformat(),
            "scraped_at": self.scraped_at.isoformat(),
            "name": self.name or "",
            "brand": self.brand or "",
            "category": self.category or "",
            "url": self.url or "",
        }

    @classmethod
    def from_row(cls, target_id: str, row: dict[str, Any]) -> PriceRecord:
        """Rebuild a record from a stored CSV row."""
        data = {key: row.get(key) or None for key in RECORD_FIELDS}
        return cls.model_validate(
            {"target_id": target_id, **data},
            context={"max_price": Decimal("Infinity")},
        )


@dataclass
class WriteResult:
    """Outcome of one store write.

    Attributes:
        written: New rows added.
        superseded: Existing rows replaced (overwrite policy).
        unchanged: Records identical to an existing row.
        conflicts: Keys rejected because a differing row already exists.
    """

    written: int = 0
    superseded: int = 0
    unchanged: int = 0
    conflicts: list[tuple[str, str, str]] = field(default_factory=list)

    def merge(self, other: WriteResult) -> None:
        self.written += other.written
        self.superseded += other.superseded
        self.unchanged += other.unchanged
        self.conflicts.extend(other.conflicts)
