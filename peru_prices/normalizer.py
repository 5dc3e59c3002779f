"""Candidate record to canonical PriceRecord.

Supermarket pages print prices like ``S/ 1,299.90`` or ``S/. 4.50``. The
normalizer strips currency symbols and letters, removes the thousands
separator implied by the target's decimal separator and parses the rest
as a Decimal. Currency, unit and observation date are resolved from the
candidate or the target defaults, and the result is validated through
the PriceRecord model so every rejection carries a kind.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from zoneinfo import ZoneInfo

from typing_extensions import assert_never

from peru_prices.common.exceptions import (
    RecordValidationError,
    RecordValidationErrorKind,
)
from peru_prices.data_types import (
    CandidateRecord,
    DatePolicy,
    PriceRecord,
    Target,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/Lima"

# Longest symbols first so "US$" is matched before "$".
CURRENCY_SYMBOLS: dict[str, str] = {
    "S/.": "PEN",
    "S/": "PEN",
    "US$": "USD",
    "$": "USD",
    "€": "EUR",
}

# A run of digits and separators, with an optional sign glued to it.
_NUMBER_RE = re.compile(r"-?\d[\d.,]*")
_CURRENCY_CODE_RE = re.compile(r"^[A-Za-z]{3}$")

OPTIONAL_FIELDS = ("name", "brand", "category", "url")


@lru_cache(maxsize=None)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def parse_price(raw: str, decimal_separator: str = ".") -> Decimal:
    """Parse a displayed price into a Decimal.

    The text must contain exactly one number; "2 x S/ 10.00" or a price
    range is rejected rather than guessed at.

    Args:
        raw: The price as shown on the page.
        decimal_separator: "." for ``1,299.90`` style, "," for ``1.299,90``.

    Returns:
        The parsed price, not yet range-checked.

    Raises:
        ValueError: If the text holds no number or more than one.

    >>> parse_price("S/. 1,299.90")
    Decimal('1299.90')
    >>> parse_price("S/ 4,50", ",")
    Decimal('4.50')
    """
    numbers = _NUMBER_RE.findall(raw)
    if len(numbers) != 1:
        raise ValueError(
            f"expected one number in {raw!r}, found {len(numbers)}"
        )
    (text,) = numbers

    thousands = "," if decimal_separator == "." else "."
    text = text.replace(thousands, "")
    if decimal_separator == ",":
        text = text.replace(",", ".")

    if text.count(".") > 1:
        raise ValueError(f"no number in {raw!r}")
    try:
        value = Decimal(text)
    except InvalidOperation as e:
        raise ValueError(f"no number in {raw!r}") from e
    if not value.is_finite():
        raise ValueError(f"no number in {raw!r}")
    return value


def resolve_currency(
    explicit: str | None, price_text: str, default: str | None
) -> str | None:
    """Pick the ISO-4217 code for a record.

    An explicit ``currency`` field wins (symbol or code), then a symbol
    printed next to the price, then the target default.
    """
    if explicit:
        value = explicit.strip()
        if value in CURRENCY_SYMBOLS:
            return CURRENCY_SYMBOLS[value]
        if _CURRENCY_CODE_RE.match(value):
            return value.upper()
        return None
    for symbol, code in CURRENCY_SYMBOLS.items():
        if symbol in price_text:
            return code
    return default


def observation_date(
    target: Target,
    candidate: CandidateRecord,
    fetched_at: datetime,
    tz_name: str = DEFAULT_TIMEZONE,
) -> date:
    """Resolve the observation date according to the target's date policy.

    Raises:
        RecordValidationError: MISSING_REQUIRED_FIELD when the page policy
            is in force and the date is absent or unparsable.
    """
    match target.date_policy:
        case DatePolicy.FETCH:
            if fetched_at.tzinfo is None:
                fetched_at = fetched_at.replace(tzinfo=timezone.utc)
            return fetched_at.astimezone(_zone(tz_name)).date()
        case DatePolicy.PAGE:
            raw = candidate.fields.get("date")
            if not raw:
                raise RecordValidationError(
                    RecordValidationErrorKind.MISSING_REQUIRED_FIELD,
                    "Page date policy requires a 'date' field",
                    target_id=target.id,
                    field="date",
                    position=candidate.position,
                )
            try:
                return datetime.strptime(raw, target.date_format).date()
            except ValueError as e:
                raise RecordValidationError(
                    RecordValidationErrorKind.MISSING_REQUIRED_FIELD,
                    f"Could not parse date {raw!r} with {target.date_format}",
                    target_id=target.id,
                    field="date",
                    position=candidate.position,
                ) from e
        case _:
            assert_never(target.date_policy)


def normalize(
    target: Target,
    candidate: CandidateRecord,
    fetched_at: datetime,
    tz_name: str = DEFAULT_TIMEZONE,
) -> PriceRecord:
    """Turn one candidate into a validated PriceRecord.

    Args:
        target: Target the candidate was extracted for.
        candidate: The raw candidate.
        fetched_at: UTC time the page was fetched; becomes scraped_at.
        tz_name: Timezone used by the fetch date policy.

    Raises:
        RecordValidationError: UNPARSABLE_NUMBER, MISSING_REQUIRED_FIELD or
            OUT_OF_RANGE.
    """
    fields = candidate.fields
    position = candidate.position

    for required in ("item_id", "price"):
        if not fields.get(required):
            raise RecordValidationError(
                RecordValidationErrorKind.MISSING_REQUIRED_FIELD,
                f"Missing required field '{required}'",
                target_id=target.id,
                field=required,
                position=position,
            )

    price_text = fields["price"]
    try:
        price = parse_price(price_text, target.decimal_separator)
    except ValueError as e:
        raise RecordValidationError(
            RecordValidationErrorKind.UNPARSABLE_NUMBER,
            f"Could not parse price {price_text!r}",
            target_id=target.id,
            field="price",
            position=position,
        ) from e
    if price <= 0:
        raise RecordValidationError(
            RecordValidationErrorKind.UNPARSABLE_NUMBER,
            f"Price {price_text!r} is not a positive number",
            target_id=target.id,
            field="price",
            position=position,
        )

    currency = resolve_currency(
        fields.get("currency"), price_text, target.currency
    )
    if currency is None:
        raise RecordValidationError(
            RecordValidationErrorKind.MISSING_REQUIRED_FIELD,
            "Could not determine the currency",
            target_id=target.id,
            field="currency",
            position=position,
            context={"currency": fields.get("currency")},
        )

    observed_on = observation_date(target, candidate, fetched_at, tz_name)
    optional = {name: fields.get(name) for name in OPTIONAL_FIELDS}

    return PriceRecord.raw(
        position=position,
        context={"max_price": target.max_price},
        target_id=target.id,
        item_id=fields["item_id"],
        price=price,
        currency=currency,
        unit=fields.get("unit") or target.unit,
        observed_on=observed_on,
        scraped_at=fetched_at,
        **optional,
    ).confirm()


def normalize_all(
    target: Target,
    candidates: list[CandidateRecord],
    fetched_at: datetime,
    tz_name: str = DEFAULT_TIMEZONE,
) -> tuple[list[PriceRecord], list[RecordValidationError]]:
    """Normalize every candidate, collecting rejections instead of raising."""
    records: list[PriceRecord] = []
    rejected: list[RecordValidationError] = []
    for candidate in candidates:
        try:
            records.append(normalize(target, candidate, fetched_at, tz_name))
        except RecordValidationError as e:
            logger.info(
                f"Rejected candidate {candidate.position} of {target.id}: "
                f"{e.kind.value}",
                extra={"target_id": target.id, "error_kind": e.kind.value},
            )
            rejected.append(e)
    return records, rejected
