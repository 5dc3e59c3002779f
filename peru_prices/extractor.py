"""Turn rendered markup into candidate records.

Extraction is a pure function of the target's rules and the page markup:
no clock, no network, no shared state. The item selector picks one
fragment per product tile; each field rule then reads a string out of
that fragment. Fields that are not present are left out of the candidate
so the normalizer can decide whether they were required.
"""

from __future__ import annotations

import logging
import re

import lxml.html
from lxml import etree

from peru_prices.common.checked_html import CheckedHtmlElement
from peru_prices.common.exceptions import (
    ExtractionError,
    ExtractionErrorKind,
)
from peru_prices.data_types import (
    CandidateRecord,
    FieldRule,
    RenderedContent,
    Target,
)

logger = logging.getLogger(__name__)


def parse_markup(
    target: Target, content: RenderedContent
) -> CheckedHtmlElement:
    """Parse page markup into a checked tree.

    Raises:
        ExtractionError: MALFORMED_CONTENT if the markup is empty or cannot
            be parsed as HTML.
    """
    if not content.markup or not content.markup.strip():
        raise ExtractionError(
            ExtractionErrorKind.MALFORMED_CONTENT,
            "Rendered content is empty",
            target.id,
            {"url": content.url},
        )
    try:
        root = lxml.html.document_fromstring(content.markup)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError) as e:
        raise ExtractionError(
            ExtractionErrorKind.MALFORMED_CONTENT,
            f"Could not parse rendered content: {e}",
            target.id,
            {"url": content.url},
        ) from e
    return CheckedHtmlElement(root, target.id)


def extract_field(
    fragment: CheckedHtmlElement, name: str, rule: FieldRule
) -> str | None:
    """Read one field from an item fragment, or None when it is absent."""
    if rule.selector is None:
        matches: list[CheckedHtmlElement | str] = [fragment]
    else:
        matches = fragment.checked_select(
            rule.selector, f"field '{name}'", min_count=0
        )
    if len(matches) <= rule.position:
        return None

    match = matches[rule.position]
    if isinstance(match, str):
        value: str | None = match
    elif rule.attribute:
        value = match.get(rule.attribute)
    else:
        value = match.text_content()
    if value is None:
        return None

    value = " ".join(value.split())
    if rule.pattern:
        found = re.search(rule.pattern, value)
        if found is None:
            return None
        value = found.group(1) if found.groups() else found.group(0)
        value = value.strip()

    return value or None


def extract(target: Target, content: RenderedContent) -> list[CandidateRecord]:
    """Extract one candidate record per item fragment, in document order.

    Args:
        target: The target whose extraction rules apply.
        content: The rendered page.

    Returns:
        Candidate records, each tagged with its fragment position.

    Raises:
        ExtractionError: NO_RECORDS_FOUND when the item selector matches
            nothing, MALFORMED_CONTENT for unparsable markup or selectors.
    """
    tree = parse_markup(target, content)
    rules = target.rules
    fragments = tree.checked_select(
        rules.item_selector, "item fragments", min_count=1
    )

    candidates: list[CandidateRecord] = []
    for position, fragment in enumerate(fragments):
        if isinstance(fragment, str):
            raise ExtractionError(
                ExtractionErrorKind.MALFORMED_CONTENT,
                "Item selector must select elements, not text or attributes",
                target.id,
                {"selector": rules.item_selector},
            )
        fields: dict[str, str] = {}
        for name, rule in rules.fields.items():
            value = extract_field(fragment, name, rule)
            if value is not None:
                fields[name] = value
        candidates.append(
            CandidateRecord(
                target_id=target.id,
                fields=fields,
                position=position,
                source_url=content.url,
            )
        )

    logger.debug(
        f"Extracted {len(candidates)} candidates from {target.id}",
        extra={"target_id": target.id},
    )
    return candidates
