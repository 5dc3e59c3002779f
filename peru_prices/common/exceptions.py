"""Exception types for the price scraping pipeline.

Every failure the pipeline knows how to classify is a PriceScraperError
carrying the target it happened on and a context dict. Each family has a
`kind` enum so the orchestrator can decide retry, isolation and abort
behavior from a table instead of from message text.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class PriceScraperError(Exception):
    """Base class for classified pipeline failures.

    Scrapers make assumptions about how a source renders and formats its
    prices. When those assumptions break, the failure should say which
    target broke and give enough context to fix the rules.
    """

    def __init__(
        self,
        message: str,
        target_id: str = "",
        context: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable description of the failure.
            target_id: Identifier of the target being processed.
            context: Optional dict of additional context (url, selector, etc).
        """
        self.message = message
        self.target_id = target_id
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the error message with context.

        Returns:
            Formatted error message string.
        """
        parts = [self.message]
        if self.target_id:
            parts.append(f"Target: {self.target_id}")

        if self.context:
            parts.append("Context:")
            for key, value in self.context.items():
                parts.append(f"  {key}: {value}")

        return "\n".join(parts)


class ConfigurationError(PriceScraperError):
    """Raised at startup when settings or the catalog are invalid."""


# =============================================================================
# Fetch
# =============================================================================


class FetchErrorKind(str, Enum):
    TIMEOUT = "timeout"
    NAVIGATION = "navigation"
    CONNECTION = "connection"


class FetchError(PriceScraperError):
    """Raised by a session when a page could not be rendered.

    Attributes:
        kind: What went wrong; TIMEOUT and CONNECTION are usually transient,
            NAVIGATION (bad URL, 4xx) is not.
        url: The URL that was requested.
        status: The HTTP status of the document response, when known.
    """

    def __init__(
        self,
        kind: FetchErrorKind,
        message: str,
        target_id: str = "",
        url: str = "",
        status: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.kind = kind
        self.url = url
        self.status = status
        full_context: dict[str, Any] = {"kind": kind.value}
        if url:
            full_context["url"] = url
        if status is not None:
            full_context["status"] = status
        full_context.update(context or {})
        super().__init__(message, target_id, full_context)


# =============================================================================
# Extraction
# =============================================================================


class ExtractionErrorKind(str, Enum):
    NO_RECORDS_FOUND = "no_records_found"
    MALFORMED_CONTENT = "malformed_content"


class ExtractionError(PriceScraperError):
    """Raised when rendered content cannot be turned into candidates."""

    def __init__(
        self,
        kind: ExtractionErrorKind,
        message: str,
        target_id: str = "",
        context: dict[str, Any] | None = None,
    ) -> None:
        self.kind = kind
        super().__init__(message, target_id, context)


class HTMLStructuralError(ExtractionError):
    """Raised when a selector matches a different number of elements.

    This usually means the site layout drifted. A selector that matches
    nothing at all for the item list is reported as NO_RECORDS_FOUND;
    a selector that cannot even be compiled is MALFORMED_CONTENT.

    Attributes:
        selector: The XPath or CSS selector that was used.
        selector_type: Type of selector ("xpath" or "css").
        actual_count: Number of elements found.
    """

    def __init__(
        self,
        selector: str,
        selector_type: str,
        description: str,
        expected_min: int,
        expected_max: int | None,
        actual_count: int,
        target_id: str = "",
        kind: ExtractionErrorKind = ExtractionErrorKind.NO_RECORDS_FOUND,
    ) -> None:
        self.selector = selector
        self.selector_type = selector_type
        self.description = description
        self.expected_min = expected_min
        self.expected_max = expected_max
        self.actual_count = actual_count

        if expected_max is None:
            expected_str = f"at least {expected_min}"
        elif expected_min == expected_max:
            expected_str = f"exactly {expected_min}"
        else:
            expected_str = f"between {expected_min} and {expected_max}"

        message = (
            f"HTML structure mismatch: Expected {expected_str} "
            f"elements for '{description}', but found {actual_count}"
        )

        context = {
            "selector": selector,
            "selector_type": selector_type,
            "expected_min": expected_min,
            "expected_max": expected_max
            if expected_max is not None
            else "unlimited",
            "actual_count": actual_count,
        }

        super().__init__(kind, message, target_id, context)


# =============================================================================
# Validation
# =============================================================================


class RecordValidationErrorKind(str, Enum):
    UNPARSABLE_NUMBER = "unparsable_number"
    MISSING_REQUIRED_FIELD = "missing_required_field"
    OUT_OF_RANGE = "out_of_range"


class RecordValidationError(PriceScraperError):
    """Raised when a candidate record cannot become a PriceRecord.

    Attributes:
        kind: Which validation boundary rejected the candidate.
        field: The offending field name, when there is one.
        position: Index of the fragment the candidate came from.
    """

    def __init__(
        self,
        kind: RecordValidationErrorKind,
        message: str,
        target_id: str = "",
        field: str | None = None,
        position: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.kind = kind
        self.field = field
        self.position = position
        full_context: dict[str, Any] = {"kind": kind.value}
        if field is not None:
            full_context["field"] = field
        if position is not None:
            full_context["position"] = position
        full_context.update(context or {})
        super().__init__(message, target_id, full_context)


# =============================================================================
# Output
# =============================================================================


class WriteErrorKind(str, Enum):
    KEY_CONFLICT = "key_conflict"
    STORAGE_UNAVAILABLE = "storage_unavailable"


class WriteError(PriceScraperError):
    """Raised by the store.

    STORAGE_UNAVAILABLE is fatal for the whole run. KEY_CONFLICT is
    normally reported inside WriteResult rather than raised.
    """

    def __init__(
        self,
        kind: WriteErrorKind,
        message: str,
        target_id: str = "",
        context: dict[str, Any] | None = None,
    ) -> None:
        self.kind = kind
        super().__init__(message, target_id, context)
