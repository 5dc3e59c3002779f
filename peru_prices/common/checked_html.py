"""Checked HTML element wrapper for safe XPath/CSS querying.

CheckedHtmlElement wraps an lxml element and validates how many results
a selector returns. A mismatch raises HTMLStructuralError carrying the
selector, the expected count and the target being extracted, so layout
drift on a supermarket page shows up with enough context to fix the rules.
"""

from __future__ import annotations

from cssselect import SelectorError
from lxml import etree
from lxml.html import HtmlElement

from peru_prices.common.exceptions import (
    ExtractionErrorKind,
    HTMLStructuralError,
)
from peru_prices.common.selector_utils import selector_type


class CheckedHtmlElement:
    """Wrapper around HtmlElement with validated selectors."""

    def __init__(self, element: HtmlElement, target_id: str = "") -> None:
        """Initialize the checked element wrapper.

        Args:
            element: The lxml HtmlElement to wrap.
            target_id: Optional target identifier for error context.
        """
        self._element = element
        self._target_id = target_id

    @property
    def element(self) -> HtmlElement:
        return self._element

    def _check_count(
        self,
        selector: str,
        kind: str,
        description: str,
        actual_count: int,
        min_count: int,
        max_count: int | None,
    ) -> None:
        if actual_count < min_count or (
            max_count is not None and actual_count > max_count
        ):
            raise HTMLStructuralError(
                selector=selector,
                selector_type=kind,
                description=description,
                expected_min=min_count,
                expected_max=max_count,
                actual_count=actual_count,
                target_id=self._target_id,
            )

    def _invalid_selector(
        self,
        selector: str,
        kind: str,
        description: str,
        min_count: int,
        max_count: int | None,
    ) -> HTMLStructuralError:
        return HTMLStructuralError(
            selector=selector,
            selector_type=kind,
            description=description,
            expected_min=min_count,
            expected_max=max_count,
            actual_count=0,
            target_id=self._target_id,
            kind=ExtractionErrorKind.MALFORMED_CONTENT,
        )

    def checked_xpath(
        self,
        xpath: str,
        description: str,
        min_count: int = 1,
        max_count: int | None = None,
    ) -> list[CheckedHtmlElement | str]:
        """Execute XPath query with count validation.

        String results (text nodes, attribute values) are returned as plain
        strings; element results are wrapped for nested checked queries.

        Args:
            xpath: XPath expression to execute.
            description: Human-readable description of what's being selected.
            min_count: Minimum number of results expected (default: 1).
            max_count: Maximum number of results expected (None = unlimited).

        Returns:
            List of CheckedHtmlElements and/or strings in document order.

        Raises:
            HTMLStructuralError: If the count doesn't match expectations, or
                with kind MALFORMED_CONTENT if the expression is invalid.
        """
        try:
            results = self._element.xpath(xpath)
        except etree.XPathError as e:
            raise self._invalid_selector(
                xpath, "xpath", description, min_count, max_count
            ) from e

        # Scalar results (count(), string()) are treated as a single string.
        if not isinstance(results, list):
            results = [str(results)]

        wrapped: list[CheckedHtmlElement | str] = []
        for result in results:
            if isinstance(result, HtmlElement):
                wrapped.append(CheckedHtmlElement(result, self._target_id))
            elif isinstance(result, str):
                wrapped.append(str(result))

        self._check_count(
            xpath, "xpath", description, len(wrapped), min_count, max_count
        )
        return wrapped

    def checked_css(
        self,
        selector: str,
        description: str,
        min_count: int = 1,
        max_count: int | None = None,
    ) -> list[CheckedHtmlElement]:
        """Execute CSS selector query with count validation.

        Args:
            selector: CSS selector expression.
            description: Human-readable description of what's being selected.
            min_count: Minimum number of elements expected (default: 1).
            max_count: Maximum number of elements expected (None = unlimited).

        Returns:
            List of matching CheckedHtmlElements.

        Raises:
            HTMLStructuralError: If the count doesn't match expectations, or
                with kind MALFORMED_CONTENT if the selector is invalid.

        Example::

            tree = CheckedHtmlElement(lxml.html.fromstring(html), "metro")
            items = tree.checked_css("div.product-item", "product tiles")
            for item in items:
                price = item.checked_css(".price", "price", max_count=1)
        """
        try:
            results = self._element.cssselect(selector)
        except (SelectorError, etree.XPathError) as e:
            raise self._invalid_selector(
                selector, "css", description, min_count, max_count
            ) from e

        self._check_count(
            selector, "css", description, len(results), min_count, max_count
        )
        return [CheckedHtmlElement(r, self._target_id) for r in results]

    def checked_select(
        self,
        selector: str,
        description: str,
        min_count: int = 1,
        max_count: int | None = None,
    ) -> list[CheckedHtmlElement | str]:
        """Dispatch to checked_xpath or checked_css by selector shape."""
        if selector_type(selector) == "xpath":
            return self.checked_xpath(
                selector, description, min_count, max_count
            )
        return list(
            self.checked_css(selector, description, min_count, max_count)
        )

    def text_content(self) -> str:
        """Return the element's text with whitespace collapsed."""
        return " ".join(self._element.text_content().split())

    def __getattr__(self, name: str):
        """Delegate all other attributes to the wrapped element."""
        return getattr(self._element, name)
