"""Tests for CheckedHtmlElement count-validated queries."""

import lxml.html
import pytest

from peru_prices.common.checked_html import CheckedHtmlElement
from peru_prices.common.exceptions import (
    ExtractionErrorKind,
    HTMLStructuralError,
)

HTML = """
<html><body>
  <div id="grid">
    <div class="tile" data-id="A1"><span class="price">S/ 4.50</span></div>
    <div class="tile" data-id="A2"><span class="price">S/ 7.00</span></div>
  </div>
  <p class="note">  Precios   incluyen IGV </p>
</body></html>
"""


@pytest.fixture
def tree() -> CheckedHtmlElement:
    return CheckedHtmlElement(lxml.html.fromstring(HTML), "metro-arroz")


class TestCheckedCss:
    def test_returns_wrapped_elements(self, tree: CheckedHtmlElement):
        tiles = tree.checked_css("div.tile", "product tiles")

        assert [t.get("data-id") for t in tiles] == ["A1", "A2"]
        assert all(isinstance(t, CheckedHtmlElement) for t in tiles)

    def test_nested_queries(self, tree: CheckedHtmlElement):
        (first, _) = tree.checked_css("div.tile", "product tiles")

        (price,) = first.checked_css(".price", "price", max_count=1)

        assert price.text_content() == "S/ 4.50"

    def test_too_few_raises(self, tree: CheckedHtmlElement):
        with pytest.raises(HTMLStructuralError) as exc_info:
            tree.checked_css("table", "price table")

        error = exc_info.value
        assert error.kind is ExtractionErrorKind.NO_RECORDS_FOUND
        assert error.actual_count == 0
        assert error.target_id == "metro-arroz"
        assert "at least 1" in error.message

    def test_too_many_raises(self, tree: CheckedHtmlElement):
        with pytest.raises(HTMLStructuralError) as exc_info:
            tree.checked_css("div.tile", "tile", min_count=1, max_count=1)

        assert exc_info.value.actual_count == 2
        assert "exactly 1" in exc_info.value.message

    @pytest.mark.parametrize("selector", ["div[", "p::text", "li:bogus"])
    def test_invalid_selector_is_malformed(
        self, tree: CheckedHtmlElement, selector: str
    ):
        with pytest.raises(HTMLStructuralError) as exc_info:
            tree.checked_css(selector, "broken")

        assert exc_info.value.kind is ExtractionErrorKind.MALFORMED_CONTENT
        assert exc_info.value.selector == selector


class TestCheckedXpath:
    def test_attribute_values_are_strings(self, tree: CheckedHtmlElement):
        ids = tree.checked_xpath("//div[@class='tile']/@data-id", "ids")

        assert ids == ["A1", "A2"]

    def test_scalar_result(self, tree: CheckedHtmlElement):
        assert tree.checked_xpath("count(//div[@class='tile'])", "n") == [
            "2.0"
        ]

    def test_optional_query(self, tree: CheckedHtmlElement):
        assert tree.checked_xpath("//table", "table", min_count=0) == []

    def test_invalid_expression_is_malformed(self, tree: CheckedHtmlElement):
        with pytest.raises(HTMLStructuralError) as exc_info:
            tree.checked_xpath("//div[", "broken")

        assert exc_info.value.kind is ExtractionErrorKind.MALFORMED_CONTENT
        assert exc_info.value.selector_type == "xpath"


class TestCheckedSelect:
    def test_dispatches_by_shape(self, tree: CheckedHtmlElement):
        by_css = tree.checked_select("span.price", "prices")
        by_xpath = tree.checked_select("//span[@class='price']", "prices")

        assert [e.text_content() for e in by_css] == [
            e.text_content() for e in by_xpath
        ]


def test_text_content_collapses_whitespace(tree: CheckedHtmlElement):
    (note,) = tree.checked_css("p.note", "note")

    assert note.text_content() == "Precios incluyen IGV"
