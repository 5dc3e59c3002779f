"""Selector helpers shared by the extractor and the browser session.

Extraction rules accept either CSS or XPath. XPath is recognised by its
leading character so that CSS class selectors such as ``.price`` are not
mistaken for relative XPath.
"""

from __future__ import annotations

from typing import Literal

SelectorType = Literal["xpath", "css"]

_XPATH_PREFIXES = ("/", "./", "../", "(")

_EXSLT_PREFIXES = (
    "re:",
    "str:",
    "math:",
    "set:",
    "dyn:",
    "exsl:",
    "func:",
    "date:",
)


def selector_type(selector: str) -> SelectorType:
    """Classify a selector as XPath or CSS.

    Examples:
        >>> selector_type("//div[@data-id]")
        'xpath'
        >>> selector_type("./span/text()")
        'xpath'
        >>> selector_type("div.product-item")
        'css'
        >>> selector_type(".price")
        'css'
    """
    if selector.strip().startswith(_XPATH_PREFIXES):
        return "xpath"
    return "css"


def can_playwright_wait(selector: str) -> bool:
    """Determine if Playwright can wait_for_selector() on a selector.

    Playwright only waits for selectors that target elements. XPath
    expressions returning text nodes or attributes, or using EXSLT
    functions, cannot be waited on.

    Examples:
        >>> can_playwright_wait("//div[@class='content']")
        True
        >>> can_playwright_wait("//div/@href")
        False
        >>> can_playwright_wait("//div/text()")
        False
        >>> can_playwright_wait("div.content")
        True
    """
    if selector_type(selector) == "css":
        return True

    selector = selector.strip()
    if selector.endswith("/text()"):
        return False

    parts = selector.split("/")
    if parts and parts[-1].startswith("@"):
        return False

    return all(prefix not in selector for prefix in _EXSLT_PREFIXES)


def playwright_selector(selector: str) -> str:
    """Return the selector in the engine-prefixed form Playwright expects."""
    if selector_type(selector) == "xpath":
        return f"xpath={selector.strip()}"
    return selector
