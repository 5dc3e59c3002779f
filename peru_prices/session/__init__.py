from peru_prices.session.base import (
    BaseSession,
    Fetcher,
    RoutingFetcher,
    classify_status,
)
from peru_prices.session.browser import BrowserSession
from peru_prices.session.http import HttpSession

__all__ = [
    "BaseSession",
    "BrowserSession",
    "Fetcher",
    "HttpSession",
    "RoutingFetcher",
    "classify_status",
]
