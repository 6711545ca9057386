"""Price feeds."""

from .database_provider import DatabasePriceFeed
from .provider import PriceChangeCallback, PriceFeed
from .stub_provider import StubPriceFeed

__all__ = [
    "DatabasePriceFeed",
    "PriceChangeCallback",
    "PriceFeed",
    "StubPriceFeed",
]
