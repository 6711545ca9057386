"""Stub price feed for testing and local runs with deterministic data."""

import logging
import threading

from .provider import PriceChangeCallback, PriceFeed

logger = logging.getLogger(__name__)


class StubPriceFeed(PriceFeed):
    """In-memory price feed; prices are set explicitly and pushed to subscribers."""

    def __init__(self, prices: dict[str, float] | None = None):
        """
        Initialize stub feed.

        Args:
            prices: Initial symbol -> price mapping
        """
        self._prices: dict[str, float] = dict(prices or {})
        self._subscribers: list[PriceChangeCallback] = []
        self._lock = threading.Lock()

    def get_prices(self, symbols: set[str]) -> dict[str, float]:
        """Return known prices for the requested symbols."""
        with self._lock:
            return {s: self._prices[s] for s in symbols if s in self._prices}

    def subscribe(self, on_price_change: PriceChangeCallback) -> None:
        self._subscribers.append(on_price_change)

    def set_price(self, symbol: str, price: float) -> None:
        """Update a price and notify subscribers."""
        with self._lock:
            self._prices[symbol] = price
        for callback in list(self._subscribers):
            try:
                callback(symbol, price)
            except Exception as e:
                logger.error("Price subscriber failed for %s: %s", symbol, e)

    def remove_price(self, symbol: str) -> None:
        """Simulate a symbol going dark."""
        with self._lock:
            self._prices.pop(symbol, None)
