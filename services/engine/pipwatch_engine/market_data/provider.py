"""Abstract price feed interface."""

from abc import ABC, abstractmethod
from typing import Callable

PriceChangeCallback = Callable[[str, float], None]


class PriceFeed(ABC):
    """Abstract interface for current-price sources."""

    @abstractmethod
    def get_prices(self, symbols: set[str]) -> dict[str, float]:
        """
        Fetch current prices for a batch of symbols.

        Args:
            symbols: Symbols to look up (e.g., {"EURUSD", "GBPUSD"})

        Returns:
            Mapping of symbol to price; symbols without data are omitted
        """
        ...

    def subscribe(self, on_price_change: PriceChangeCallback) -> None:
        """
        Register a callback fired when a price changes.

        Optional: feeds without push notifications ignore subscribers and the
        engine relies on its fixed tick interval.

        Args:
            on_price_change: Called with (symbol, price)
        """
        return None
