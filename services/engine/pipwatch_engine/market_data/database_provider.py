"""Price feed backed by the market_state table.

The market data stream (a separate process) upserts the latest price per
symbol into ``market_state``. This feed reads it in one batched query and can
poll for changes to trigger early reconciliation passes.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.orm import Session

from pipwatch_engine.persistence.models import MarketState

from .provider import PriceChangeCallback, PriceFeed

logger = logging.getLogger(__name__)


def _as_utc(ts: datetime) -> datetime:
    # SQLite drops tzinfo on round-trip
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


class DatabasePriceFeed(PriceFeed):
    """Reads current prices from the market_state table.

    Attributes:
        session_factory: Callable returning a new SQLAlchemy session
        max_price_age_seconds: Rows older than this are treated as missing
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        max_price_age_seconds: float = 120.0,
    ) -> None:
        self.session_factory = session_factory
        self.max_price_age_seconds = max_price_age_seconds
        self._subscribers: list[PriceChangeCallback] = []
        self._last_seen: dict[str, datetime] = {}
        self._watcher: threading.Thread | None = None
        self._stop = threading.Event()

    def get_prices(self, symbols: set[str]) -> dict[str, float]:
        """Return fresh prices for the requested symbols."""
        if not symbols:
            return {}

        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.max_price_age_seconds)
        with self.session_factory() as session:
            rows = session.query(MarketState).filter(MarketState.symbol.in_(sorted(symbols))).all()

        prices: dict[str, float] = {}
        for row in rows:
            if _as_utc(row.updated_at) < cutoff:
                logger.debug("Stale price for %s (updated %s), ignoring", row.symbol, row.updated_at)
                continue
            prices[row.symbol] = float(row.current_price)
        return prices

    def subscribe(self, on_price_change: PriceChangeCallback) -> None:
        self._subscribers.append(on_price_change)

    def poll_changes(self) -> int:
        """
        Fire subscribers for every row updated since the previous poll.

        Returns:
            Number of changed symbols
        """
        with self.session_factory() as session:
            rows = session.query(MarketState).all()

        changed = 0
        for row in rows:
            updated_at = _as_utc(row.updated_at)
            previous = self._last_seen.get(row.symbol)
            if previous is not None and updated_at <= previous:
                continue
            self._last_seen[row.symbol] = updated_at
            changed += 1
            for callback in list(self._subscribers):
                try:
                    callback(row.symbol, float(row.current_price))
                except Exception as e:
                    logger.error("Price subscriber failed for %s: %s", row.symbol, e)
        return changed

    def start_watcher(self, poll_interval_seconds: float = 1.0) -> None:
        """Poll for price changes on a daemon thread until ``stop_watcher``."""
        if self._watcher is not None or not self._subscribers:
            return
        self._stop.clear()

        def _run() -> None:
            while not self._stop.wait(poll_interval_seconds):
                try:
                    self.poll_changes()
                except Exception as e:
                    logger.warning("Market state poll failed: %s", e)

        self._watcher = threading.Thread(target=_run, name="market-state-watcher", daemon=True)
        self._watcher.start()
        logger.info("Market state watcher started (every %.1fs)", poll_interval_seconds)

    def stop_watcher(self) -> None:
        self._stop.set()
        if self._watcher is not None:
            self._watcher.join(timeout=5.0)
            self._watcher = None
