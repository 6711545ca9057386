"""Instrument pip conventions and pip arithmetic."""

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

from pipwatch_engine.models.signal import Direction

InstrumentCategory = Literal["forex", "metal", "index", "crypto", "unknown"]

INDEX_SYMBOLS = frozenset(
    {"US30", "DJI", "DJ30", "GER40", "DE40", "DAX", "SPX500", "US500", "SP500", "NAS100", "US100", "NDX"}
)

_FOREX_RE = re.compile(r"^[A-Z]{3}.*[A-Z]{3}$")


@dataclass(frozen=True)
class InstrumentSpec:
    """Pip convention for one instrument.

    Attributes:
        symbol: Normalized symbol (upper-case, alphanumeric only)
        category: Instrument family
        pip_multiplier: pips = price difference * pip_multiplier
    """

    symbol: str
    category: InstrumentCategory
    pip_multiplier: int

    @property
    def pip_size(self) -> float:
        return 1.0 / self.pip_multiplier


def normalize_symbol(symbol: str) -> str:
    """Upper-case and strip separators ("eur/usd" -> "EURUSD")."""
    return re.sub(r"[^A-Z0-9]", "", (symbol or "").upper())


def get_instrument_spec(symbol: str) -> InstrumentSpec:
    """Resolve the pip convention for a symbol.

    Metals and indices have fixed conventions; BTC/ETH count whole units;
    forex pairs use 4 decimals except JPY pairs (2 decimals). Anything else
    falls back to the forex default.
    """
    s = normalize_symbol(symbol)

    if s.startswith("XAU"):
        return InstrumentSpec(s, "metal", 10)
    if s.startswith("XAG"):
        return InstrumentSpec(s, "metal", 100)
    if s in INDEX_SYMBOLS:
        return InstrumentSpec(s, "index", 1)
    if s.startswith("BTC") or s.startswith("ETH"):
        return InstrumentSpec(s, "crypto", 1)
    if len(s) >= 6 and _FOREX_RE.match(s):
        is_jpy = s[:3] == "JPY" or s[-3:] == "JPY"
        return InstrumentSpec(s, "forex", 100 if is_jpy else 10000)
    return InstrumentSpec(s, "unknown", 10000)


def calculate_pips(
    symbol: str,
    direction: Direction,
    entry_price: float,
    exit_price: float,
) -> int:
    """Signed pips gained moving from entry to exit in the trade direction.

    Uses decimal arithmetic on the printed float values so that, e.g.,
    1.1100 - 1.1000 on EURUSD is exactly +100 rather than 99.99999.
    """
    multiplier = Decimal(get_instrument_spec(symbol).pip_multiplier)
    entry = Decimal(str(entry_price))
    exit_ = Decimal(str(exit_price))
    diff = exit_ - entry if Direction(direction) == Direction.BUY else entry - exit_
    return int((diff * multiplier).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
