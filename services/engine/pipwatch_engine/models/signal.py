"""Signal models for outcome monitoring."""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum


class Direction(str, Enum):
    """Trade direction of a signal."""

    BUY = "BUY"
    SELL = "SELL"


class SignalStatus(str, Enum):
    """Signal lifecycle status. ACTIVE -> EXPIRED is one-way."""

    ACTIVE = "active"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Signal:
    """Snapshot of a monitored trading signal.

    Prices are in quote currency. ``targets_hit`` holds 1-based indices into
    ``take_profits`` and is kept sorted ascending.
    """

    id: str
    symbol: str
    direction: Direction
    entry_price: float
    stop_loss: float
    take_profits: tuple[float, ...]
    targets_hit: tuple[int, ...] = ()
    status: SignalStatus = SignalStatus.ACTIVE
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        """Normalize collections so snapshots compare and hash predictably."""
        object.__setattr__(self, "direction", Direction(self.direction))
        object.__setattr__(self, "status", SignalStatus(self.status))
        object.__setattr__(self, "take_profits", tuple(float(tp) for tp in self.take_profits))
        object.__setattr__(self, "targets_hit", tuple(sorted({int(t) for t in self.targets_hit})))

    @property
    def is_buy(self) -> bool:
        return self.direction == Direction.BUY

    @property
    def has_valid_stop_direction(self) -> bool:
        """True when the stop-loss sits on the losing side of entry."""
        if self.is_buy:
            return self.stop_loss < self.entry_price
        return self.stop_loss > self.entry_price

    @property
    def all_targets_hit(self) -> bool:
        """True when every rung of the take-profit ladder has been hit."""
        ladder = set(range(1, len(self.take_profits) + 1))
        return bool(ladder) and ladder <= set(self.targets_hit)

    @property
    def data_error(self) -> str | None:
        """Why the stored values cannot be evaluated, or None if they can."""
        prices = (self.entry_price, self.stop_loss, *self.take_profits)
        if not all(math.isfinite(p) and p > 0 for p in prices):
            return "non-positive or non-finite price"
        if any(t < 1 or t > len(self.take_profits) for t in self.targets_hit):
            return "target index outside the take-profit ladder"
        return None

    @property
    def highest_target_hit(self) -> int | None:
        return max(self.targets_hit) if self.targets_hit else None

    def with_targets(self, targets_hit: tuple[int, ...]) -> "Signal":
        return replace(self, targets_hit=targets_hit)

    def with_stop_loss(self, stop_loss: float) -> "Signal":
        return replace(self, stop_loss=stop_loss)
