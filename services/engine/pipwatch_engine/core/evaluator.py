"""Per-tick evaluation of a signal against the current price.

The evaluator is a pure function of (signal snapshot, price). It never
persists anything and never finalizes a stop-out: the stop-loss crossing it
reports is a raw observation for the confirmation tracker.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum

from pipwatch_engine.models.instrument import calculate_pips
from pipwatch_engine.models.signal import Signal

logger = logging.getLogger(__name__)

TRAILING_STOP_FACTOR = 0.5


class SkipReason(str, Enum):
    """Why a signal was not evaluated this tick."""

    NO_PRICE = "no_price"
    NO_TAKE_PROFITS = "no_take_profits"


@dataclass(frozen=True)
class Evaluation:
    """Result of evaluating one signal at one price.

    Attributes:
        signal_id: Evaluated signal
        price: Price used for evaluation (None when skipped for missing data)
        skipped: Reason the signal was not evaluated, if any
        invalid_configuration: Stop-loss is on the wrong side of entry
            before any target has been hit, or stored values are corrupt
        targets_hit: Full targets-hit set after this tick (sorted)
        new_targets: Targets accepted this tick
        trailing_stop: New stop-loss if it should be tightened, else None
        stop_loss_crossed: Raw, unconfirmed stop-loss crossing
        data_error: Stored values that cannot be evaluated, if any
    """

    signal_id: str
    price: float | None
    skipped: SkipReason | None = None
    invalid_configuration: bool = False
    targets_hit: tuple[int, ...] = ()
    new_targets: tuple[int, ...] = ()
    trailing_stop: float | None = None
    stop_loss_crossed: bool = False
    data_error: str | None = None

    @property
    def targets_changed(self) -> bool:
        return bool(self.new_targets)


def is_usable_price(price: float | None) -> bool:
    """Non-positive, NaN, and infinite prices count as missing data."""
    return price is not None and math.isfinite(price) and price > 0


def touched_targets(signal: Signal, price: float) -> tuple[int, ...]:
    """Return newly touched take-profit levels whose pips from entry are positive.

    Targets already in ``signal.targets_hit`` are ignored. A touch on a target
    that sits on the losing side of entry is rejected and logged; it indicates
    a malformed ladder.
    """
    accepted: list[int] = []
    for index, tp_price in enumerate(signal.take_profits):
        level = index + 1
        if level in signal.targets_hit:
            continue

        touched = price >= tp_price if signal.is_buy else price <= tp_price
        if not touched:
            continue

        pips = calculate_pips(signal.symbol, signal.direction, signal.entry_price, tp_price)
        if pips > 0:
            accepted.append(level)
            logger.info(
                "TP%d hit validated: %s %s %s - entry=%s tp=%s price=%s pips=+%d",
                level, signal.id, signal.symbol, signal.direction.value,
                signal.entry_price, tp_price, price, pips,
            )
        else:
            logger.warning(
                "TP%d hit rejected: %s %s %s would be %d pips (entry=%s tp=%s)",
                level, signal.id, signal.symbol, signal.direction.value,
                pips, signal.entry_price, tp_price,
            )
    return tuple(accepted)


def compute_trailing_stop(
    signal: Signal,
    price: float,
    factor: float = TRAILING_STOP_FACTOR,
) -> float | None:
    """
    Candidate trailing stop, or None if it would not tighten the current stop.

    Trailing distance is ``|TP1 - entry| * factor``. The stop only ratchets
    toward price: higher for BUY, lower for SELL.

    Args:
        signal: Signal snapshot with at least one target hit
        price: Current price
        factor: Fraction of the TP1 distance kept as trailing distance

    Returns:
        New stop-loss or None
    """
    if not signal.targets_hit or not signal.take_profits:
        return None

    trailing_distance = abs(signal.take_profits[0] - signal.entry_price) * factor

    if signal.is_buy:
        candidate = price - trailing_distance
        return candidate if candidate > signal.stop_loss else None

    candidate = price + trailing_distance
    return candidate if candidate < signal.stop_loss else None


def crosses_stop_loss(signal: Signal, price: float) -> bool:
    """BUY crosses at or below the stop, SELL at or above it."""
    if signal.is_buy:
        return price <= signal.stop_loss
    return price >= signal.stop_loss


class Evaluator:
    """Evaluates signals against prices.

    Order of checks: directional sanity, take-profits, trailing stop,
    stop-loss crossing (against the possibly tightened stop).
    """

    def __init__(
        self,
        trailing_stop_factor: float = TRAILING_STOP_FACTOR,
        trailing_stop_enabled: bool = True,
    ) -> None:
        self.trailing_stop_factor = trailing_stop_factor
        self.trailing_stop_enabled = trailing_stop_enabled

    def evaluate(self, signal: Signal, price: float | None) -> Evaluation:
        """
        Evaluate a signal at the current price.

        Args:
            signal: Current signal snapshot
            price: Current price for the signal's symbol, or None if unavailable

        Returns:
            Evaluation describing what changed and whether the stop was crossed
        """
        if not is_usable_price(price):
            return Evaluation(signal_id=signal.id, price=None, skipped=SkipReason.NO_PRICE,
                              targets_hit=signal.targets_hit)
        assert price is not None

        if signal.data_error is not None:
            return Evaluation(
                signal_id=signal.id,
                price=price,
                invalid_configuration=True,
                data_error=signal.data_error,
                targets_hit=signal.targets_hit,
            )

        if not signal.take_profits:
            logger.warning("Signal %s (%s) has no take profits, skipping", signal.id, signal.symbol)
            return Evaluation(signal_id=signal.id, price=price, skipped=SkipReason.NO_TAKE_PROFITS,
                              targets_hit=signal.targets_hit)

        # Trailing moves the stop past entry once a target is hit
        if not signal.targets_hit and not signal.has_valid_stop_direction:
            return Evaluation(
                signal_id=signal.id,
                price=price,
                invalid_configuration=True,
                targets_hit=signal.targets_hit,
            )

        new_targets = touched_targets(signal, price)
        current = signal
        if new_targets:
            current = signal.with_targets(signal.targets_hit + new_targets)

        trailing_stop = None
        if self.trailing_stop_enabled:
            trailing_stop = compute_trailing_stop(current, price, self.trailing_stop_factor)
            if trailing_stop is not None:
                current = current.with_stop_loss(trailing_stop)

        return Evaluation(
            signal_id=signal.id,
            price=price,
            targets_hit=current.targets_hit,
            new_targets=new_targets,
            trailing_stop=trailing_stop,
            stop_loss_crossed=crosses_stop_loss(current, price),
        )
