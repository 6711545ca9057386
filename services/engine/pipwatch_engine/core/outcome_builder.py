"""Builds terminal and retroactive outcomes with pip-sign validation."""

import logging
from dataclasses import replace
from datetime import datetime, timezone

from pipwatch_engine.core.evaluator import crosses_stop_loss, is_usable_price
from pipwatch_engine.models.instrument import calculate_pips
from pipwatch_engine.models.outcome import ExitReason, Outcome
from pipwatch_engine.models.signal import Signal

logger = logging.getLogger(__name__)

RETROACTIVE_TAG = "(Retroactive)"


def _stop_loss_outcome(
    signal: Signal,
    targets_hit: tuple[int, ...],
    notes: str,
    exit_timestamp: datetime,
) -> Outcome:
    pips = calculate_pips(signal.symbol, signal.direction, signal.entry_price, signal.stop_loss)
    return Outcome(
        signal_id=signal.id,
        hit_target=False,
        exit_price=signal.stop_loss,
        pnl_pips=pips,
        notes=notes,
        target_hit_level=max(targets_hit) if targets_hit else None,
        exit_timestamp=exit_timestamp,
    )


def _take_profit_outcome(
    signal: Signal,
    targets_hit: tuple[int, ...],
    notes: str,
    exit_timestamp: datetime,
) -> Outcome:
    """Exit at the highest hit target, downgrading to a stop-loss outcome if
    that would not be profitable."""
    level = max(targets_hit)
    exit_price = signal.take_profits[level - 1]
    pips = calculate_pips(signal.symbol, signal.direction, signal.entry_price, exit_price)

    if pips <= 0:
        logger.error(
            "Validation failed for %s (%s %s): TP%d exit %s from entry %s is %d pips, applying stop loss",
            signal.id, signal.symbol, signal.direction.value, level, exit_price, signal.entry_price, pips,
        )
        return _stop_loss_outcome(
            signal,
            targets_hit,
            f"Validation Failed - Stop Loss Applied ({pips} pips)",
            exit_timestamp,
        )

    return Outcome(
        signal_id=signal.id,
        hit_target=True,
        exit_price=exit_price,
        pnl_pips=pips,
        notes=notes,
        target_hit_level=level,
        exit_timestamp=exit_timestamp,
    )


def build_terminal_outcome(
    signal: Signal,
    reason: ExitReason,
    targets_hit: tuple[int, ...] | None = None,
    exit_timestamp: datetime | None = None,
) -> Outcome:
    """
    Build the outcome for a signal that is terminating this tick.

    Args:
        signal: Signal snapshot, with the stop-loss as currently stored (trailed or not)
        reason: STOP_LOSS, ALL_TARGETS or INVALID_CONFIGURATION
        targets_hit: Final targets-hit set (defaults to the signal's)
        exit_timestamp: Exit time (defaults to now)

    Returns:
        Outcome honouring ``hit_target => pnl_pips > 0``
    """
    targets = tuple(sorted(targets_hit if targets_hit is not None else signal.targets_hit))
    ts = exit_timestamp or datetime.now(timezone.utc)

    if reason == ExitReason.INVALID_CONFIGURATION:
        return _stop_loss_outcome(signal, targets, "Invalid Stop Loss Configuration - Force Expired", ts)

    if reason == ExitReason.STOP_LOSS:
        if targets:
            notes = f"Trailing Stop Hit after TP{max(targets)}"
        else:
            notes = "Stop Loss Hit"
        return _stop_loss_outcome(signal, targets, notes, ts)

    if reason == ExitReason.ALL_TARGETS:
        if not targets:
            raise ValueError(f"Signal {signal.id} cannot exit on targets with no targets hit")
        if len(targets) >= len(signal.take_profits):
            notes = "All Take Profits Hit"
        else:
            notes = f"Take Profit {max(targets)} Hit"
        return _take_profit_outcome(signal, targets, notes, ts)

    raise ValueError(f"Unsupported terminal exit reason: {reason}")


def build_corrupt_outcome(
    signal: Signal,
    price: float | None,
    exit_timestamp: datetime | None = None,
) -> Outcome | None:
    """
    Build a stop-loss style outcome for a signal whose stored values are unusable.

    The exit is the stored stop-loss if usable, else the current price, else
    the entry price. Pips are only computed when both entry and exit are
    usable. Returns None when no usable exit price exists yet.
    """
    exit_price = next((p for p in (signal.stop_loss, price, signal.entry_price) if is_usable_price(p)), None)
    if exit_price is None:
        return None

    pips = 0
    if is_usable_price(signal.entry_price):
        pips = calculate_pips(signal.symbol, signal.direction, signal.entry_price, exit_price)
    in_ladder = [t for t in signal.targets_hit if 1 <= t <= len(signal.take_profits)]
    return Outcome(
        signal_id=signal.id,
        hit_target=False,
        exit_price=exit_price,
        pnl_pips=pips,
        notes=f"Corrupt Data - Force Expired ({signal.data_error})",
        target_hit_level=max(in_ladder) if in_ladder else None,
        exit_timestamp=exit_timestamp or datetime.now(timezone.utc),
    )


def build_retroactive_outcome(
    signal: Signal,
    price: float | None,
    exit_timestamp: datetime | None = None,
) -> Outcome:
    """
    Re-derive an outcome for a signal expired without one.

    The last known price decides: a stop-loss crossing wins, then the highest
    recorded target, else the exit is recorded at that price with an unknown
    reason. Without a usable price the entry price is used.

    Args:
        signal: Expired signal snapshot
        price: Last known price for its symbol, if any
        exit_timestamp: Exit time (defaults to now)

    Returns:
        Outcome whose notes are tagged as retroactive
    """
    ts = exit_timestamp or datetime.now(timezone.utc)
    if signal.data_error is not None:
        corrupt = build_corrupt_outcome(signal, price, ts)
        if corrupt is None:
            raise ValueError(f"No usable exit price for corrupt signal {signal.id}")
        return replace(corrupt, notes=f"{corrupt.notes} {RETROACTIVE_TAG}")

    last_price = price if is_usable_price(price) else signal.entry_price
    targets = signal.targets_hit

    if crosses_stop_loss(signal, last_price):
        return _stop_loss_outcome(signal, targets, f"Stop Loss Hit {RETROACTIVE_TAG}", ts)

    if targets:
        if signal.all_targets_hit:
            notes = f"All Take Profits Hit {RETROACTIVE_TAG}"
        else:
            notes = f"Take Profit {max(targets)} Hit {RETROACTIVE_TAG}"
        outcome = _take_profit_outcome(signal, targets, notes, ts)
        if RETROACTIVE_TAG not in outcome.notes:
            outcome = replace(outcome, notes=f"{outcome.notes} {RETROACTIVE_TAG}")
        return outcome

    pips = calculate_pips(signal.symbol, signal.direction, signal.entry_price, last_price)
    return Outcome(
        signal_id=signal.id,
        hit_target=False,
        exit_price=last_price,
        pnl_pips=pips,
        notes=f"Unknown Exit Reason {RETROACTIVE_TAG}",
        target_hit_level=None,
        exit_timestamp=ts,
    )
