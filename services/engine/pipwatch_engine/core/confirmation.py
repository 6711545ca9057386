"""Debounced stop-loss confirmation.

Each signal has at most one crossing streak. A streak is confirmed only when
it has both enough observations and has lasted long enough; any non-crossing
observation cancels it.

    CLEAR --cross--> DETECTING --cross (count & window met)--> CONFIRMED
      ^                  |
      +----no cross------+
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)

CONFIRMATION_COUNT = 2
CONFIRMATION_WINDOW = 15.0  # seconds
CONFIRMATION_MAX_AGE = 60.0  # seconds


class ConfirmationStatus(str, Enum):
    """Tracker state for a signal after an observation."""

    CLEAR = "CLEAR"
    DETECTING = "DETECTING"
    CONFIRMED = "CONFIRMED"


@dataclass
class ConfirmationState:
    """An open crossing streak."""

    count: int
    first_detected_at: float
    last_price: float


class ConfirmationTracker:
    """Per-signal stop-loss debounce state machine.

    State is process-local and not persisted. Losing it on restart only
    restarts the debounce.
    """

    def __init__(
        self,
        confirmation_count: int = CONFIRMATION_COUNT,
        confirmation_window: float = CONFIRMATION_WINDOW,
        max_age: float = CONFIRMATION_MAX_AGE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize tracker.

        Args:
            confirmation_count: Crossings required to confirm
            confirmation_window: Seconds required between first crossing and confirmation
            max_age: Streaks older than this are purged
            clock: Monotonic time source in seconds
        """
        self.confirmation_count = confirmation_count
        self.confirmation_window = confirmation_window
        self.max_age = max_age
        self._clock = clock
        self._states: dict[str, ConfirmationState] = {}

    def observe(self, signal_id: str, crossed: bool, price: float) -> ConfirmationStatus:
        """
        Feed one observation for a signal.

        Args:
            signal_id: Signal being observed
            crossed: Whether price is at or beyond the stop-loss
            price: Observed price

        Returns:
            Status after the observation
        """
        if not crossed:
            if self._states.pop(signal_id, None) is not None:
                logger.debug("SL streak cancelled for %s at %s", signal_id, price)
            return ConfirmationStatus.CLEAR

        now = self._clock()
        state = self._states.get(signal_id)

        if state is None:
            self._states[signal_id] = ConfirmationState(count=1, first_detected_at=now, last_price=price)
            logger.debug("SL detection started for %s at %s", signal_id, price)
            return ConfirmationStatus.DETECTING

        state.count += 1
        state.last_price = price
        elapsed = now - state.first_detected_at

        if state.count >= self.confirmation_count and elapsed >= self.confirmation_window:
            del self._states[signal_id]
            logger.info(
                "SL confirmed for %s after %d observations over %.1fs (last price %s)",
                signal_id, state.count, elapsed, price,
            )
            return ConfirmationStatus.CONFIRMED

        return ConfirmationStatus.DETECTING

    def purge_stale(self) -> list[str]:
        """Drop streaks older than ``max_age``; returns the purged signal ids."""
        now = self._clock()
        stale = [
            signal_id
            for signal_id, state in self._states.items()
            if now - state.first_detected_at > self.max_age
        ]
        for signal_id in stale:
            del self._states[signal_id]
            logger.debug("Clearing stale SL confirmation for %s", signal_id)
        return stale

    def forget(self, signal_id: str) -> None:
        """Drop any streak for a signal that has terminated."""
        self._states.pop(signal_id, None)

    def get_state(self, signal_id: str) -> ConfirmationState | None:
        return self._states.get(signal_id)

    def __len__(self) -> int:
        return len(self._states)
