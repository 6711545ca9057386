"""Abstract signal and outcome store interfaces."""

from abc import ABC, abstractmethod
from collections.abc import Collection

from pipwatch_engine.models.outcome import InsertResult, Outcome
from pipwatch_engine.models.signal import Signal


class SignalStore(ABC):
    """Persistent signals table as seen by the monitoring engine."""

    @abstractmethod
    def list_active_signals(self) -> list[Signal]:
        """Return all active, system-generated signals.

        Rows that cannot be read as a Signal are resolved by the store and
        left out, so one corrupt row never hides the others.
        """
        ...

    @abstractmethod
    def update_targets_hit(self, signal_id: str, targets_hit: tuple[int, ...]) -> None:
        """
        Persist a new targets-hit set.

        Args:
            signal_id: Signal to update
            targets_hit: Full set of 1-based hit target indices
        """
        ...

    @abstractmethod
    def update_stop_loss(self, signal_id: str, stop_loss: float) -> bool:
        """
        Persist a tightened stop-loss.

        Returns:
            True if the stored stop moved, False if it was already at least as tight
        """
        ...

    @abstractmethod
    def expire_signal(self, signal_id: str, final_targets_hit: tuple[int, ...]) -> bool:
        """
        Set status to expired with the final targets-hit set.

        Returns:
            True if this call flipped the status, False if it was already expired
        """
        ...

    @abstractmethod
    def list_expired_without_outcome(self, limit: int, exclude_ids: Collection[str] = ()) -> list[Signal]:
        """Return up to ``limit`` expired signals that have no outcome, skipping ``exclude_ids``."""
        ...


class OutcomeStore(ABC):
    """Persistent outcomes table, unique on signal id."""

    @abstractmethod
    def try_insert_outcome(self, outcome: Outcome) -> InsertResult:
        """
        Insert an outcome atomically.

        Returns:
            INSERTED, or ALREADY_EXISTS if another writer got there first
        """
        ...

    @abstractmethod
    def has_outcome(self, signal_id: str) -> bool:
        """Return True if an outcome exists for the signal."""
        ...
