"""Terminal outcome record for a signal."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class ExitReason(str, Enum):
    """Why a signal reached its terminal state."""

    STOP_LOSS = "stop_loss_hit"
    ALL_TARGETS = "all_targets_hit"
    INVALID_CONFIGURATION = "invalid_configuration"
    RETROACTIVE = "retroactive"


class InsertResult(str, Enum):
    """Result of an idempotent outcome insert."""

    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"


@dataclass(frozen=True)
class Outcome:
    """Immutable outcome; at most one exists per signal."""

    signal_id: str
    hit_target: bool
    exit_price: float
    pnl_pips: int
    notes: str
    target_hit_level: int | None = None
    exit_timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        """Validate outcome data."""
        if self.exit_price <= 0:
            raise ValueError("Exit price must be positive")
        if self.hit_target and self.pnl_pips <= 0:
            raise ValueError(
                f"Outcome for {self.signal_id} marked as hit with non-positive pips ({self.pnl_pips})"
            )
        if self.target_hit_level is not None and self.target_hit_level < 1:
            raise ValueError("Target hit level is 1-based")
