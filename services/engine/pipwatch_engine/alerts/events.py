"""Domain events emitted after successful persistence steps."""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from pipwatch_engine.models.outcome import Outcome
from pipwatch_engine.models.signal import Direction


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TargetHit:
    """A take-profit level was confirmed and persisted."""

    signal_id: str
    symbol: str
    direction: Direction
    level: int
    target_price: float
    price: float
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class StopLossHit:
    """A stop-loss (or trailing stop) was confirmed for a signal."""

    signal_id: str
    symbol: str
    direction: Direction
    stop_loss: float
    price: float
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class SignalCompleted:
    """A terminal outcome was written for a signal."""

    signal_id: str
    symbol: str
    direction: Direction
    outcome: Outcome
    retroactive: bool = False
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class HealthDegraded:
    """The outcome health check found something that needs attention."""

    status: str
    quality: str
    recommendations: tuple[str, ...]
    active_signals: int
    expired_without_outcome: int
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class PassFailed:
    """A reconciliation or repair pass finished with errors."""

    pass_name: str
    errors: int
    message: str
    occurred_at: datetime = field(default_factory=_now)


NotificationEvent = TargetHit | StopLossHit | SignalCompleted | HealthDegraded | PassFailed
