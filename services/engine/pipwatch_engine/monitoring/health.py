"""Outcome system health check.

Summarizes whether signals are being resolved: active signals that should
already have terminated, expired signals still missing an outcome, and the
quality of recently written outcomes.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from pipwatch_engine.alerts.dispatcher import NotificationDispatcher, NullDispatcher
from pipwatch_engine.alerts.events import HealthDegraded
from pipwatch_engine.persistence.models import SignalOutcome
from pipwatch_engine.persistence.repository import SignalRepository

logger = logging.getLogger(__name__)

EXPIRED_SAMPLE_SIZE = 50
OUTCOME_SAMPLE_SIZE = 20
MAX_EXPIRED_WITHOUT_OUTCOME = 5


class HealthStatus(str, Enum):
    HEALTHY = "HEALTHY"
    NEEDS_ATTENTION = "NEEDS_ATTENTION"


class OutcomeQuality(str, Enum):
    EXCELLENT = "Excellent"
    GOOD = "Good"
    FAIR = "Fair"
    POOR = "Poor"
    UNKNOWN = "Unknown"


def grade_quality(score: float) -> OutcomeQuality:
    """Map the share of well-formed outcomes to a quality grade."""
    if score >= 0.9:
        return OutcomeQuality.EXCELLENT
    if score >= 0.7:
        return OutcomeQuality.GOOD
    if score >= 0.5:
        return OutcomeQuality.FAIR
    return OutcomeQuality.POOR


def is_well_formed(outcome: SignalOutcome) -> bool:
    """An outcome is well formed if it explains itself and its sign agrees with hit_target."""
    if not outcome.notes or not outcome.notes.strip():
        return False
    return not (outcome.hit_target and outcome.pnl_pips <= 0)


@dataclass
class HealthReport:
    """Snapshot of outcome system health."""

    active_signals: int
    completed_but_active: int
    expired_sampled: int
    expired_without_outcome: int
    outcome_quality: OutcomeQuality
    quality_score: float | None
    status: HealthStatus
    recommendations: list[str] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class OutcomeHealthCheck:
    """Runs the health queries against the signal repository."""

    def __init__(
        self,
        repo: SignalRepository,
        expired_sample_size: int = EXPIRED_SAMPLE_SIZE,
        outcome_sample_size: int = OUTCOME_SAMPLE_SIZE,
        dispatcher: NotificationDispatcher | None = None,
    ):
        self.repo = repo
        self.expired_sample_size = expired_sample_size
        self.outcome_sample_size = outcome_sample_size
        self.dispatcher = dispatcher or NullDispatcher()

    def run(self) -> HealthReport:
        active = self.repo.list_active_signals()
        completed_but_active = [s for s in active if s.all_targets_hit]
        for signal in completed_but_active:
            logger.warning("Signal %s (%s) has all targets hit but is still active", signal.id, signal.symbol)

        sampled, missing = self.repo.count_recent_expired_without_outcome(self.expired_sample_size)

        outcomes = self.repo.get_recent_outcomes(self.outcome_sample_size)
        if outcomes:
            score: float | None = sum(1 for o in outcomes if is_well_formed(o)) / len(outcomes)
            quality = grade_quality(score)
        else:
            score = None
            quality = OutcomeQuality.UNKNOWN

        recommendations: list[str] = []
        if completed_but_active:
            recommendations.append("Process signals with all targets hit")
        if missing > MAX_EXPIRED_WITHOUT_OUTCOME:
            recommendations.append("Repair expired signals without outcomes")
        if quality == OutcomeQuality.POOR:
            recommendations.append("Improve outcome data quality")

        status = HealthStatus.NEEDS_ATTENTION if recommendations else HealthStatus.HEALTHY
        if not recommendations:
            recommendations.append("System operating optimally")

        report = HealthReport(
            active_signals=len(active),
            completed_but_active=len(completed_but_active),
            expired_sampled=sampled,
            expired_without_outcome=missing,
            outcome_quality=quality,
            quality_score=score,
            status=status,
            recommendations=recommendations,
        )

        log = logger.info if status == HealthStatus.HEALTHY else logger.warning
        log(
            "Outcome health %s: %d active (%d completed but active), %d/%d recent expired without outcome, "
            "quality %s",
            status.value, report.active_signals, report.completed_but_active,
            missing, sampled, quality.value,
        )
        if status == HealthStatus.NEEDS_ATTENTION:
            self.dispatcher.dispatch(
                HealthDegraded(
                    status=status.value,
                    quality=quality.value,
                    recommendations=tuple(recommendations),
                    active_signals=report.active_signals,
                    expired_without_outcome=missing,
                )
            )
        return report
