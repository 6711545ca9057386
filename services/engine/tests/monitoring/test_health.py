"""Tests for the outcome health check."""

from datetime import datetime, timedelta, timezone

import pytest

from pipwatch_engine.alerts.events import HealthDegraded
from pipwatch_engine.models.outcome import Outcome
from pipwatch_engine.models.signal import Direction, Signal, SignalStatus
from pipwatch_engine.monitoring.health import (
    HealthStatus,
    OutcomeHealthCheck,
    OutcomeQuality,
    grade_quality,
    is_well_formed,
)
from pipwatch_engine.persistence.models import SignalOutcome
from pipwatch_engine.persistence.repository import SignalRepository


def make_signal(signal_id: str, **overrides: object) -> Signal:
    fields: dict[str, object] = {
        "id": signal_id,
        "symbol": "EURUSD",
        "direction": Direction.BUY,
        "entry_price": 1.1000,
        "stop_loss": 1.0950,
        "take_profits": (1.1050, 1.1100),
    }
    fields.update(overrides)
    return Signal(**fields)  # type: ignore[arg-type]


def good_outcome(signal_id: str) -> Outcome:
    return Outcome(signal_id=signal_id, hit_target=False, exit_price=1.095, pnl_pips=-50, notes="Stop Loss Hit")


@pytest.mark.parametrize(
    ("score", "quality"),
    [
        (1.0, OutcomeQuality.EXCELLENT),
        (0.9, OutcomeQuality.EXCELLENT),
        (0.75, OutcomeQuality.GOOD),
        (0.5, OutcomeQuality.FAIR),
        (0.2, OutcomeQuality.POOR),
    ],
)
def test_grade_quality(score: float, quality: OutcomeQuality) -> None:
    assert grade_quality(score) == quality


def test_is_well_formed() -> None:
    assert is_well_formed(SignalOutcome(hit_target=False, pnl_pips=-50, notes="Stop Loss Hit"))
    assert not is_well_formed(SignalOutcome(hit_target=False, pnl_pips=-50, notes="  "))
    assert not is_well_formed(SignalOutcome(hit_target=True, pnl_pips=-10, notes="Take Profit 1 Hit"))


def test_empty_database_is_healthy(in_memory_db) -> None:
    report = OutcomeHealthCheck(SignalRepository(in_memory_db)).run()
    assert report.status == HealthStatus.HEALTHY
    assert report.outcome_quality == OutcomeQuality.UNKNOWN
    assert report.quality_score is None
    assert report.recommendations == ["System operating optimally"]


def test_completed_but_active_needs_attention(in_memory_db) -> None:
    repo = SignalRepository(in_memory_db)
    repo.save_signal(make_signal("stuck", targets_hit=(1, 2)))
    repo.save_signal(make_signal("running"))

    report = OutcomeHealthCheck(repo).run()
    assert report.active_signals == 2
    assert report.completed_but_active == 1
    assert report.status == HealthStatus.NEEDS_ATTENTION
    assert "Process signals with all targets hit" in report.recommendations


def test_expired_without_outcome_threshold(in_memory_db) -> None:
    repo = SignalRepository(in_memory_db)
    now = datetime.now(timezone.utc)
    for i in range(6):
        repo.save_signal(make_signal(f"exp-{i}", status=SignalStatus.EXPIRED, created_at=now - timedelta(minutes=i)))

    report = OutcomeHealthCheck(repo).run()
    assert report.expired_sampled == 6
    assert report.expired_without_outcome == 6
    assert "Repair expired signals without outcomes" in report.recommendations

    repo.try_insert_outcome(good_outcome("exp-0"))
    report = OutcomeHealthCheck(repo).run()
    assert report.expired_without_outcome == 5
    assert report.status == HealthStatus.HEALTHY


def test_poor_outcome_quality(in_memory_db) -> None:
    repo = SignalRepository(in_memory_db)
    now = datetime.now(timezone.utc)
    repo.save_signal(make_signal("ok", status=SignalStatus.EXPIRED))
    repo.try_insert_outcome(good_outcome("ok"))
    for i in range(3):
        signal_id = f"bad-{i}"
        repo.save_signal(make_signal(signal_id, status=SignalStatus.EXPIRED))
        in_memory_db.add(SignalOutcome(
            signal_id=signal_id, hit_target=True, exit_price=1.1, pnl_pips=0,
            notes="", exit_timestamp=now,
        ))
    in_memory_db.commit()

    report = OutcomeHealthCheck(repo).run()
    assert report.quality_score == pytest.approx(0.25)
    assert report.outcome_quality == OutcomeQuality.POOR
    assert "Improve outcome data quality" in report.recommendations


def test_needs_attention_dispatches_alert(in_memory_db, recording_dispatcher) -> None:
    repo = SignalRepository(in_memory_db)
    repo.save_signal(make_signal("stuck", targets_hit=(1, 2)))

    OutcomeHealthCheck(repo, dispatcher=recording_dispatcher).run()

    alerts = recording_dispatcher.of_type(HealthDegraded)
    assert len(alerts) == 1
    assert alerts[0].status == "NEEDS_ATTENTION"
    assert alerts[0].quality == "Unknown"
    assert alerts[0].recommendations == ("Process signals with all targets hit",)
    assert alerts[0].active_signals == 1
    assert alerts[0].expired_without_outcome == 0


def test_healthy_run_sends_nothing(in_memory_db, recording_dispatcher) -> None:
    OutcomeHealthCheck(SignalRepository(in_memory_db), dispatcher=recording_dispatcher).run()
    assert recording_dispatcher.events == []
