"""Tests for the retroactive outcome repair pass."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from prometheus_client import CollectorRegistry

from pipwatch_engine.alerts.events import PassFailed, SignalCompleted
from pipwatch_engine.core.repair import RepairPass
from pipwatch_engine.market_data.stub_provider import StubPriceFeed
from pipwatch_engine.models.outcome import InsertResult, Outcome
from pipwatch_engine.models.signal import Direction, Signal, SignalStatus
from pipwatch_engine.monitoring.metrics import MetricsService
from pipwatch_engine.persistence.repository import SignalRepository


def expired_signal(signal_id: str = "exp-1", **overrides: object) -> Signal:
    fields: dict[str, object] = {
        "id": signal_id,
        "symbol": "EURUSD",
        "direction": Direction.BUY,
        "entry_price": 1.1000,
        "stop_loss": 1.0950,
        "take_profits": (1.1050, 1.1100),
        "status": SignalStatus.EXPIRED,
    }
    fields.update(overrides)
    return Signal(**fields)  # type: ignore[arg-type]


def test_repairs_partial_targets(in_memory_db, recording_dispatcher) -> None:
    repo = SignalRepository(in_memory_db)
    repo.save_signal(expired_signal(targets_hit=(1,)))
    registry = CollectorRegistry()
    repair = RepairPass(
        repo, repo, StubPriceFeed({"EURUSD": 1.1070}),
        dispatcher=recording_dispatcher, event_log=repo, metrics=MetricsService(registry=registry),
    )
    try:
        report = repair.run()
    finally:
        repair.close()

    assert report.scanned == 1
    assert report.repaired == 1

    outcome = repo.get_outcome("exp-1")
    assert outcome.hit_target is True
    assert outcome.pnl_pips == 50
    assert outcome.notes == "Take Profit 1 Hit (Retroactive)"

    events = repo.get_events("outcome.retroactive")
    assert len(events) == 1
    assert events[0].level == "WARN"

    completed = recording_dispatcher.of_type(SignalCompleted)
    assert len(completed) == 1
    assert completed[0].retroactive is True
    assert registry.get_sample_value("pipwatch_repairs_total") == 1


def test_nothing_to_repair(in_memory_db) -> None:
    repo = SignalRepository(in_memory_db)
    repo.save_signal(expired_signal("done"))
    repo.try_insert_outcome(Outcome(
        signal_id="done", hit_target=False, exit_price=1.095, pnl_pips=-50, notes="Stop Loss Hit",
    ))
    repo.save_signal(expired_signal("active", status=SignalStatus.ACTIVE))
    repair = RepairPass(repo, repo, StubPriceFeed())
    try:
        report = repair.run()
    finally:
        repair.close()

    assert report.scanned == 0
    assert repo.has_outcome("active") is False


def test_missing_price_repairs_at_entry(in_memory_db, caplog) -> None:
    repo = SignalRepository(in_memory_db)
    repo.save_signal(expired_signal())
    repair = RepairPass(repo, repo, StubPriceFeed())
    try:
        report = repair.run()
    finally:
        repair.close()

    assert report.missing_prices == 1
    assert report.repaired == 1
    outcome = repo.get_outcome("exp-1")
    assert outcome.exit_price == 1.1000
    assert outcome.pnl_pips == 0
    assert "entry price" in caplog.text


def test_stop_loss_crossing_wins(in_memory_db) -> None:
    repo = SignalRepository(in_memory_db)
    repo.save_signal(expired_signal(targets_hit=(1,)))
    repair = RepairPass(repo, repo, StubPriceFeed({"EURUSD": 1.0900}))
    try:
        repair.run()
    finally:
        repair.close()

    outcome = repo.get_outcome("exp-1")
    assert outcome.hit_target is False
    assert outcome.notes == "Stop Loss Hit (Retroactive)"


def test_run_clears_backlog_larger_than_batch(in_memory_db) -> None:
    repo = SignalRepository(in_memory_db)
    now = datetime.now(timezone.utc)
    for i in range(60):
        repo.save_signal(expired_signal(f"exp-{i}", created_at=now - timedelta(minutes=i)))
    repair = RepairPass(repo, repo, StubPriceFeed({"EURUSD": 1.1}), batch_size=50)
    try:
        report = repair.run()
    finally:
        repair.close()

    assert report.scanned == 60
    assert report.repaired == 60
    assert repo.list_expired_without_outcome(1000) == []


def test_failing_signal_does_not_repeat_within_run(in_memory_db, recording_dispatcher) -> None:
    repo = SignalRepository(in_memory_db)
    now = datetime.now(timezone.utc)
    for i in range(3):
        repo.save_signal(expired_signal(f"exp-{i}", created_at=now - timedelta(minutes=i)))
    outcome_store = MagicMock()
    outcome_store.try_insert_outcome.side_effect = RuntimeError("deadlock")
    repair = RepairPass(
        repo, outcome_store, StubPriceFeed({"EURUSD": 1.1}), batch_size=1, dispatcher=recording_dispatcher,
    )
    try:
        report = repair.run()
    finally:
        repair.close()

    assert report.scanned == 3
    assert report.errors == 3
    assert outcome_store.try_insert_outcome.call_count == 3

    failures = recording_dispatcher.of_type(PassFailed)
    assert len(failures) == 1
    assert failures[0].pass_name == "repair"
    assert failures[0].errors == 3


def test_run_is_traced_and_steps_recorded(in_memory_db) -> None:
    repo = SignalRepository(in_memory_db)
    repo.save_signal(expired_signal())
    sentry = MagicMock()
    repair = RepairPass(repo, repo, StubPriceFeed({"EURUSD": 1.1}), sentry=sentry)
    try:
        repair.run()
    finally:
        repair.close()

    sentry.pass_transaction.assert_called_once_with("repair")
    step = sentry.signal_step.call_args
    assert step.args == ("retroactive outcome written", "exp-1", "EURUSD")


def test_conflict_is_absorbed(in_memory_db, recording_dispatcher) -> None:
    repo = SignalRepository(in_memory_db)
    repo.save_signal(expired_signal())
    outcome_store = MagicMock()
    outcome_store.try_insert_outcome.return_value = InsertResult.ALREADY_EXISTS
    repair = RepairPass(repo, outcome_store, StubPriceFeed({"EURUSD": 1.1}), dispatcher=recording_dispatcher)
    try:
        report = repair.run()
    finally:
        repair.close()

    assert report.conflicts == 1
    assert report.repaired == 0
    assert recording_dispatcher.events == []


def test_insert_failure_is_isolated(in_memory_db) -> None:
    repo = SignalRepository(in_memory_db)
    repo.save_signal(expired_signal("a"))
    repo.save_signal(expired_signal("b"))
    outcome_store = MagicMock()
    outcome_store.try_insert_outcome.side_effect = [RuntimeError("deadlock"), InsertResult.INSERTED]
    repair = RepairPass(repo, outcome_store, StubPriceFeed({"EURUSD": 1.1}))
    try:
        report = repair.run()
    finally:
        repair.close()

    assert report.errors == 1
    assert report.repaired == 1


def test_listing_failure(in_memory_db) -> None:
    signal_store = MagicMock()
    signal_store.list_expired_without_outcome.side_effect = RuntimeError("db down")
    repair = RepairPass(signal_store, MagicMock(), StubPriceFeed())
    try:
        report = repair.run()
    finally:
        repair.close()

    assert report.errors == 1
    assert report.scanned == 0
