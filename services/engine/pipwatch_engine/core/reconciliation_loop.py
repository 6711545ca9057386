"""Reconciliation loop: one pass over all active signals.

Each pass loads active signals, fetches prices for their symbols in one
batch, evaluates every signal with a usable price, persists progress and
writes terminal outcomes. The outcome insert is the single source of truth
for termination; it always happens before the status flip.
"""

import concurrent.futures
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Any, ContextManager, Protocol

from pipwatch_engine.alerts.dispatcher import NotificationDispatcher, NullDispatcher
from pipwatch_engine.alerts.events import PassFailed, SignalCompleted, StopLossHit, TargetHit
from pipwatch_engine.core.confirmation import ConfirmationStatus, ConfirmationTracker
from pipwatch_engine.core.evaluator import Evaluator, is_usable_price
from pipwatch_engine.core.outcome_builder import build_corrupt_outcome, build_terminal_outcome
from pipwatch_engine.market_data.provider import PriceFeed
from pipwatch_engine.models.outcome import ExitReason, InsertResult, Outcome
from pipwatch_engine.models.signal import Signal
from pipwatch_engine.monitoring.metrics import MetricsService
from pipwatch_engine.monitoring.sentry_service import SentryService
from pipwatch_engine.persistence.stores import OutcomeStore, SignalStore

logger = logging.getLogger(__name__)


class EventLog(Protocol):
    def append_event(
        self,
        event_type: str,
        level: str,
        payload: dict[str, Any],
        signal_id: str | None = None,
    ) -> int: ...


@dataclass
class TickReport:
    """Counters for one reconciliation pass."""

    active: int = 0
    evaluated: int = 0
    skipped: int = 0
    targets_updated: int = 0
    stops_trailed: int = 0
    outcomes_written: int = 0
    conflicts: int = 0
    healed: int = 0
    errors: int = 0
    price_fetch_failed: bool = False
    duration_seconds: float = 0.0


def fetch_prices(
    price_feed: PriceFeed,
    symbols: set[str],
    executor: ThreadPoolExecutor,
    timeout_seconds: float,
) -> dict[str, float] | None:
    """
    Batched price lookup bounded by a timeout.

    Returns:
        Prices by symbol, or None if the lookup failed or timed out
    """
    if not symbols:
        return {}
    future = executor.submit(price_feed.get_prices, symbols)
    try:
        return future.result(timeout=timeout_seconds)
    except concurrent.futures.TimeoutError:
        future.cancel()
        logger.warning("Price lookup timed out after %.1fs for %d symbols", timeout_seconds, len(symbols))
    except Exception as e:
        logger.warning("Price lookup failed for %d symbols: %s", len(symbols), e)
    return None


class ReconciliationLoop:
    """Evaluates active signals and records their outcomes."""

    def __init__(
        self,
        signal_store: SignalStore,
        outcome_store: OutcomeStore,
        price_feed: PriceFeed,
        *,
        evaluator: Evaluator | None = None,
        tracker: ConfirmationTracker | None = None,
        dispatcher: NotificationDispatcher | None = None,
        event_log: EventLog | None = None,
        metrics: MetricsService | None = None,
        sentry: SentryService | None = None,
        price_timeout_seconds: float = 5.0,
    ):
        """
        Initialize reconciliation loop.

        Args:
            signal_store: Active signal reads and progress writes
            outcome_store: Unique-per-signal outcome writes
            price_feed: Batched price source
            evaluator: Signal evaluator (default thresholds if omitted)
            tracker: Stop-loss confirmation tracker (default thresholds if omitted)
            dispatcher: Notification sink, fire-and-forget
            event_log: Audit event sink (e.g. SignalRepository)
            metrics: Prometheus metrics service
            sentry: Error reporting for unexpected per-signal failures
            price_timeout_seconds: Upper bound on the batched price lookup
        """
        self.signal_store = signal_store
        self.outcome_store = outcome_store
        self.price_feed = price_feed
        self.evaluator = evaluator or Evaluator()
        self.tracker = tracker or ConfirmationTracker()
        self.dispatcher = dispatcher or NullDispatcher()
        self.event_log = event_log
        self.metrics = metrics
        self.sentry = sentry
        self.price_timeout_seconds = price_timeout_seconds

        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="price-lookup")
        # Signals confirmed as stopped out whose outcome insert has not succeeded yet
        self._confirmed_stops: set[str] = set()
        # Signals with an outcome whose status flip failed
        self._pending_expiry: set[str] = set()

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def tick(self) -> TickReport:
        """Run one reconciliation pass over all active signals."""
        with self._transaction("tick"):
            report = self._run_tick()
        if report.errors:
            self.dispatcher.dispatch(
                PassFailed(
                    pass_name="reconciliation",
                    errors=report.errors,
                    message=f"{report.errors} errors across {report.active} active signals",
                )
            )
        return report

    def _run_tick(self) -> TickReport:
        started = time.monotonic()
        report = TickReport()

        try:
            signals = self.signal_store.list_active_signals()
        except Exception as e:
            logger.error("Failed to load active signals, skipping pass: %s", e)
            report.errors += 1
            self._record_error("load_signals")
            return report
        report.active = len(signals)

        prices: dict[str, float] = {}
        if signals:
            fetched = fetch_prices(
                self.price_feed,
                {s.symbol for s in signals},
                self._executor,
                self.price_timeout_seconds,
            )
            if fetched is None:
                report.price_fetch_failed = True
                if self.metrics:
                    self.metrics.record_price_failure()
            else:
                prices = fetched

        self.tracker.purge_stale()

        for signal in signals:
            try:
                self._process_signal(signal, prices.get(signal.symbol), report)
            except Exception as e:
                report.errors += 1
                self._record_error("unexpected")
                logger.exception(
                    "Unexpected error processing %s (%s) at %s: %s",
                    signal.id, signal.symbol, prices.get(signal.symbol), e,
                )
                if self.sentry:
                    self.sentry.capture_error(
                        e,
                        context={"signal_id": signal.id, "symbol": signal.symbol,
                                 "price": prices.get(signal.symbol)},
                        tags={"stage": "process_signal"},
                    )

        # Signals expired by other writers never come back through _expire_existing
        active_ids = {s.id for s in signals}
        self._confirmed_stops &= active_ids
        self._pending_expiry &= active_ids

        report.duration_seconds = time.monotonic() - started
        if self.metrics:
            self.metrics.record_tick(
                report.duration_seconds,
                report.active,
                evaluated=report.evaluated,
                pending_confirmations=len(self.tracker),
            )
        if report.outcomes_written or report.targets_updated or report.errors:
            logger.info(
                "Pass complete: %d active, %d evaluated, %d targets updated, %d stops trailed, "
                "%d outcomes, %d conflicts, %d errors (%.3fs)",
                report.active, report.evaluated, report.targets_updated, report.stops_trailed,
                report.outcomes_written, report.conflicts, report.errors, report.duration_seconds,
            )
        return report

    def resolve_stranded(self) -> TickReport:
        """
        Terminate active signals that should already be expired.

        Covers corrupt signals, signals whose targets-hit set spans the full
        ladder and signals that already have an outcome (a previous status
        flip failed). No prices are needed for any of them.
        """
        report = TickReport()
        try:
            signals = self.signal_store.list_active_signals()
        except Exception as e:
            logger.error("Failed to load active signals for stranded check: %s", e)
            report.errors += 1
            return report
        report.active = len(signals)

        for signal in signals:
            try:
                if signal.data_error is not None:
                    self._force_expire_corrupt(signal, None, report)
                elif signal.all_targets_hit:
                    logger.warning("Signal %s (%s) has all targets hit but is still active", signal.id, signal.symbol)
                    self._terminate(signal, ExitReason.ALL_TARGETS, None, report)
                elif self.outcome_store.has_outcome(signal.id):
                    self._expire_existing(signal, report)
            except Exception as e:
                report.errors += 1
                self._record_error("unexpected")
                logger.exception("Failed to resolve stranded signal %s (%s): %s", signal.id, signal.symbol, e)

        if report.outcomes_written or report.healed:
            logger.info(
                "Resolved stranded signals: %d outcomes written, %d expired with existing outcome",
                report.outcomes_written, report.healed,
            )
        return report

    def _process_signal(self, signal: Signal, price: float | None, report: TickReport) -> None:
        if signal.id in self._pending_expiry:
            self._expire_existing(signal, report)
            return

        usable = is_usable_price(price)
        if signal.data_error is not None:
            self._force_expire_corrupt(signal, price if usable else None, report)
            return

        if not usable:
            report.skipped += 1
            return
        assert price is not None

        evaluation = self.evaluator.evaluate(signal, price)
        if evaluation.skipped is not None:
            report.skipped += 1
            return
        report.evaluated += 1

        if evaluation.invalid_configuration:
            logger.error(
                "Invalid stop loss for %s (%s %s): entry=%s stop=%s, force expiring",
                signal.id, signal.symbol, signal.direction.value, signal.entry_price, signal.stop_loss,
            )
            self._emit_event(
                "signal.invalid_configuration",
                "ERROR",
                {"symbol": signal.symbol, "direction": signal.direction.value,
                 "entry_price": signal.entry_price, "stop_loss": signal.stop_loss, "price": price},
                signal.id,
            )
            self._terminate(signal, ExitReason.INVALID_CONFIGURATION, price, report)
            return

        current = signal

        if evaluation.new_targets:
            try:
                self.signal_store.update_targets_hit(signal.id, evaluation.targets_hit)
            except Exception as e:
                report.errors += 1
                self._record_error("update_targets")
                logger.error(
                    "Failed to persist targets %s for %s (%s) at %s: %s",
                    list(evaluation.targets_hit), signal.id, signal.symbol, price, e,
                )
                return
            current = current.with_targets(evaluation.targets_hit)
            report.targets_updated += 1
            if self.sentry:
                self.sentry.signal_step(
                    "targets hit", signal.id, signal.symbol,
                    new_targets=list(evaluation.new_targets), price=price,
                )
            self._emit_event(
                "signal.targets_hit",
                "INFO",
                {"symbol": signal.symbol, "new_targets": list(evaluation.new_targets),
                 "targets_hit": list(evaluation.targets_hit), "price": price},
                signal.id,
            )
            for level in evaluation.new_targets:
                if self.metrics:
                    self.metrics.record_target_hit(signal.symbol, level)
                self.dispatcher.dispatch(
                    TargetHit(
                        signal_id=signal.id,
                        symbol=signal.symbol,
                        direction=signal.direction,
                        level=level,
                        target_price=signal.take_profits[level - 1],
                        price=price,
                    )
                )

        if evaluation.trailing_stop is not None:
            try:
                moved = self.signal_store.update_stop_loss(signal.id, evaluation.trailing_stop)
            except Exception as e:
                report.errors += 1
                self._record_error("update_stop_loss")
                logger.error(
                    "Failed to persist trailing stop %s for %s (%s) at %s: %s",
                    evaluation.trailing_stop, signal.id, signal.symbol, price, e,
                )
                return
            if moved:
                logger.info(
                    "Trailing stop for %s (%s) moved %s -> %s at %s",
                    signal.id, signal.symbol, current.stop_loss, evaluation.trailing_stop, price,
                )
                self._emit_event(
                    "signal.stop_trailed",
                    "INFO",
                    {"symbol": signal.symbol, "previous_stop": current.stop_loss,
                     "stop_loss": evaluation.trailing_stop, "price": price},
                    signal.id,
                )
                if self.sentry:
                    self.sentry.signal_step(
                        "stop trailed", signal.id, signal.symbol,
                        previous_stop=current.stop_loss, stop_loss=evaluation.trailing_stop, price=price,
                    )
                current = current.with_stop_loss(evaluation.trailing_stop)
                report.stops_trailed += 1
                if self.metrics:
                    self.metrics.record_stop_trailed(signal.symbol)

        starting_streak = self.tracker.get_state(signal.id) is None
        status = self.tracker.observe(signal.id, evaluation.stop_loss_crossed, price)
        if status == ConfirmationStatus.DETECTING and starting_streak and self.metrics:
            self.metrics.record_sl_detection()
        if status == ConfirmationStatus.CONFIRMED:
            self._confirmed_stops.add(signal.id)
            if self.metrics:
                self.metrics.record_sl_confirmed()

        if current.all_targets_hit:
            self._terminate(current, ExitReason.ALL_TARGETS, price, report)
        elif signal.id in self._confirmed_stops:
            self._terminate(current, ExitReason.STOP_LOSS, price, report)

    def _force_expire_corrupt(self, signal: Signal, price: float | None, report: TickReport) -> None:
        """Resolve a signal whose stored values cannot be evaluated."""
        outcome = build_corrupt_outcome(signal, price)
        if outcome is None:
            report.skipped += 1
            logger.error(
                "Corrupt signal %s (%s): %s, no usable exit price until a price arrives",
                signal.id, signal.symbol, signal.data_error,
            )
            return

        details = {
            "symbol": signal.symbol, "direction": signal.direction.value, "error": signal.data_error,
            "entry_price": signal.entry_price, "stop_loss": signal.stop_loss,
            "take_profits": list(signal.take_profits), "targets_hit": list(signal.targets_hit),
            "price": price,
        }
        logger.error("Corrupt data for %s: %s, force expiring", signal.id, details)
        self._emit_event("signal.corrupt_data", "ERROR", details, signal.id)
        if self.sentry:
            self.sentry.capture_data_issue(f"Corrupt signal data: {signal.data_error}", signal.id, details)
        self._terminate(signal, ExitReason.INVALID_CONFIGURATION, price, report, outcome=outcome)

    def _terminate(
        self,
        signal: Signal,
        reason: ExitReason,
        price: float | None,
        report: TickReport,
        outcome: Outcome | None = None,
    ) -> None:
        """Write the terminal outcome, then flip the signal to expired."""
        try:
            if self.outcome_store.has_outcome(signal.id):
                logger.info("Outcome already recorded for %s, expiring without a new one", signal.id)
                self._expire_existing(signal, report)
                return
        except Exception as e:
            report.errors += 1
            self._record_error("has_outcome")
            logger.error("Outcome lookup failed for %s, retrying next pass: %s", signal.id, e)
            return

        if outcome is None:
            outcome = build_terminal_outcome(signal, reason)

        try:
            result = self.outcome_store.try_insert_outcome(outcome)
        except Exception as e:
            report.errors += 1
            self._record_error("insert_outcome")
            logger.error(
                "Failed to insert outcome for %s (%s) exit=%s pips=%d, retrying next pass: %s",
                signal.id, signal.symbol, outcome.exit_price, outcome.pnl_pips, e,
            )
            return

        if result == InsertResult.ALREADY_EXISTS:
            report.conflicts += 1
            if self.metrics:
                self.metrics.record_outcome_conflict()
            logger.debug("Outcome for %s written by another writer", signal.id)
            self._expire_existing(signal, report)
            return

        report.outcomes_written += 1
        log = logger.error if reason == ExitReason.INVALID_CONFIGURATION else logger.info
        log(
            "Outcome for %s (%s %s): %s exit=%s pips=%+d price=%s",
            signal.id, signal.symbol, signal.direction.value, outcome.notes,
            outcome.exit_price, outcome.pnl_pips, price,
        )
        if self.metrics:
            self.metrics.record_outcome(signal.symbol, reason.value, outcome.pnl_pips)
        if self.sentry:
            self.sentry.signal_step(
                "outcome written", signal.id, signal.symbol,
                reason=reason.value, exit_price=outcome.exit_price, pnl_pips=outcome.pnl_pips,
            )
        self._emit_event(
            "outcome.created",
            "INFO",
            {"symbol": signal.symbol, "reason": reason.value, "hit_target": outcome.hit_target,
             "exit_price": outcome.exit_price, "pnl_pips": outcome.pnl_pips,
             "target_hit_level": outcome.target_hit_level, "notes": outcome.notes},
            signal.id,
        )
        if reason == ExitReason.STOP_LOSS:
            self.dispatcher.dispatch(
                StopLossHit(
                    signal_id=signal.id,
                    symbol=signal.symbol,
                    direction=signal.direction,
                    stop_loss=signal.stop_loss,
                    price=price if price is not None else signal.stop_loss,
                )
            )
        self.dispatcher.dispatch(
            SignalCompleted(
                signal_id=signal.id,
                symbol=signal.symbol,
                direction=signal.direction,
                outcome=outcome,
            )
        )

        self._expire_existing(signal, report, healing=False)

    def _expire_existing(self, signal: Signal, report: TickReport, healing: bool = True) -> None:
        """Flip a signal that already has an outcome to expired."""
        try:
            flipped = self.signal_store.expire_signal(signal.id, signal.targets_hit)
        except Exception as e:
            report.errors += 1
            self._record_error("expire_signal")
            self._pending_expiry.add(signal.id)
            logger.error(
                "Outcome exists for %s (%s) but expiring it failed; will retry: %s",
                signal.id, signal.symbol, e,
            )
            return

        self._pending_expiry.discard(signal.id)
        self._confirmed_stops.discard(signal.id)
        self.tracker.forget(signal.id)
        if flipped:
            if healing:
                report.healed += 1
            self._emit_event(
                "signal.expired",
                "INFO",
                {"symbol": signal.symbol, "targets_hit": list(signal.targets_hit)},
                signal.id,
            )

    def _emit_event(self, event_type: str, level: str, payload: dict[str, Any], signal_id: str) -> None:
        if self.event_log is None:
            return
        try:
            self.event_log.append_event(event_type, level, payload, signal_id=signal_id)
        except Exception as e:
            logger.warning("Failed to append %s event for %s: %s", event_type, signal_id, e)

    def _transaction(self, name: str) -> ContextManager[Any]:
        if self.sentry is None:
            return nullcontext()
        return self.sentry.pass_transaction(name)

    def _record_error(self, stage: str) -> None:
        if self.metrics:
            self.metrics.record_signal_error(stage)
