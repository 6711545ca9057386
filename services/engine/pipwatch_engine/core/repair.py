"""Repair pass for expired signals that never received an outcome.

Status can be flipped by writers outside this engine, so an expired signal
without an outcome is an expected state. The repair pass re-derives a
best-effort outcome from the last known price and tags it as retroactive.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Any, ContextManager

from pipwatch_engine.alerts.dispatcher import NotificationDispatcher, NullDispatcher
from pipwatch_engine.alerts.events import PassFailed, SignalCompleted
from pipwatch_engine.core.evaluator import is_usable_price
from pipwatch_engine.core.outcome_builder import build_retroactive_outcome
from pipwatch_engine.core.reconciliation_loop import EventLog, fetch_prices
from pipwatch_engine.market_data.provider import PriceFeed
from pipwatch_engine.models.outcome import ExitReason, InsertResult
from pipwatch_engine.models.signal import Signal
from pipwatch_engine.monitoring.metrics import MetricsService
from pipwatch_engine.monitoring.sentry_service import SentryService
from pipwatch_engine.persistence.stores import OutcomeStore, SignalStore

logger = logging.getLogger(__name__)


@dataclass
class RepairReport:
    scanned: int = 0
    repaired: int = 0
    conflicts: int = 0
    errors: int = 0
    missing_prices: int = 0


class RepairPass:
    """Writes retroactive outcomes for expired signals without one."""

    def __init__(
        self,
        signal_store: SignalStore,
        outcome_store: OutcomeStore,
        price_feed: PriceFeed,
        *,
        batch_size: int = 50,
        price_timeout_seconds: float = 5.0,
        dispatcher: NotificationDispatcher | None = None,
        event_log: EventLog | None = None,
        metrics: MetricsService | None = None,
        sentry: SentryService | None = None,
    ):
        """
        Initialize repair pass.

        Args:
            signal_store: Source of expired signals without outcomes
            outcome_store: Unique-per-signal outcome writes
            price_feed: Batched price source for the last known price
            batch_size: Signals fetched and priced per page
            price_timeout_seconds: Upper bound on the batched price lookup
            dispatcher: Notification sink for retroactive completions
            event_log: Audit event sink
            metrics: Prometheus metrics service
            sentry: Error reporting and pass tracing
        """
        self.signal_store = signal_store
        self.outcome_store = outcome_store
        self.price_feed = price_feed
        self.batch_size = batch_size
        self.price_timeout_seconds = price_timeout_seconds
        self.dispatcher = dispatcher or NullDispatcher()
        self.event_log = event_log
        self.metrics = metrics
        self.sentry = sentry
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="repair-prices")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def run(self) -> RepairReport:
        """
        Repair every expired signal without an outcome.

        Pages through the backlog ``batch_size`` signals at a time until the
        store has nothing left. Signals already attempted in this run are
        excluded from later pages, so a signal that keeps failing cannot
        starve older ones and the run always terminates.
        """
        report = RepairReport()
        attempted: set[str] = set()

        with self._transaction():
            while True:
                try:
                    signals = self.signal_store.list_expired_without_outcome(self.batch_size, exclude_ids=attempted)
                except Exception as e:
                    logger.error("Failed to list expired signals without outcomes: %s", e)
                    report.errors += 1
                    break
                if not signals:
                    break
                if not report.scanned:
                    logger.info("🔧 Repair pass: expired signals without outcomes found")
                report.scanned += len(signals)
                attempted.update(s.id for s in signals)
                self._repair_page(signals, report)

        if not report.scanned and not report.errors:
            logger.debug("Repair pass: no expired signals without outcomes")
            return report

        logger.info(
            "Repair pass complete: %d scanned, %d repaired, %d conflicts, %d errors, %d without price",
            report.scanned, report.repaired, report.conflicts, report.errors, report.missing_prices,
        )
        if report.errors:
            self.dispatcher.dispatch(
                PassFailed(
                    pass_name="repair",
                    errors=report.errors,
                    message=f"{report.errors} of {report.scanned} expired signals could not be repaired",
                )
            )
        return report

    def _repair_page(self, signals: list[Signal], report: RepairReport) -> None:
        prices = fetch_prices(
            self.price_feed,
            {s.symbol for s in signals},
            self._executor,
            self.price_timeout_seconds,
        )
        if prices is None:
            prices = {}
            if self.metrics:
                self.metrics.record_price_failure()

        for signal in signals:
            price = prices.get(signal.symbol)
            if not is_usable_price(price):
                report.missing_prices += 1
                logger.warning(
                    "No price for %s, repairing %s at entry price %s",
                    signal.symbol, signal.id, signal.entry_price,
                )

            try:
                outcome = build_retroactive_outcome(signal, price)
                result = self.outcome_store.try_insert_outcome(outcome)
            except Exception as e:
                report.errors += 1
                if self.metrics:
                    self.metrics.record_signal_error("repair")
                logger.error("Failed to repair %s (%s) at %s: %s", signal.id, signal.symbol, price, e)
                if self.sentry:
                    self.sentry.capture_error(
                        e,
                        context={"signal_id": signal.id, "symbol": signal.symbol, "price": price},
                        tags={"stage": "repair"},
                    )
                continue

            if result == InsertResult.ALREADY_EXISTS:
                report.conflicts += 1
                if self.metrics:
                    self.metrics.record_outcome_conflict()
                logger.debug("Outcome for %s written concurrently, skipping", signal.id)
                continue

            report.repaired += 1
            logger.info(
                "Retroactive outcome for %s (%s %s): %s exit=%s pips=%+d",
                signal.id, signal.symbol, signal.direction.value,
                outcome.notes, outcome.exit_price, outcome.pnl_pips,
            )
            if self.metrics:
                self.metrics.record_repair()
                self.metrics.record_outcome(signal.symbol, ExitReason.RETROACTIVE.value, outcome.pnl_pips)
            if self.sentry:
                self.sentry.signal_step(
                    "retroactive outcome written", signal.id, signal.symbol,
                    exit_price=outcome.exit_price, pnl_pips=outcome.pnl_pips,
                )
            self._emit_event(
                signal.id,
                {"symbol": signal.symbol, "price": price, "hit_target": outcome.hit_target,
                 "exit_price": outcome.exit_price, "pnl_pips": outcome.pnl_pips,
                 "target_hit_level": outcome.target_hit_level, "notes": outcome.notes},
            )
            self.dispatcher.dispatch(
                SignalCompleted(
                    signal_id=signal.id,
                    symbol=signal.symbol,
                    direction=signal.direction,
                    outcome=outcome,
                    retroactive=True,
                )
            )

    def _transaction(self) -> ContextManager[Any]:
        if self.sentry is None:
            return nullcontext()
        return self.sentry.pass_transaction("repair")

    def _emit_event(self, signal_id: str, payload: dict[str, Any]) -> None:
        if self.event_log is None:
            return
        try:
            self.event_log.append_event("outcome.retroactive", "WARN", payload, signal_id=signal_id)
        except Exception as e:
            logger.warning("Failed to append outcome.retroactive event for %s: %s", signal_id, e)
