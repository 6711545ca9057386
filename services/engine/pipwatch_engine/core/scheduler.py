"""Serialized scheduler for reconciliation and repair passes.

A periodic timer and debounced price-change triggers both drive the same
reconciliation loop. One lock serializes every pass, so confirmation state
and the database session are never used by two passes at once.
"""

import logging
import threading
import time
from typing import Callable

from pipwatch_engine.core.reconciliation_loop import ReconciliationLoop, TickReport
from pipwatch_engine.core.repair import RepairPass, RepairReport
from pipwatch_engine.monitoring.health import OutcomeHealthCheck

logger = logging.getLogger(__name__)


class MonitorScheduler:
    """Drives the reconciliation loop on a timer and on price changes."""

    def __init__(
        self,
        loop: ReconciliationLoop,
        repair: RepairPass | None = None,
        *,
        tick_interval_seconds: float = 3.0,
        debounce_seconds: float = 0.5,
        repair_interval_seconds: float = 300.0,
        repair_on_startup: bool = True,
        health_check: OutcomeHealthCheck | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize scheduler.

        Args:
            loop: Reconciliation loop to drive
            repair: Repair pass run at startup and every ``repair_interval_seconds``
            tick_interval_seconds: Fixed interval between periodic passes
            debounce_seconds: Coalescing delay for price-change triggers
            repair_interval_seconds: Interval between repair passes
            repair_on_startup: Resolve stranded signals and repair before the first tick
            health_check: Outcome health check logged after each repair
            clock: Monotonic time source
        """
        self.loop = loop
        self.repair = repair
        self.tick_interval_seconds = tick_interval_seconds
        self.debounce_seconds = debounce_seconds
        self.repair_interval_seconds = repair_interval_seconds
        self.repair_on_startup = repair_on_startup
        self.health_check = health_check
        self._clock = clock

        self._pass_lock = threading.Lock()
        self._timer_lock = threading.Lock()
        self._pending_timer: threading.Timer | None = None
        self._stop = threading.Event()
        self.tick_count = 0
        self.triggered_count = 0

    @property
    def is_stopping(self) -> bool:
        return self._stop.is_set()

    def run(self, max_ticks: int | None = None) -> int:
        """
        Run periodic passes until stopped.

        Args:
            max_ticks: Maximum number of periodic ticks (None = until stopped)

        Returns:
            Number of periodic ticks executed
        """
        logger.info(
            "Scheduler started: tick every %.1fs, repair every %.0fs, debounce %.2fs",
            self.tick_interval_seconds, self.repair_interval_seconds, self.debounce_seconds,
        )
        if self.repair_on_startup:
            self.run_repair(startup=True)
        next_repair = self._clock() + self.repair_interval_seconds

        ticks = 0
        while not self._stop.is_set():
            self.run_tick()
            ticks += 1

            if max_ticks is not None and ticks >= max_ticks:
                break

            if self.repair is not None and self._clock() >= next_repair:
                self.run_repair()
                next_repair = self._clock() + self.repair_interval_seconds

            # Returns early when stop is requested
            self._stop.wait(self.tick_interval_seconds)

        logger.info("Scheduler loop exited after %d ticks", ticks)
        return ticks

    def run_tick(self) -> TickReport | None:
        """Run one reconciliation pass under the pass lock. Never raises.

        Returns None without running when a stop was requested while waiting
        for the lock.
        """
        with self._pass_lock:
            if self._stop.is_set():
                logger.debug("Stop requested, skipping reconciliation pass")
                return None
            try:
                report = self.loop.tick()
            except Exception as e:
                logger.exception("Reconciliation pass failed: %s", e)
                return None
            self.tick_count += 1
            return report

    def run_repair(self, startup: bool = False) -> RepairReport | None:
        """Run the repair pass (and the stranded-signal sweep at startup) under the pass lock."""
        with self._pass_lock:
            if self._stop.is_set():
                logger.debug("Stop requested, skipping repair pass")
                return None
            report = None
            try:
                if startup:
                    self.loop.resolve_stranded()
                if self.repair is not None:
                    report = self.repair.run()
                if self.health_check is not None:
                    self.health_check.run()
            except Exception as e:
                logger.exception("Repair pass failed: %s", e)
            return report

    def trigger(self, symbol: str | None = None, price: float | None = None) -> None:
        """
        Request an early pass after the debounce delay.

        Triggers arriving while one is pending coalesce into it. Suitable as a
        ``PriceFeed.subscribe`` callback.
        """
        with self._timer_lock:
            if self._stop.is_set() or self._pending_timer is not None:
                return
            timer = threading.Timer(self.debounce_seconds, self._fire_debounced)
            timer.daemon = True
            self._pending_timer = timer
            timer.start()
        logger.debug("Early pass scheduled by %s @ %s", symbol, price)

    def _fire_debounced(self) -> None:
        with self._timer_lock:
            self._pending_timer = None
        if self._stop.is_set():
            return
        self.triggered_count += 1
        self.run_tick()

    def request_stop(self) -> None:
        """Ask the scheduler to stop; safe to call from a signal handler."""
        self._stop.set()
        with self._timer_lock:
            if self._pending_timer is not None:
                self._pending_timer.cancel()
                self._pending_timer = None

    def stop(self, timeout: float | None = None) -> bool:
        """
        Stop scheduling and wait for an in-flight pass to finish.

        Args:
            timeout: Maximum seconds to wait (None = wait indefinitely)

        Returns:
            True if no pass is running on return
        """
        self.request_stop()
        acquired = self._pass_lock.acquire(timeout=-1 if timeout is None else timeout)
        if acquired:
            self._pass_lock.release()
        else:
            logger.warning("In-flight pass did not finish within %.1fs", timeout)
        return acquired
