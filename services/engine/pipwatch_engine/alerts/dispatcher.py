"""Fire-and-forget notification dispatch.

The reconciliation loop hands events to a dispatcher and moves on. Delivery
happens on a background worker; a slow or failing notifier never blocks or
breaks a tick.
"""

import logging
import queue
import threading
from abc import ABC, abstractmethod

from .events import HealthDegraded, NotificationEvent, PassFailed, SignalCompleted, StopLossHit, TargetHit

logger = logging.getLogger(__name__)


class NotificationDispatcher(ABC):
    """Accepts events from the engine without blocking."""

    @abstractmethod
    def dispatch(self, event: NotificationEvent) -> None:
        """Queue an event for delivery."""
        ...

    def close(self, timeout: float = 5.0) -> None:
        """Flush and release resources."""
        return None


class Notifier(ABC):
    """A delivery channel (log, Telegram, ...). May block."""

    @abstractmethod
    def deliver(self, event: NotificationEvent) -> None:
        ...


class NullDispatcher(NotificationDispatcher):
    """Discards events (notifications disabled)."""

    def dispatch(self, event: NotificationEvent) -> None:
        return None


class LoggingNotifier(Notifier):
    """Writes events to the log."""

    def deliver(self, event: NotificationEvent) -> None:
        if isinstance(event, TargetHit):
            logger.info(
                "🎯 %s %s TP%d hit at %s (target %s) [%s]",
                event.symbol, event.direction.value, event.level, event.price,
                event.target_price, event.signal_id,
            )
        elif isinstance(event, StopLossHit):
            logger.info(
                "⛔ %s %s stop loss %s hit at %s [%s]",
                event.symbol, event.direction.value, event.stop_loss, event.price, event.signal_id,
            )
        elif isinstance(event, SignalCompleted):
            outcome = event.outcome
            logger.info(
                "🏁 %s %s completed: %s (%+d pips)%s [%s]",
                event.symbol, event.direction.value, outcome.notes, outcome.pnl_pips,
                " retroactive" if event.retroactive else "", event.signal_id,
            )
        elif isinstance(event, HealthDegraded):
            logger.warning(
                "📋 Outcome health %s (quality %s): %s",
                event.status, event.quality, "; ".join(event.recommendations),
            )
        elif isinstance(event, PassFailed):
            logger.warning("❌ %s pass finished with %d errors: %s", event.pass_name, event.errors, event.message)


class QueuedDispatcher(NotificationDispatcher):
    """Delivers events to notifiers from a bounded queue on a daemon thread."""

    _SENTINEL = object()

    def __init__(self, notifiers: list[Notifier], maxsize: int = 1000) -> None:
        """
        Initialize dispatcher and start the delivery worker.

        Args:
            notifiers: Channels every event is delivered to
            maxsize: Queue capacity; events beyond it are dropped
        """
        self.notifiers = notifiers
        self._queue: queue.Queue[object] = queue.Queue(maxsize=maxsize)
        self._dropped = 0
        self._worker = threading.Thread(target=self._run, name="notification-dispatcher", daemon=True)
        self._worker.start()

    @property
    def dropped(self) -> int:
        return self._dropped

    def dispatch(self, event: NotificationEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self._dropped += 1
            logger.warning("Notification queue full, dropping %s for %s", type(event).__name__, event.signal_id)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is self._SENTINEL:
                    return
                for notifier in self.notifiers:
                    try:
                        notifier.deliver(item)  # type: ignore[arg-type]
                    except Exception as e:
                        logger.error("Notifier %s failed: %s", type(notifier).__name__, e)
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until every queued event has been handed to the notifiers."""
        self._queue.join()

    def close(self, timeout: float = 5.0) -> None:
        """Deliver what is queued, then stop the worker."""
        try:
            self._queue.put(self._SENTINEL, timeout=timeout)
        except queue.Full:
            logger.warning("Notification queue still full at shutdown")
            return
        self._worker.join(timeout=timeout)
