"""Prometheus metrics for the outcome monitoring engine.

This module provides metrics collection and exposure for monitoring
reconciliation passes, outcome recording and repair activity.

Example:
    >>> from pipwatch_engine.monitoring.metrics import MetricsService, get_metrics
    >>>
    >>> # Initialize (typically at startup)
    >>> metrics = MetricsService(MetricsConfig(port=9090))
    >>> metrics.start_server()
    >>>
    >>> # Record events
    >>> metrics.record_target_hit("EURUSD", 1)
    >>> metrics.record_outcome("EURUSD", "all_targets_hit", pnl_pips=45)
"""

import logging
import threading
from dataclasses import dataclass

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

# Module-level singleton
_metrics: "MetricsService | None" = None


@dataclass(frozen=True)
class MetricsConfig:
    """Configuration for metrics service.

    Attributes:
        enabled: Whether metrics collection is enabled
        port: HTTP server port for Prometheus scraping
        prefix: Metric name prefix
    """

    enabled: bool = True
    port: int = 9090
    prefix: str = "pipwatch"


class MetricsService:
    """Prometheus metrics service for engine monitoring.

    Exposes key operational metrics for Prometheus scraping:
    - Reconciliation tick counts and durations
    - Active signal gauge
    - Target hits and outcomes by reason
    - Pip result histogram
    - Per-signal errors, price fetch failures and repairs

    Example:
        >>> metrics = MetricsService(MetricsConfig(port=9090))
        >>> metrics.start_server()
        >>> metrics.record_tick(duration_seconds=0.12, active_signals=8)
    """

    def __init__(
        self,
        config: MetricsConfig | None = None,
        registry: CollectorRegistry | None = None,
    ) -> None:
        """Initialize metrics service.

        Args:
            config: Metrics configuration (uses defaults if not provided)
            registry: Collector registry; tests pass a fresh one per service
        """
        self.config = config or MetricsConfig()
        self.registry = registry if registry is not None else REGISTRY
        self._server_started = False
        self._lock = threading.Lock()

        self._ticks: Counter | None = None
        self._tick_duration: Histogram | None = None
        self._active_signals: Gauge | None = None
        self._signals_evaluated: Counter | None = None
        self._pending_confirmations: Gauge | None = None
        self._sl_detections: Counter | None = None
        self._sl_confirmations: Counter | None = None
        self._targets_hit: Counter | None = None
        self._stops_trailed: Counter | None = None
        self._outcomes: Counter | None = None
        self._outcome_pips: Histogram | None = None
        self._outcome_conflicts: Counter | None = None
        self._signal_errors: Counter | None = None
        self._price_failures: Counter | None = None
        self._repairs: Counter | None = None

        if self.config.enabled:
            self._initialize_metrics()

    def _initialize_metrics(self) -> None:
        prefix = self.config.prefix
        registry = self.registry

        self._ticks = Counter(
            f"{prefix}_reconciliation_ticks_total",
            "Number of reconciliation passes run",
            registry=registry,
        )

        self._tick_duration = Histogram(
            f"{prefix}_reconciliation_tick_seconds",
            "Reconciliation pass duration in seconds",
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10],
            registry=registry,
        )

        self._active_signals = Gauge(
            f"{prefix}_active_signals",
            "Number of active signals seen in the last pass",
            registry=registry,
        )

        self._signals_evaluated = Counter(
            f"{prefix}_signals_evaluated_total",
            "Signal evaluations with a usable price",
            registry=registry,
        )

        self._pending_confirmations = Gauge(
            f"{prefix}_pending_sl_confirmations",
            "Open stop-loss crossing streaks awaiting confirmation",
            registry=registry,
        )

        self._sl_detections = Counter(
            f"{prefix}_sl_detections_total",
            "Stop-loss crossing streaks started",
            registry=registry,
        )

        self._sl_confirmations = Counter(
            f"{prefix}_sl_confirmations_total",
            "Stop-loss crossings confirmed",
            registry=registry,
        )

        self._targets_hit = Counter(
            f"{prefix}_targets_hit_total",
            "Take-profit levels confirmed",
            ["symbol", "level"],
            registry=registry,
        )

        self._stops_trailed = Counter(
            f"{prefix}_stops_trailed_total",
            "Trailing stop adjustments persisted",
            ["symbol"],
            registry=registry,
        )

        self._outcomes = Counter(
            f"{prefix}_outcomes_total",
            "Terminal outcomes recorded",
            ["symbol", "reason", "result"],
            registry=registry,
        )

        # Pip buckets sized for forex majors
        self._outcome_pips = Histogram(
            f"{prefix}_outcome_pips",
            "Outcome result distribution in pips",
            buckets=[-200, -100, -50, -20, -10, 0, 10, 20, 50, 100, 200, 500],
            registry=registry,
        )

        self._outcome_conflicts = Counter(
            f"{prefix}_outcome_conflicts_total",
            "Outcome inserts that found an existing outcome",
            registry=registry,
        )

        self._signal_errors = Counter(
            f"{prefix}_signal_errors_total",
            "Per-signal failures isolated during a pass",
            ["stage"],
            registry=registry,
        )

        self._price_failures = Counter(
            f"{prefix}_price_fetch_failures_total",
            "Batched price lookups that failed or timed out",
            registry=registry,
        )

        self._repairs = Counter(
            f"{prefix}_repairs_total",
            "Retroactive outcomes written by the repair pass",
            registry=registry,
        )

        logger.info("Prometheus metrics initialized")

    def start_server(self) -> bool:
        """Start the Prometheus HTTP server.

        Returns:
            True if server started successfully, False otherwise
        """
        if not self.config.enabled:
            logger.info("Metrics disabled, server not started")
            return False

        with self._lock:
            if self._server_started:
                logger.warning("Metrics server already started")
                return True

            try:
                start_http_server(self.config.port, registry=self.registry)
                self._server_started = True
                logger.info(f"Prometheus metrics server started on port {self.config.port}")
                return True
            except Exception as e:
                logger.error(f"Failed to start metrics server: {e}")
                return False

    @property
    def is_enabled(self) -> bool:
        return self.config.enabled

    # --- Reconciliation ---

    def record_tick(
        self,
        duration_seconds: float,
        active_signals: int,
        evaluated: int = 0,
        pending_confirmations: int = 0,
    ) -> None:
        """Record a completed reconciliation pass.

        Args:
            duration_seconds: Wall time of the pass
            active_signals: Active signals loaded at the start of the pass
            evaluated: Signals evaluated with a usable price
            pending_confirmations: Open stop-loss streaks after the pass
        """
        if not self.config.enabled or self._ticks is None:
            return
        self._ticks.inc()
        self._tick_duration.observe(duration_seconds)
        self._active_signals.set(active_signals)
        self._signals_evaluated.inc(evaluated)
        self._pending_confirmations.set(pending_confirmations)

    def record_sl_detection(self) -> None:
        if not self.config.enabled or self._sl_detections is None:
            return
        self._sl_detections.inc()

    def record_sl_confirmed(self) -> None:
        if not self.config.enabled or self._sl_confirmations is None:
            return
        self._sl_confirmations.inc()

    def record_target_hit(self, symbol: str, level: int) -> None:
        if not self.config.enabled or self._targets_hit is None:
            return
        self._targets_hit.labels(symbol=symbol, level=str(level)).inc()

    def record_stop_trailed(self, symbol: str) -> None:
        if not self.config.enabled or self._stops_trailed is None:
            return
        self._stops_trailed.labels(symbol=symbol).inc()

    def record_outcome(
        self,
        symbol: str,
        reason: str,
        pnl_pips: int,
        result: str | None = None,
    ) -> None:
        """Record a terminal outcome.

        Args:
            symbol: Instrument symbol
            reason: Exit reason value ("stop_loss_hit", "all_targets_hit", ...)
            pnl_pips: Signed result in pips
            result: "win", "loss" or "breakeven"; derived from pips if omitted
        """
        if not self.config.enabled:
            return

        if result is None:
            if pnl_pips > 0:
                result = "win"
            elif pnl_pips < 0:
                result = "loss"
            else:
                result = "breakeven"

        if self._outcomes:
            self._outcomes.labels(symbol=symbol, reason=reason, result=result).inc()
        if self._outcome_pips:
            self._outcome_pips.observe(pnl_pips)

    def record_outcome_conflict(self) -> None:
        if not self.config.enabled or self._outcome_conflicts is None:
            return
        self._outcome_conflicts.inc()

    # --- Failures ---

    def record_signal_error(self, stage: str) -> None:
        """Record an isolated per-signal failure.

        Args:
            stage: Where it failed ("evaluate", "persist", "outcome", ...)
        """
        if not self.config.enabled or self._signal_errors is None:
            return
        self._signal_errors.labels(stage=stage).inc()

    def record_price_failure(self) -> None:
        if not self.config.enabled or self._price_failures is None:
            return
        self._price_failures.inc()

    # --- Repair ---

    def record_repair(self, count: int = 1) -> None:
        if not self.config.enabled or self._repairs is None:
            return
        self._repairs.inc(count)


def init_metrics(
    config: MetricsConfig | None = None,
    registry: CollectorRegistry | None = None,
) -> MetricsService:
    """Initialize the global metrics service.

    Args:
        config: Metrics configuration
        registry: Collector registry (default global registry)

    Returns:
        Initialized MetricsService
    """
    global _metrics
    _metrics = MetricsService(config, registry=registry)
    return _metrics


def get_metrics() -> MetricsService | None:
    """Get the global metrics service instance.

    Returns:
        MetricsService if initialized, None otherwise
    """
    return _metrics
