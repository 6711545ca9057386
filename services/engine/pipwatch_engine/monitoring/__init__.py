"""Monitoring services for the pipwatch engine.

Provides observability capabilities:
- SentryService: Error tracking
- MetricsService: Prometheus metrics for reconciliation and outcomes
- OutcomeHealthCheck: Outcome system health summary
"""

from pipwatch_engine.monitoring.health import (
    HealthReport,
    HealthStatus,
    OutcomeHealthCheck,
    OutcomeQuality,
)
from pipwatch_engine.monitoring.metrics import (
    MetricsConfig,
    MetricsService,
    get_metrics,
    init_metrics,
)
from pipwatch_engine.monitoring.sentry_service import (
    SentryConfig,
    SentryLevel,
    SentryService,
    get_sentry,
    init_sentry,
)

__all__ = [
    # Health
    "HealthReport",
    "HealthStatus",
    "OutcomeHealthCheck",
    "OutcomeQuality",
    # Metrics
    "MetricsConfig",
    "MetricsService",
    "get_metrics",
    "init_metrics",
    # Sentry
    "SentryConfig",
    "SentryLevel",
    "SentryService",
    "get_sentry",
    "init_sentry",
]
