"""Configuration package for the monitoring engine."""

from .loader import load_config
from .models import (
    DatabaseConfig,
    EngineConfig,
    MarketDataConfig,
    MonitorConfig,
    NotificationsConfig,
    SchedulerConfig,
)

__all__ = [
    "DatabaseConfig",
    "EngineConfig",
    "MarketDataConfig",
    "MonitorConfig",
    "NotificationsConfig",
    "SchedulerConfig",
    "load_config",
]
