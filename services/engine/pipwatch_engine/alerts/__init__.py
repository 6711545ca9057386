"""Notifications for the pipwatch engine.

- Domain events (TargetHit, StopLossHit, SignalCompleted, HealthDegraded, PassFailed)
- QueuedDispatcher: fire-and-forget delivery on a background worker
- TelegramAlerter: real-time notifications via Telegram bot
"""

from pipwatch_engine.alerts.dispatcher import (
    LoggingNotifier,
    NotificationDispatcher,
    Notifier,
    NullDispatcher,
    QueuedDispatcher,
)
from pipwatch_engine.alerts.events import (
    HealthDegraded,
    NotificationEvent,
    PassFailed,
    SignalCompleted,
    StopLossHit,
    TargetHit,
)
from pipwatch_engine.alerts.telegram import (
    Alert,
    AlertPriority,
    AlertType,
    TelegramAlerter,
    TelegramConfig,
    TelegramNotifier,
)

__all__ = [
    "Alert",
    "AlertPriority",
    "AlertType",
    "HealthDegraded",
    "LoggingNotifier",
    "NotificationDispatcher",
    "NotificationEvent",
    "Notifier",
    "NullDispatcher",
    "PassFailed",
    "QueuedDispatcher",
    "SignalCompleted",
    "StopLossHit",
    "TargetHit",
    "TelegramAlerter",
    "TelegramConfig",
    "TelegramNotifier",
]
