"""Telegram alert service for signal outcome notifications.

Provides real-time notifications for:
- Take-profit levels hit
- Stop-loss and trailing stop hits
- Completed signals (including retroactive outcomes)
- Outcome health reports and engine errors
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any

import httpx

from .dispatcher import Notifier
from .events import HealthDegraded, NotificationEvent, PassFailed, SignalCompleted, StopLossHit, TargetHit

logger = logging.getLogger(__name__)


class AlertPriority(Enum):
    """Alert priority levels."""
    LOW = auto()      # Health reports
    MEDIUM = auto()   # Target hits, completions
    HIGH = auto()     # Stop losses, errors
    CRITICAL = auto()  # Engine down


class AlertType(Enum):
    """Types of alerts."""
    TARGET_HIT = "target_hit"
    STOP_LOSS_HIT = "stop_loss_hit"
    SIGNAL_COMPLETED = "signal_completed"
    HEALTH_REPORT = "health_report"
    ERROR = "error"
    SYSTEM_STATUS = "system_status"


@dataclass
class Alert:
    """Alert message container."""
    alert_type: AlertType
    priority: AlertPriority
    title: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_telegram_message(self) -> str:
        """Format alert as Telegram message with markdown."""
        emoji = self._get_emoji()
        priority_tag = self._get_priority_tag()

        lines = [
            f"{emoji} *{priority_tag}{self.title}*",
            "",
            self.message,
        ]

        if self.metadata:
            lines.append("")
            lines.append("_Details:_")
            for key, value in self.metadata.items():
                formatted_key = key.replace("_", " ").title()
                lines.append(f"• {formatted_key}: `{value}`")

        lines.append("")
        lines.append(f"🕐 {self.timestamp.strftime('%Y-%m-%d %H:%M:%S UTC')}")

        return "\n".join(lines)

    def _get_emoji(self) -> str:
        emojis = {
            AlertType.TARGET_HIT: "🎯",
            AlertType.STOP_LOSS_HIT: "⛔",
            AlertType.SIGNAL_COMPLETED: "🏁",
            AlertType.HEALTH_REPORT: "📋",
            AlertType.ERROR: "❌",
            AlertType.SYSTEM_STATUS: "ℹ️",
        }
        return emojis.get(self.alert_type, "📌")

    def _get_priority_tag(self) -> str:
        if self.priority == AlertPriority.CRITICAL:
            return "🔴 CRITICAL: "
        elif self.priority == AlertPriority.HIGH:
            return "🟠 "
        return ""


@dataclass
class TelegramConfig:
    """Telegram bot configuration."""
    bot_token: str
    chat_id: str
    enabled: bool = True
    # Alert filtering
    min_priority: AlertPriority = AlertPriority.LOW
    # Rate limiting
    max_alerts_per_minute: int = 10
    # Error throttling
    max_errors_per_hour: int = 5


class TelegramAlerter:
    """Telegram notification service.

    Sends formatted alerts to a Telegram chat via bot.
    Includes rate limiting, priority filtering, and error handling.

    Example:
        >>> config = TelegramConfig(bot_token="xxx", chat_id="123")
        >>> alerter = TelegramAlerter(config)
        >>> await alerter.send_target_hit(
        ...     signal_id="sig-1",
        ...     symbol="EURUSD",
        ...     direction="BUY",
        ...     level=1,
        ...     price=1.1050,
        ... )
    """

    TELEGRAM_API_BASE = "https://api.telegram.org"

    def __init__(self, config: TelegramConfig):
        """Initialize alerter with configuration.

        Args:
            config: Telegram bot configuration
        """
        self.config = config
        self._client: httpx.AsyncClient | None = None

        # Rate limiting state
        self._alert_timestamps: list[datetime] = []
        self._error_timestamps: list[datetime] = []

        # Retry configuration
        self._max_retries = 3
        self._retry_delay = 1.0

    async def __aenter__(self) -> "TelegramAlerter":
        self._client = httpx.AsyncClient(timeout=30.0)
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send_alert(self, alert: Alert) -> bool:
        """Send an alert to Telegram.

        Args:
            alert: Alert to send

        Returns:
            True if sent successfully, False otherwise
        """
        if not self.config.enabled:
            return False

        if alert.priority.value < self.config.min_priority.value:
            return False

        if not self._check_rate_limit():
            logger.warning("Telegram rate limit reached, dropping alert: %s", alert.title)
            return False

        success = await self._send_message(alert.to_telegram_message())

        if success:
            self._alert_timestamps.append(datetime.now(timezone.utc))

        return success

    async def send_target_hit(
        self,
        signal_id: str,
        symbol: str,
        direction: str,
        level: int,
        price: float,
        **kwargs: Any,
    ) -> bool:
        """Send take-profit hit notification.

        Args:
            signal_id: Signal identifier
            symbol: Instrument symbol
            direction: BUY or SELL
            level: 1-based take-profit level
            price: Price at which the level was confirmed
            **kwargs: Additional metadata
        """
        metadata = {
            "signal": signal_id,
            "symbol": symbol,
            "direction": direction,
            "price": f"{price:.5f}",
            **kwargs,
        }

        alert = Alert(
            alert_type=AlertType.TARGET_HIT,
            priority=AlertPriority.MEDIUM,
            title=f"TP{level} Hit: {symbol}",
            message=f"{direction} signal reached take profit {level}",
            metadata=metadata,
        )
        return await self.send_alert(alert)

    async def send_stop_loss_hit(
        self,
        signal_id: str,
        symbol: str,
        direction: str,
        stop_loss: float,
        price: float,
        **kwargs: Any,
    ) -> bool:
        """Send stop-loss hit notification."""
        metadata = {
            "signal": signal_id,
            "symbol": symbol,
            "direction": direction,
            "stop_loss": f"{stop_loss:.5f}",
            "price": f"{price:.5f}",
            **kwargs,
        }

        alert = Alert(
            alert_type=AlertType.STOP_LOSS_HIT,
            priority=AlertPriority.HIGH,
            title=f"Stop Loss Hit: {symbol}",
            message=f"{direction} signal stopped out at {price:.5f}",
            metadata=metadata,
        )
        return await self.send_alert(alert)

    async def send_signal_completed(
        self,
        signal_id: str,
        symbol: str,
        direction: str,
        notes: str,
        pnl_pips: int,
        exit_price: float,
        **kwargs: Any,
    ) -> bool:
        """Send signal completion notification.

        Args:
            signal_id: Signal identifier
            symbol: Instrument symbol
            direction: BUY or SELL
            notes: Outcome description
            pnl_pips: Signed result in pips
            exit_price: Recorded exit price
            **kwargs: Additional metadata
        """
        emoji = "🟢" if pnl_pips > 0 else "🔴"

        metadata = {
            "signal": signal_id,
            "symbol": symbol,
            "direction": direction,
            "exit": f"{exit_price:.5f}",
            "pips": f"{'+' if pnl_pips >= 0 else ''}{pnl_pips}",
            **kwargs,
        }

        alert = Alert(
            alert_type=AlertType.SIGNAL_COMPLETED,
            priority=AlertPriority.MEDIUM,
            title=f"{emoji} Signal Closed: {symbol}",
            message=notes,
            metadata=metadata,
        )
        return await self.send_alert(alert)

    async def send_health_report(
        self,
        status: str,
        quality: str,
        recommendations: list[str],
        **kwargs: Any,
    ) -> bool:
        """Send outcome health summary."""
        message_lines = [f"Status: {status}", f"Quality: {quality}"]
        if recommendations:
            message_lines.append("")
            message_lines.extend(f"• {r}" for r in recommendations)

        alert = Alert(
            alert_type=AlertType.HEALTH_REPORT,
            priority=AlertPriority.LOW,
            title="Outcome Health",
            message="\n".join(message_lines),
            metadata=kwargs,
        )
        return await self.send_alert(alert)

    async def send_error(
        self,
        error_type: str,
        message: str,
        **kwargs: Any,
    ) -> bool:
        """Send error notification.

        Args:
            error_type: Type of error
            message: Error message
            **kwargs: Additional metadata
        """
        if not self._check_error_limit():
            return False

        self._error_timestamps.append(datetime.now(timezone.utc))

        alert = Alert(
            alert_type=AlertType.ERROR,
            priority=AlertPriority.HIGH,
            title=f"Error: {error_type}",
            message=message,
            metadata=kwargs,
        )
        return await self.send_alert(alert)

    async def send_event(self, event: NotificationEvent) -> bool:
        """Route an engine event to the matching alert."""
        if isinstance(event, TargetHit):
            return await self.send_target_hit(
                signal_id=event.signal_id,
                symbol=event.symbol,
                direction=event.direction.value,
                level=event.level,
                price=event.price,
                target=f"{event.target_price:.5f}",
            )
        if isinstance(event, StopLossHit):
            return await self.send_stop_loss_hit(
                signal_id=event.signal_id,
                symbol=event.symbol,
                direction=event.direction.value,
                stop_loss=event.stop_loss,
                price=event.price,
            )
        if isinstance(event, SignalCompleted):
            outcome = event.outcome
            extra: dict[str, Any] = {"retroactive": "yes"} if event.retroactive else {}
            return await self.send_signal_completed(
                signal_id=event.signal_id,
                symbol=event.symbol,
                direction=event.direction.value,
                notes=outcome.notes,
                pnl_pips=outcome.pnl_pips,
                exit_price=outcome.exit_price,
                **extra,
            )
        if isinstance(event, HealthDegraded):
            return await self.send_health_report(
                status=event.status,
                quality=event.quality,
                recommendations=list(event.recommendations),
                active_signals=event.active_signals,
                expired_without_outcome=event.expired_without_outcome,
            )
        if isinstance(event, PassFailed):
            return await self.send_error(
                error_type=f"{event.pass_name} pass",
                message=event.message,
                errors=event.errors,
            )
        return False

    def _check_rate_limit(self) -> bool:
        now = datetime.now(timezone.utc)
        cutoff = now.replace(second=0, microsecond=0)  # Start of current minute

        self._alert_timestamps = [
            ts for ts in self._alert_timestamps
            if ts >= cutoff
        ]

        return len(self._alert_timestamps) < self.config.max_alerts_per_minute

    def _check_error_limit(self) -> bool:
        now = datetime.now(timezone.utc)
        hour_start = now.replace(minute=0, second=0, microsecond=0)

        self._error_timestamps = [
            ts for ts in self._error_timestamps
            if ts >= hour_start
        ]

        return len(self._error_timestamps) < self.config.max_errors_per_hour

    async def _send_message(self, text: str) -> bool:
        if not self._client:
            async with httpx.AsyncClient(timeout=30.0) as client:
                return await self._send_with_client(client, text)
        return await self._send_with_client(self._client, text)

    async def _send_with_client(self, client: httpx.AsyncClient, text: str) -> bool:
        """Send message using provided client with retries."""
        url = f"{self.TELEGRAM_API_BASE}/bot{self.config.bot_token}/sendMessage"
        payload = {
            "chat_id": self.config.chat_id,
            "text": text,
            "parse_mode": "Markdown",
            "disable_web_page_preview": True,
        }

        for attempt in range(self._max_retries):
            try:
                response = await client.post(url, json=payload)
                if response.status_code == 200:
                    return True
                elif response.status_code == 429:
                    retry_after = response.json().get("parameters", {}).get("retry_after", 10)
                    await asyncio.sleep(retry_after)
                else:
                    logger.warning("Telegram API returned %s", response.status_code)
                    break
            except httpx.TimeoutException:
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(self._retry_delay * (attempt + 1))
            except httpx.HTTPError as e:
                logger.warning("Telegram request failed: %s", e)
                break

        return False


class TelegramNotifier(Notifier):
    """Blocking adapter so the dispatcher worker can deliver via Telegram."""

    def __init__(self, alerter: TelegramAlerter):
        self.alerter = alerter

    def deliver(self, event: NotificationEvent) -> None:
        asyncio.run(self.alerter.send_event(event))
