"""Tests for Telegram alerter service."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from pipwatch_engine.alerts.events import HealthDegraded, PassFailed, SignalCompleted, StopLossHit, TargetHit
from pipwatch_engine.alerts.telegram import (
    Alert,
    AlertPriority,
    AlertType,
    TelegramAlerter,
    TelegramConfig,
    TelegramNotifier,
)
from pipwatch_engine.models.outcome import Outcome
from pipwatch_engine.models.signal import Direction


class TestAlert:
    """Test suite for Alert dataclass."""

    def test_to_telegram_message_basic(self):
        alert = Alert(
            alert_type=AlertType.TARGET_HIT,
            priority=AlertPriority.MEDIUM,
            title="TP1 Hit: EURUSD",
            message="BUY signal reached take profit 1",
        )
        msg = alert.to_telegram_message()
        assert "*TP1 Hit: EURUSD*" in msg
        assert "BUY signal reached take profit 1" in msg
        assert "🎯" in msg

    def test_to_telegram_message_with_metadata(self):
        alert = Alert(
            alert_type=AlertType.SIGNAL_COMPLETED,
            priority=AlertPriority.MEDIUM,
            title="Signal Closed",
            message="All Take Profits Hit",
            metadata={"symbol": "EURUSD", "exit_price": "1.11000"},
        )
        msg = alert.to_telegram_message()
        assert "Symbol: `EURUSD`" in msg
        assert "Exit Price: `1.11000`" in msg

    def test_to_telegram_message_critical_priority(self):
        alert = Alert(
            alert_type=AlertType.SYSTEM_STATUS,
            priority=AlertPriority.CRITICAL,
            title="Engine Down",
            message="Reconciliation halted",
        )
        assert "🔴 CRITICAL:" in alert.to_telegram_message()

    def test_to_telegram_message_high_priority(self):
        alert = Alert(
            alert_type=AlertType.STOP_LOSS_HIT,
            priority=AlertPriority.HIGH,
            title="Stop Loss Hit",
            message="Stopped out",
        )
        assert "🟠" in alert.to_telegram_message()

    def test_get_emoji_all_types(self):
        emoji_map = {
            AlertType.TARGET_HIT: "🎯",
            AlertType.STOP_LOSS_HIT: "⛔",
            AlertType.SIGNAL_COMPLETED: "🏁",
            AlertType.HEALTH_REPORT: "📋",
            AlertType.ERROR: "❌",
            AlertType.SYSTEM_STATUS: "ℹ️",
        }
        for alert_type, expected_emoji in emoji_map.items():
            alert = Alert(
                alert_type=alert_type,
                priority=AlertPriority.LOW,
                title="Test",
                message="Test message",
            )
            assert expected_emoji in alert.to_telegram_message()


class TestTelegramConfig:
    def test_default_values(self):
        config = TelegramConfig(bot_token="token", chat_id="123")
        assert config.enabled is True
        assert config.min_priority == AlertPriority.LOW
        assert config.max_alerts_per_minute == 10
        assert config.max_errors_per_hour == 5


class TestTelegramAlerter:
    """Test suite for TelegramAlerter."""

    @pytest.fixture
    def config(self) -> TelegramConfig:
        return TelegramConfig(bot_token="test_token", chat_id="123456")

    @pytest.fixture
    def alerter(self, config: TelegramConfig) -> TelegramAlerter:
        return TelegramAlerter(config)

    def test_init(self, alerter: TelegramAlerter, config: TelegramConfig):
        assert alerter.config == config
        assert alerter._client is None
        assert alerter._alert_timestamps == []

    @pytest.mark.asyncio
    async def test_send_alert_disabled(self, config: TelegramConfig):
        config.enabled = False
        alerter = TelegramAlerter(config)
        alert = Alert(alert_type=AlertType.ERROR, priority=AlertPriority.HIGH, title="Test", message="Test")
        assert await alerter.send_alert(alert) is False

    @pytest.mark.asyncio
    async def test_send_alert_priority_filter(self, config: TelegramConfig):
        config.min_priority = AlertPriority.HIGH
        alerter = TelegramAlerter(config)
        alert = Alert(
            alert_type=AlertType.HEALTH_REPORT,
            priority=AlertPriority.LOW,
            title="Health",
            message="Healthy",
        )
        assert await alerter.send_alert(alert) is False

        alert.priority = AlertPriority.MEDIUM
        assert await alerter.send_alert(alert) is False

    @pytest.mark.asyncio
    async def test_send_alert_rate_limited(self, alerter: TelegramAlerter):
        now = datetime.now(timezone.utc)
        alerter._alert_timestamps = [now for _ in range(15)]
        alert = Alert(alert_type=AlertType.TARGET_HIT, priority=AlertPriority.MEDIUM, title="T", message="T")
        assert await alerter.send_alert(alert) is False

    @pytest.mark.asyncio
    async def test_send_alert_success(self, alerter: TelegramAlerter):
        with patch.object(alerter, "_send_message", new_callable=AsyncMock) as mock_send:
            mock_send.return_value = True
            alert = Alert(alert_type=AlertType.TARGET_HIT, priority=AlertPriority.MEDIUM, title="T", message="T")

            assert await alerter.send_alert(alert) is True
            mock_send.assert_called_once()
            assert len(alerter._alert_timestamps) == 1

    @pytest.mark.asyncio
    async def test_send_target_hit(self, alerter: TelegramAlerter):
        with patch.object(alerter, "send_alert", new_callable=AsyncMock) as mock_send:
            mock_send.return_value = True
            result = await alerter.send_target_hit(
                signal_id="sig-1", symbol="EURUSD", direction="BUY", level=1, price=1.1052,
            )

        assert result is True
        alert = mock_send.call_args[0][0]
        assert alert.alert_type == AlertType.TARGET_HIT
        assert alert.priority == AlertPriority.MEDIUM
        assert alert.title == "TP1 Hit: EURUSD"
        assert alert.metadata["price"] == "1.10520"

    @pytest.mark.asyncio
    async def test_send_stop_loss_hit(self, alerter: TelegramAlerter):
        with patch.object(alerter, "send_alert", new_callable=AsyncMock) as mock_send:
            mock_send.return_value = True
            await alerter.send_stop_loss_hit(
                signal_id="sig-2", symbol="GBPUSD", direction="SELL", stop_loss=1.3050, price=1.3057,
            )

        alert = mock_send.call_args[0][0]
        assert alert.alert_type == AlertType.STOP_LOSS_HIT
        assert alert.priority == AlertPriority.HIGH
        assert alert.metadata["stop_loss"] == "1.30500"

    @pytest.mark.asyncio
    async def test_send_signal_completed_win(self, alerter: TelegramAlerter):
        with patch.object(alerter, "send_alert", new_callable=AsyncMock) as mock_send:
            mock_send.return_value = True
            await alerter.send_signal_completed(
                signal_id="sig-1", symbol="EURUSD", direction="BUY",
                notes="All Take Profits Hit", pnl_pips=100, exit_price=1.11,
            )

        alert = mock_send.call_args[0][0]
        assert alert.alert_type == AlertType.SIGNAL_COMPLETED
        assert "🟢" in alert.title
        assert alert.metadata["pips"] == "+100"

    @pytest.mark.asyncio
    async def test_send_signal_completed_loss(self, alerter: TelegramAlerter):
        with patch.object(alerter, "send_alert", new_callable=AsyncMock) as mock_send:
            mock_send.return_value = True
            await alerter.send_signal_completed(
                signal_id="sig-2", symbol="GBPUSD", direction="SELL",
                notes="Stop Loss Hit", pnl_pips=-50, exit_price=1.305,
            )

        alert = mock_send.call_args[0][0]
        assert "🔴" in alert.title
        assert alert.metadata["pips"] == "-50"

    @pytest.mark.asyncio
    async def test_send_health_report(self, alerter: TelegramAlerter):
        with patch.object(alerter, "send_alert", new_callable=AsyncMock) as mock_send:
            mock_send.return_value = True
            await alerter.send_health_report(
                status="NEEDS_ATTENTION",
                quality="Good",
                recommendations=["Repair expired signals without outcomes"],
            )

        alert = mock_send.call_args[0][0]
        assert alert.alert_type == AlertType.HEALTH_REPORT
        assert alert.priority == AlertPriority.LOW
        assert "Repair expired signals without outcomes" in alert.message

    @pytest.mark.asyncio
    async def test_send_error(self, alerter: TelegramAlerter):
        with patch.object(alerter, "send_alert", new_callable=AsyncMock) as mock_send:
            mock_send.return_value = True
            await alerter.send_error(error_type="OperationalError", message="Outcome insert failed")

        alert = mock_send.call_args[0][0]
        assert alert.alert_type == AlertType.ERROR
        assert len(alerter._error_timestamps) == 1

    @pytest.mark.asyncio
    async def test_send_error_throttled(self, alerter: TelegramAlerter):
        alerter._error_timestamps = [datetime.now(timezone.utc) for _ in range(10)]
        assert await alerter.send_error(error_type="Test", message="Should be throttled") is False

    @pytest.mark.asyncio
    async def test_context_manager(self, config: TelegramConfig):
        async with TelegramAlerter(config) as alerter:
            assert alerter._client is not None
        assert alerter._client is None

    def test_check_rate_limit_cleans_old(self, alerter: TelegramAlerter):
        old = datetime.now(timezone.utc) - timedelta(minutes=5)
        recent = datetime.now(timezone.utc)
        alerter._alert_timestamps = [old, old, recent]

        assert alerter._check_rate_limit() is True
        assert len(alerter._alert_timestamps) == 1


class TestSendEvent:
    """Routing engine events to alerts."""

    @pytest.fixture
    def alerter(self) -> TelegramAlerter:
        return TelegramAlerter(TelegramConfig(bot_token="t", chat_id="1"))

    @pytest.mark.asyncio
    async def test_target_hit_event(self, alerter: TelegramAlerter):
        event = TargetHit(
            signal_id="sig-1", symbol="EURUSD", direction=Direction.BUY,
            level=2, target_price=1.11, price=1.1102,
        )
        with patch.object(alerter, "send_target_hit", new_callable=AsyncMock) as mock_send:
            mock_send.return_value = True
            assert await alerter.send_event(event) is True
        kwargs = mock_send.call_args.kwargs
        assert kwargs["level"] == 2
        assert kwargs["direction"] == "BUY"
        assert kwargs["target"] == "1.11000"

    @pytest.mark.asyncio
    async def test_stop_loss_event(self, alerter: TelegramAlerter):
        event = StopLossHit(
            signal_id="sig-2", symbol="GBPUSD", direction=Direction.SELL, stop_loss=1.305, price=1.3057,
        )
        with patch.object(alerter, "send_stop_loss_hit", new_callable=AsyncMock) as mock_send:
            mock_send.return_value = True
            await alerter.send_event(event)
        assert mock_send.call_args.kwargs["price"] == 1.3057

    @pytest.mark.asyncio
    async def test_retroactive_completion_event(self, alerter: TelegramAlerter):
        outcome = Outcome(
            signal_id="sig-3", hit_target=True, exit_price=1.105, pnl_pips=50,
            notes="Take Profit 1 Hit (Retroactive)", target_hit_level=1,
        )
        event = SignalCompleted(
            signal_id="sig-3", symbol="EURUSD", direction=Direction.BUY, outcome=outcome, retroactive=True,
        )
        with patch.object(alerter, "send_signal_completed", new_callable=AsyncMock) as mock_send:
            mock_send.return_value = True
            await alerter.send_event(event)
        kwargs = mock_send.call_args.kwargs
        assert kwargs["pnl_pips"] == 50
        assert kwargs["retroactive"] == "yes"

    @pytest.mark.asyncio
    async def test_health_degraded_event(self, alerter: TelegramAlerter):
        event = HealthDegraded(
            status="NEEDS_ATTENTION", quality="Poor",
            recommendations=("Repair expired signals without outcomes",),
            active_signals=12, expired_without_outcome=9,
        )
        with patch.object(alerter, "send_health_report", new_callable=AsyncMock) as mock_send:
            mock_send.return_value = True
            assert await alerter.send_event(event) is True
        mock_send.assert_awaited_once_with(
            status="NEEDS_ATTENTION",
            quality="Poor",
            recommendations=["Repair expired signals without outcomes"],
            active_signals=12,
            expired_without_outcome=9,
        )

    @pytest.mark.asyncio
    async def test_pass_failed_event(self, alerter: TelegramAlerter):
        event = PassFailed(pass_name="repair", errors=3, message="3 of 10 expired signals could not be repaired")
        with patch.object(alerter, "send_error", new_callable=AsyncMock) as mock_send:
            mock_send.return_value = True
            assert await alerter.send_event(event) is True
        mock_send.assert_awaited_once_with(
            error_type="repair pass",
            message="3 of 10 expired signals could not be repaired",
            errors=3,
        )

    def test_notifier_delivers_synchronously(self, alerter: TelegramAlerter):
        event = TargetHit(
            signal_id="sig-1", symbol="EURUSD", direction=Direction.BUY,
            level=1, target_price=1.105, price=1.1051,
        )
        with patch.object(alerter, "send_event", new_callable=AsyncMock) as mock_send:
            TelegramNotifier(alerter).deliver(event)
        mock_send.assert_awaited_once_with(event)


class TestTelegramHTTPSending:
    """Tests for HTTP sending methods with mocked httpx."""

    @pytest.fixture
    def alerter(self) -> TelegramAlerter:
        alerter = TelegramAlerter(TelegramConfig(bot_token="test_token", chat_id="123456"))
        alerter._retry_delay = 0.0
        return alerter

    @pytest.mark.asyncio
    async def test_send_message_without_client(self, alerter: TelegramAlerter):
        """_send_message creates a temporary client when none is open."""
        mock_response = MagicMock()
        mock_response.status_code = 200

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = AsyncMock()
            mock_client.post = AsyncMock(return_value=mock_response)
            mock_client.__aenter__ = AsyncMock(return_value=mock_client)
            mock_client.__aexit__ = AsyncMock(return_value=None)
            mock_client_class.return_value = mock_client

            assert await alerter._send_message("Test message") is True
            mock_client.post.assert_called_once()

    @pytest.mark.asyncio
    async def test_send_message_with_existing_client(self, alerter: TelegramAlerter):
        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_client = AsyncMock()
        mock_client.post = AsyncMock(return_value=mock_response)
        alerter._client = mock_client

        assert await alerter._send_message("Test message") is True
        mock_client.post.assert_called_once()

    @pytest.mark.asyncio
    async def test_send_with_client_success(self, alerter: TelegramAlerter):
        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_client = AsyncMock()
        mock_client.post = AsyncMock(return_value=mock_response)

        assert await alerter._send_with_client(mock_client, "Test message") is True
        call_args = mock_client.post.call_args
        assert call_args[0][0].endswith("/bottest_token/sendMessage")
        assert call_args[1]["json"]["text"] == "Test message"
        assert call_args[1]["json"]["chat_id"] == "123456"

    @pytest.mark.asyncio
    async def test_send_with_client_rate_limited(self, alerter: TelegramAlerter):
        """A 429 response is retried after retry_after."""
        rate_limited = MagicMock()
        rate_limited.status_code = 429
        rate_limited.json.return_value = {"parameters": {"retry_after": 0.01}}
        success = MagicMock()
        success.status_code = 200
        mock_client = AsyncMock()
        mock_client.post = AsyncMock(side_effect=[rate_limited, success])

        assert await alerter._send_with_client(mock_client, "Test message") is True
        assert mock_client.post.call_count == 2

    @pytest.mark.asyncio
    async def test_send_with_client_non_retryable_error(self, alerter: TelegramAlerter):
        mock_response = MagicMock()
        mock_response.status_code = 401
        mock_client = AsyncMock()
        mock_client.post = AsyncMock(return_value=mock_response)

        assert await alerter._send_with_client(mock_client, "Test message") is False
        assert mock_client.post.call_count == 1

    @pytest.mark.asyncio
    async def test_send_with_client_timeout_with_retry(self, alerter: TelegramAlerter):
        success = MagicMock()
        success.status_code = 200
        mock_client = AsyncMock()
        mock_client.post = AsyncMock(side_effect=[
            httpx.TimeoutException("Timeout"),
            httpx.TimeoutException("Timeout"),
            success,
        ])

        assert await alerter._send_with_client(mock_client, "Test message") is True
        assert mock_client.post.call_count == 3

    @pytest.mark.asyncio
    async def test_send_with_client_timeout_exhausted(self, alerter: TelegramAlerter):
        mock_client = AsyncMock()
        mock_client.post = AsyncMock(side_effect=httpx.TimeoutException("Timeout"))

        assert await alerter._send_with_client(mock_client, "Test message") is False
        assert mock_client.post.call_count == 3  # max_retries

    @pytest.mark.asyncio
    async def test_send_with_client_http_error(self, alerter: TelegramAlerter):
        mock_client = AsyncMock()
        mock_client.post = AsyncMock(side_effect=httpx.HTTPError("Connection failed"))

        assert await alerter._send_with_client(mock_client, "Test message") is False
        assert mock_client.post.call_count == 1
