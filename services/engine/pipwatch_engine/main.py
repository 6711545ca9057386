"""Main entry point for the outcome monitoring engine."""

import logging
import os
import signal
from typing import Any

from prometheus_client import CollectorRegistry
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pipwatch_engine.alerts import (
    LoggingNotifier,
    NotificationDispatcher,
    Notifier,
    NullDispatcher,
    QueuedDispatcher,
    TelegramAlerter,
    TelegramConfig,
    TelegramNotifier,
)
from pipwatch_engine.config.loader import load_config
from pipwatch_engine.config.models import EngineConfig
from pipwatch_engine.core.confirmation import ConfirmationTracker
from pipwatch_engine.core.evaluator import Evaluator
from pipwatch_engine.core.reconciliation_loop import ReconciliationLoop
from pipwatch_engine.core.repair import RepairPass
from pipwatch_engine.core.scheduler import MonitorScheduler
from pipwatch_engine.market_data import DatabasePriceFeed, PriceFeed, StubPriceFeed
from pipwatch_engine.monitoring.health import OutcomeHealthCheck
from pipwatch_engine.monitoring.metrics import MetricsConfig, init_metrics
from pipwatch_engine.monitoring.sentry_service import SentryConfig, get_sentry, init_sentry
from pipwatch_engine.persistence.models import Base
from pipwatch_engine.persistence.repository import SignalRepository

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_db_engine(database_url: str, config: EngineConfig) -> Engine:
    """Create a SQLAlchemy engine with pool and statement timeouts."""
    if database_url.startswith("sqlite"):
        # Passes run on timer threads; in-memory SQLite must share one connection
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=False, **kwargs)

    connect_args: dict[str, Any] = {}
    if database_url.startswith("postgresql"):
        connect_args["options"] = f"-c statement_timeout={config.database.statement_timeout_ms}"
    return create_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
        pool_timeout=config.database.pool_timeout_seconds,
        connect_args=connect_args,
    )


def build_dispatcher(config: EngineConfig) -> NotificationDispatcher:
    """Build the notification dispatcher from config and environment."""
    if not config.notifications.enabled:
        logger.info("⚠️ Notifications disabled")
        return NullDispatcher()

    notifiers: list[Notifier] = [LoggingNotifier()]
    if config.notifications.telegram_enabled:
        bot_token = os.environ.get("TELEGRAM_BOT_TOKEN", "")
        chat_id = os.environ.get("TELEGRAM_CHAT_ID", "")
        if bot_token and chat_id:
            notifiers.append(TelegramNotifier(TelegramAlerter(TelegramConfig(bot_token=bot_token, chat_id=chat_id))))
            logger.info("✅ Telegram notifications enabled")
        else:
            logger.warning("⚠️ Telegram enabled but TELEGRAM_BOT_TOKEN/TELEGRAM_CHAT_ID not set")

    return QueuedDispatcher(notifiers, maxsize=config.notifications.queue_size)


def main() -> int:
    """Main entry point for the monitoring engine."""
    logger.info("🚀 Pipwatch Engine starting...")

    # Initialize Sentry (if SENTRY_DSN is configured)
    sentry_dsn = os.environ.get("SENTRY_DSN", "")
    sentry = None
    if sentry_dsn:
        sentry_env = os.environ.get("SENTRY_ENVIRONMENT", "development")
        sentry = init_sentry(SentryConfig(dsn=sentry_dsn, environment=sentry_env, traces_sample_rate=0.1))
        logger.info(f"✅ Sentry initialized (env={sentry_env})")
    else:
        logger.info("⚠️ Sentry not configured (set SENTRY_DSN to enable)")

    # Load configuration
    try:
        config = load_config()
        logger.info(
            f"✅ Configuration loaded: tick={config.scheduler.tick_interval_seconds}s, "
            f"provider={config.market_data.provider}"
        )
    except Exception as e:
        logger.error(f"❌ Failed to load configuration: {e}")
        sentry = get_sentry()
        if sentry:
            sentry.capture_error(e, context={"phase": "config_load"})
            sentry.flush()
        return 1

    # Create database session
    database_url = os.environ.get("DATABASE_URL", "sqlite:///:memory:")
    logger.info(f"📊 Connecting to database: {database_url.split('@')[0]}...")

    try:
        engine = create_db_engine(database_url, config)
        Base.metadata.create_all(engine)
        SessionLocal = sessionmaker(bind=engine)
        session = SessionLocal()
        logger.info("✅ Database connected")
    except Exception as e:
        logger.error(f"❌ Database connection failed: {e}")
        sentry = get_sentry()
        if sentry:
            sentry.capture_error(e, context={"phase": "db_connect"})
            sentry.flush()
        return 1

    logger.info("🔧 Initializing monitoring components...")
    repo = SignalRepository(session)

    metrics_port = os.environ.get("METRICS_PORT")
    metrics = init_metrics(
        MetricsConfig(enabled=True, port=int(metrics_port) if metrics_port else 9090),
        registry=CollectorRegistry(),
    )
    if metrics_port:
        metrics.start_server()

    price_feed: PriceFeed
    if config.market_data.provider == "database":
        price_feed = DatabasePriceFeed(SessionLocal, max_price_age_seconds=config.market_data.max_price_age_seconds)
        logger.info("✅ Market data: market_state table")
    else:
        price_feed = StubPriceFeed()
        logger.info("✅ Market data: Stub (in-memory)")

    dispatcher = build_dispatcher(config)

    monitor = config.monitor
    loop = ReconciliationLoop(
        signal_store=repo,
        outcome_store=repo,
        price_feed=price_feed,
        evaluator=Evaluator(
            trailing_stop_factor=monitor.trailing_stop_factor,
            trailing_stop_enabled=monitor.trailing_stop_enabled,
        ),
        tracker=ConfirmationTracker(
            confirmation_count=monitor.confirmation_count,
            confirmation_window=monitor.confirmation_window_seconds,
            max_age=monitor.confirmation_max_age_seconds,
        ),
        dispatcher=dispatcher,
        event_log=repo,
        metrics=metrics,
        sentry=sentry,
        price_timeout_seconds=config.scheduler.price_timeout_seconds,
    )
    repair = RepairPass(
        signal_store=repo,
        outcome_store=repo,
        price_feed=price_feed,
        batch_size=config.scheduler.repair_batch_size,
        price_timeout_seconds=config.scheduler.price_timeout_seconds,
        dispatcher=dispatcher,
        event_log=repo,
        metrics=metrics,
        sentry=sentry,
    )
    scheduler = MonitorScheduler(
        loop,
        repair,
        tick_interval_seconds=config.scheduler.tick_interval_seconds,
        debounce_seconds=config.scheduler.debounce_seconds,
        repair_interval_seconds=config.scheduler.repair_interval_seconds,
        repair_on_startup=config.scheduler.repair_on_startup,
        health_check=OutcomeHealthCheck(repo, dispatcher=dispatcher),
    )
    price_feed.subscribe(scheduler.trigger)
    if isinstance(price_feed, DatabasePriceFeed):
        price_feed.start_watcher(poll_interval_seconds=config.scheduler.debounce_seconds)
    logger.info("✅ Scheduler initialized")

    # Set up signal handlers for graceful shutdown
    def _signal_handler(signum: int, frame: Any) -> None:
        logger.info("⏸️  Shutdown signal %s received", signum)
        scheduler.request_stop()

    previous_handlers = {
        signum: signal.signal(signum, _signal_handler) for signum in (signal.SIGINT, signal.SIGTERM)
    }

    repo.append_event(event_type="system.started", level="INFO", payload={"provider": config.market_data.provider})

    ticks = 0
    try:
        max_ticks_env = os.environ.get("MAX_TICKS")
        max_ticks = int(max_ticks_env) if max_ticks_env else None
        logger.info(f"▶️  Starting monitoring loop (max_ticks={max_ticks})")
        ticks = scheduler.run(max_ticks=max_ticks)
    except KeyboardInterrupt:
        logger.info("⏸️  Shutdown requested by user")
    except Exception as e:
        logger.error(f"❌ Monitoring loop error: {e}", exc_info=True)
        sentry = get_sentry()
        if sentry:
            sentry.capture_error(e, context={"phase": "monitoring_loop"})
            sentry.flush()
        return 1
    finally:
        scheduler.stop(timeout=30.0)
        if isinstance(price_feed, DatabasePriceFeed):
            price_feed.stop_watcher()
        dispatcher.close()
        loop.close()
        repair.close()
        try:
            repo.append_event(event_type="system.stopped", level="INFO", payload={"ticks_executed": ticks})
        except Exception as e:
            logger.warning(f"Failed to record system.stopped: {e}")
        # Flush any pending Sentry events
        sentry = get_sentry()
        if sentry:
            sentry.flush()
        session.close()
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler or signal.SIG_DFL)
        logger.info("🛑 Engine stopped")

    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
