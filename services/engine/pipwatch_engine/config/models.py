"""Pydantic configuration models with type safety and validation."""

from typing import Literal

from pydantic import BaseModel, Field, model_validator


class MonitorConfig(BaseModel):
    """Stop-loss confirmation and trailing stop parameters."""

    confirmation_count: int = Field(
        default=2,
        ge=1,
        le=20,
        description="Consecutive stop-loss crossings required before a stop-out is confirmed",
    )
    confirmation_window_seconds: float = Field(
        default=15.0,
        ge=0.0,
        le=600.0,
        description="Minimum time between first crossing and confirmation",
    )
    confirmation_max_age_seconds: float = Field(
        default=60.0,
        gt=0.0,
        le=3600.0,
        description="Unconfirmed crossing streaks older than this are discarded",
    )
    trailing_stop_enabled: bool = Field(
        default=True,
        description="Trail the stop-loss once the first take-profit is hit",
    )
    trailing_stop_factor: float = Field(
        default=0.5,
        gt=0.0,
        le=1.0,
        description="Trailing distance as a fraction of the entry-to-TP1 distance",
    )

    @model_validator(mode="after")
    def _max_age_exceeds_window(self) -> "MonitorConfig":
        if self.confirmation_max_age_seconds <= self.confirmation_window_seconds:
            raise ValueError(
                f"confirmation_max_age_seconds ({self.confirmation_max_age_seconds}) must exceed "
                f"confirmation_window_seconds ({self.confirmation_window_seconds})"
            )
        return self


class SchedulerConfig(BaseModel):
    """Reconciliation loop and repair pass timing."""

    tick_interval_seconds: float = Field(
        default=3.0,
        gt=0.0,
        le=300.0,
        description="Fixed interval between reconciliation passes",
    )
    debounce_seconds: float = Field(
        default=0.5,
        ge=0.05,
        le=5.0,
        description="Coalescing delay for price-change triggered passes",
    )
    repair_interval_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="Interval between repair passes for expired signals without outcomes",
    )
    repair_on_startup: bool = Field(
        default=True,
        description="Run a repair pass before the first tick",
    )
    repair_batch_size: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Maximum number of signals repaired per pass",
    )
    price_timeout_seconds: float = Field(
        default=5.0,
        gt=0.0,
        le=60.0,
        description="Upper bound on a batched price lookup",
    )


class MarketDataConfig(BaseModel):
    """Price feed selection."""

    provider: Literal["stub", "database"] = Field(
        default="database",
        description="stub: in-memory prices, database: market_state table",
    )
    max_price_age_seconds: float = Field(
        default=120.0,
        gt=0.0,
        description="Prices older than this are treated as unavailable",
    )


class DatabaseConfig(BaseModel):
    """Signal/outcome store connection limits."""

    pool_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Max wait for a pooled connection",
    )
    statement_timeout_ms: int = Field(
        default=5000,
        ge=100,
        description="Per-statement timeout applied on PostgreSQL",
    )


class NotificationsConfig(BaseModel):
    """Outcome/target notifications."""

    enabled: bool = Field(default=True, description="Emit notification events")
    telegram_enabled: bool = Field(
        default=False,
        description="Deliver events to Telegram (requires TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID)",
    )
    queue_size: int = Field(
        default=1000,
        ge=1,
        description="Pending notification capacity; events beyond it are dropped",
    )


class EngineConfig(BaseModel):
    """Top-level engine configuration."""

    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)

    @model_validator(mode="after")
    def _validate_timing_coherence(self) -> "EngineConfig":
        """A price lookup must not outlast the tick it serves."""
        if self.scheduler.price_timeout_seconds > self.scheduler.tick_interval_seconds * 10:
            raise ValueError(
                f"price_timeout_seconds ({self.scheduler.price_timeout_seconds}) "
                f"should not exceed 10x tick_interval_seconds ({self.scheduler.tick_interval_seconds})"
            )
        return self
