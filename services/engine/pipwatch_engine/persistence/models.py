"""Database models for signals, outcomes, market state, and audit events."""

import uuid
import datetime as dt
from decimal import Decimal
from typing import Any

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Generic JSON for SQLite compatibility (SQLAlchemy handles mapping)
JSON_TYPE = sa.JSON().with_variant(JSONB, "postgresql")
NUMERIC_24_10 = sa.Numeric(24, 10)
# SQLite only autoincrements INTEGER PRIMARY KEY
SEQ_TYPE = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""
    pass


class TradingSignal(Base):
    """A published trading signal."""
    __tablename__ = "trading_signals"

    id: Mapped[str] = mapped_column(sa.Text(), primary_key=True)
    symbol: Mapped[str] = mapped_column(sa.Text(), nullable=False, index=True)
    direction: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    status: Mapped[str] = mapped_column(sa.Text(), nullable=False, index=True)
    is_centralized: Mapped[bool] = mapped_column(
        sa.Boolean(), server_default=sa.text("true"), nullable=False
    )

    entry_price: Mapped[Decimal] = mapped_column(NUMERIC_24_10, nullable=False)
    stop_loss: Mapped[Decimal] = mapped_column(NUMERIC_24_10, nullable=False)
    take_profits: Mapped[list[float]] = mapped_column(JSON_TYPE, nullable=False, default=list)
    targets_hit: Mapped[list[int]] = mapped_column(JSON_TYPE, nullable=False, default=list)

    created_at: Mapped[dt.datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, nullable=False
    )


class SignalOutcome(Base):
    """Terminal outcome of a signal; unique per signal."""
    __tablename__ = "signal_outcomes"
    __table_args__ = (sa.UniqueConstraint("signal_id", name="uq_signal_outcomes_signal_id"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    signal_id: Mapped[str] = mapped_column(
        sa.Text(), sa.ForeignKey("trading_signals.id", ondelete="CASCADE"), nullable=False
    )
    hit_target: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False)
    exit_price: Mapped[Decimal] = mapped_column(NUMERIC_24_10, nullable=False)
    target_hit_level: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    pnl_pips: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    notes: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    exit_timestamp: Mapped[dt.datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, nullable=False
    )


class MarketState(Base):
    """Latest price per symbol, written by the market data stream."""
    __tablename__ = "market_state"

    symbol: Mapped[str] = mapped_column(sa.Text(), primary_key=True)
    current_price: Mapped[Decimal] = mapped_column(NUMERIC_24_10, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, nullable=False
    )


class Event(Base):
    """Append-only audit event."""
    __tablename__ = "events"

    seq: Mapped[int] = mapped_column(SEQ_TYPE, primary_key=True, autoincrement=True)
    ts: Mapped[dt.datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    level: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    type: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    signal_id: Mapped[str | None] = mapped_column(sa.Text(), nullable=True, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON_TYPE, nullable=False)
