"""Signal repository for database persistence operations."""

import json
import logging
from collections.abc import Collection
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from pipwatch_engine.models.outcome import InsertResult, Outcome
from pipwatch_engine.models.signal import Direction, Signal, SignalStatus
from pipwatch_engine.persistence.models import Event, MarketState, SignalOutcome, TradingSignal
from pipwatch_engine.persistence.stores import OutcomeStore, SignalStore

logger = logging.getLogger(__name__)


def _to_decimal(value: float) -> Decimal:
    return Decimal(str(value))


def _is_positive(value: Decimal | None) -> bool:
    try:
        return value is not None and Decimal(value).is_finite() and Decimal(value) > 0
    except (ArithmeticError, TypeError, ValueError):
        return False


class SignalRepository(SignalStore, OutcomeStore):
    """Repository wrapping signal, outcome and event persistence."""

    def __init__(self, session: Session):
        """
        Initialize repository with database session.

        Args:
            session: SQLAlchemy session
        """
        self.session = session
        # Unreadable rows with no usable price to force expire them at
        self._unresolvable_ids: set[str] = set()

    def _commit(self) -> None:
        """Commit, rolling back on failure so the session stays usable."""
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

    @staticmethod
    def _to_signal(row: TradingSignal) -> Signal:
        return Signal(
            id=row.id,
            symbol=row.symbol,
            direction=Direction(row.direction),
            entry_price=float(row.entry_price),
            stop_loss=float(row.stop_loss),
            take_profits=tuple(float(tp) for tp in (row.take_profits or [])),
            targets_hit=tuple(int(t) for t in (row.targets_hit or [])),
            status=SignalStatus(row.status),
            created_at=row.created_at,
        )

    @staticmethod
    def _to_outcome(row: SignalOutcome) -> Outcome:
        return Outcome(
            signal_id=row.signal_id,
            hit_target=row.hit_target,
            exit_price=float(row.exit_price),
            pnl_pips=row.pnl_pips,
            notes=row.notes,
            target_hit_level=row.target_hit_level,
            exit_timestamp=row.exit_timestamp,
        )

    # --- Signals ---

    def save_signal(self, signal: Signal, is_centralized: bool = True) -> str:
        """
        Save a new signal.

        Args:
            signal: Signal to insert
            is_centralized: Whether the signal is system-generated (monitored)

        Returns:
            Signal ID
        """
        now = datetime.now(timezone.utc)
        row = TradingSignal(
            id=signal.id,
            symbol=signal.symbol,
            direction=signal.direction.value,
            status=signal.status.value,
            is_centralized=is_centralized,
            entry_price=_to_decimal(signal.entry_price),
            stop_loss=_to_decimal(signal.stop_loss),
            take_profits=list(signal.take_profits),
            targets_hit=list(signal.targets_hit),
            created_at=signal.created_at,
            updated_at=now,
        )
        self.session.add(row)
        self._commit()
        return row.id

    def get_signal(self, signal_id: str) -> Signal | None:
        """Get signal by ID."""
        row = self.session.get(TradingSignal, signal_id)
        if row is None:
            return None
        self.session.refresh(row)
        return self._to_signal(row)

    def _convert_rows(self, rows: list[TradingSignal]) -> list[Signal]:
        """
        Convert rows one at a time, force-expiring rows that cannot be read.

        A corrupt row never hides the healthy rows listed with it.
        """
        signals: list[Signal] = []
        unreadable: list[tuple[TradingSignal, str]] = []
        for row in rows:
            try:
                signals.append(self._to_signal(row))
            except (ValueError, TypeError, ArithmeticError) as e:
                logger.error(
                    "Unreadable signal row %s (%s direction=%r entry=%s stop=%s tps=%r hit=%r): %s",
                    row.id, row.symbol, row.direction, row.entry_price, row.stop_loss,
                    row.take_profits, row.targets_hit, e,
                )
                unreadable.append((row, str(e)))

        for row, reason in unreadable:
            try:
                self.force_expire_unreadable(row, reason)
            except SQLAlchemyError as e:
                logger.error("Failed to force expire unreadable signal %s: %s", row.id, e)
        return signals

    def force_expire_unreadable(self, row: TradingSignal, reason: str) -> bool:
        """
        Write a corrupt-data outcome for a row that cannot be read, then expire it.

        The exit is recorded at the stored stop-loss, else the entry price,
        else the last market price for the symbol, whichever is first usable.
        Rows with no usable price at all are left in place and excluded from
        later listings.

        Returns:
            True if the row was resolved
        """
        signal_id = row.id
        symbol = row.symbol
        market = self.session.get(MarketState, symbol) if symbol else None
        candidates = [row.stop_loss, row.entry_price, market.current_price if market else None]
        exit_price = next((p for p in candidates if _is_positive(p)), None)
        if exit_price is None:
            logger.error("No usable price to force expire unreadable signal %s, excluding it", signal_id)
            self._unresolvable_ids.add(signal_id)
            return False

        now = datetime.now(timezone.utc)
        notes = f"Corrupt Data - Force Expired ({reason})"
        if not self.has_outcome(signal_id):
            self.session.add(SignalOutcome(
                signal_id=signal_id,
                hit_target=False,
                exit_price=exit_price,
                target_hit_level=None,
                pnl_pips=0,
                notes=notes,
                exit_timestamp=now,
            ))
        self.session.execute(
            sa.update(TradingSignal)
            .where(TradingSignal.id == signal_id, TradingSignal.status == SignalStatus.ACTIVE.value)
            .values(status=SignalStatus.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.session.add(Event(
            type="signal.corrupt_data",
            level="ERROR",
            signal_id=signal_id,
            payload={"symbol": symbol, "reason": reason, "exit_price": float(exit_price)},
            ts=now,
        ))
        self._commit()
        logger.error("Force expired unreadable signal %s (%s) at %s: %s", signal_id, symbol, exit_price, reason)
        return True

    def list_active_signals(self) -> list[Signal]:
        """Return active, centralized signals ordered by creation time."""
        rows = (
            self.session.query(TradingSignal)
            .filter(
                TradingSignal.status == SignalStatus.ACTIVE.value,
                TradingSignal.is_centralized.is_(True),
                TradingSignal.id.notin_(sorted(self._unresolvable_ids)),
            )
            .order_by(TradingSignal.created_at.asc())
            .populate_existing()
            .all()
        )
        return self._convert_rows(rows)

    def update_targets_hit(self, signal_id: str, targets_hit: tuple[int, ...]) -> None:
        """
        Persist the targets-hit set, merged with what is stored.

        The stored set never shrinks, even if a caller passes a stale subset.
        """
        row = self.session.get(TradingSignal, signal_id)
        if row is None:
            logger.warning("Cannot update targets for unknown signal %s", signal_id)
            return
        merged = sorted(set(row.targets_hit or []) | {int(t) for t in targets_hit})
        row.targets_hit = merged
        row.updated_at = datetime.now(timezone.utc)
        self._commit()

    def update_stop_loss(self, signal_id: str, stop_loss: float) -> bool:
        """
        Persist a tighter stop-loss for an active signal.

        Conditional on the stored stop being looser (lower for BUY, higher
        for SELL), so concurrent writers can only ratchet the stop.

        Returns:
            True if the stored stop moved
        """
        new_stop = _to_decimal(stop_loss)
        result = self.session.execute(
            sa.update(TradingSignal)
            .where(
                TradingSignal.id == signal_id,
                TradingSignal.status == SignalStatus.ACTIVE.value,
                sa.or_(
                    sa.and_(TradingSignal.direction == Direction.BUY.value, TradingSignal.stop_loss < new_stop),
                    sa.and_(TradingSignal.direction == Direction.SELL.value, TradingSignal.stop_loss > new_stop),
                ),
            )
            .values(stop_loss=new_stop, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        self._commit()
        return bool(result.rowcount)

    def expire_signal(self, signal_id: str, final_targets_hit: tuple[int, ...]) -> bool:
        """
        Flip an active signal to expired, recording the final targets.

        Returns:
            True if this call performed the transition
        """
        row = self.session.get(TradingSignal, signal_id)
        if row is None:
            logger.warning("Cannot expire unknown signal %s", signal_id)
            return False
        merged = sorted(set(row.targets_hit or []) | {int(t) for t in final_targets_hit})
        result = self.session.execute(
            sa.update(TradingSignal)
            .where(
                TradingSignal.id == signal_id,
                TradingSignal.status == SignalStatus.ACTIVE.value,
            )
            .values(
                status=SignalStatus.EXPIRED.value,
                targets_hit=merged,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        self._commit()
        return bool(result.rowcount)

    def list_expired_without_outcome(self, limit: int, exclude_ids: Collection[str] = ()) -> list[Signal]:
        """Return the most recent expired signals lacking an outcome."""
        has_outcome = sa.exists().where(SignalOutcome.signal_id == TradingSignal.id)
        excluded = set(exclude_ids) | self._unresolvable_ids
        rows = (
            self.session.query(TradingSignal)
            .filter(
                TradingSignal.status == SignalStatus.EXPIRED.value,
                ~has_outcome,
                TradingSignal.id.notin_(sorted(excluded)),
            )
            .order_by(TradingSignal.created_at.desc())
            .limit(limit)
            .populate_existing()
            .all()
        )
        return self._convert_rows(rows)

    def count_recent_expired_without_outcome(self, sample_size: int) -> tuple[int, int]:
        """
        Among the ``sample_size`` most recent expired signals, count those without outcomes.

        Returns:
            (expired signals sampled, of which without outcome)
        """
        recent_ids = [
            row[0]
            for row in self.session.query(TradingSignal.id)
            .filter(TradingSignal.status == SignalStatus.EXPIRED.value)
            .order_by(TradingSignal.created_at.desc())
            .limit(sample_size)
            .all()
        ]
        if not recent_ids:
            return 0, 0
        with_outcome = {
            row[0]
            for row in self.session.query(SignalOutcome.signal_id)
            .filter(SignalOutcome.signal_id.in_(recent_ids))
            .all()
        }
        return len(recent_ids), sum(1 for sid in recent_ids if sid not in with_outcome)

    # --- Outcomes ---

    def try_insert_outcome(self, outcome: Outcome) -> InsertResult:
        """
        Insert an outcome, relying on the unique signal_id constraint.

        Returns:
            INSERTED or ALREADY_EXISTS
        """
        row = SignalOutcome(
            signal_id=outcome.signal_id,
            hit_target=outcome.hit_target,
            exit_price=_to_decimal(outcome.exit_price),
            target_hit_level=outcome.target_hit_level,
            pnl_pips=outcome.pnl_pips,
            notes=outcome.notes,
            exit_timestamp=outcome.exit_timestamp,
        )
        self.session.add(row)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            return InsertResult.ALREADY_EXISTS
        except SQLAlchemyError:
            self.session.rollback()
            raise
        return InsertResult.INSERTED

    def has_outcome(self, signal_id: str) -> bool:
        """Return True if an outcome exists for the signal."""
        query = sa.select(sa.exists().where(SignalOutcome.signal_id == signal_id))
        return bool(self.session.execute(query).scalar())

    def get_outcome(self, signal_id: str) -> Outcome | None:
        """Get the outcome of a signal, if any."""
        row = (
            self.session.query(SignalOutcome)
            .filter(SignalOutcome.signal_id == signal_id)
            .first()
        )
        return self._to_outcome(row) if row else None

    def count_outcomes(self, signal_id: str) -> int:
        return (
            self.session.query(sa.func.count(SignalOutcome.id))
            .filter(SignalOutcome.signal_id == signal_id)
            .scalar()
            or 0
        )

    def get_recent_outcomes(self, limit: int) -> list[SignalOutcome]:
        """Get recent outcome rows ordered by exit_timestamp DESC.

        Rows are returned unvalidated so that malformed outcomes written by
        other writers can be inspected.
        """
        return (
            self.session.query(SignalOutcome)
            .order_by(SignalOutcome.exit_timestamp.desc())
            .limit(limit)
            .all()
        )

    # --- Market state ---

    def upsert_market_price(self, symbol: str, price: float, ts: datetime | None = None) -> None:
        """Record the latest price for a symbol."""
        row = self.session.get(MarketState, symbol)
        when = ts or datetime.now(timezone.utc)
        if row is None:
            self.session.add(MarketState(symbol=symbol, current_price=_to_decimal(price), updated_at=when))
        else:
            row.current_price = _to_decimal(price)
            row.updated_at = when
        self._commit()

    # --- Events ---

    def append_event(
        self,
        event_type: str,
        level: str,
        payload: dict[str, Any],
        signal_id: str | None = None,
    ) -> int:
        """
        Append an event to the events table.

        Args:
            event_type: Event type (e.g., "signal.targets_hit", "outcome.created")
            level: Log level (INFO, WARN, ERROR)
            payload: Event payload as dictionary
            signal_id: Signal the event refers to, if any

        Returns:
            Event sequence number
        """
        def _json_serial(obj: Any) -> Any:
            if isinstance(obj, Decimal):
                return float(obj)
            if isinstance(obj, datetime):
                return obj.isoformat()
            return str(obj)

        # Ensure payload is JSON serializable
        safe_payload = json.loads(json.dumps(payload, default=_json_serial))

        event = Event(
            type=event_type,
            level=level,
            signal_id=signal_id,
            payload=safe_payload,
            ts=datetime.now(timezone.utc),
        )
        self.session.add(event)
        self._commit()
        seq: int = event.seq
        return seq

    def get_events(self, event_type: str | None = None) -> list[Event]:
        query = self.session.query(Event)
        if event_type is not None:
            query = query.filter(Event.type == event_type)
        return query.order_by(Event.seq.asc()).all()
