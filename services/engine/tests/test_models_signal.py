"""Unit tests for signal and outcome models."""

from dataclasses import FrozenInstanceError

import pytest

from pipwatch_engine.models.outcome import Outcome
from pipwatch_engine.models.signal import Direction, Signal, SignalStatus


def _buy(**overrides: object) -> Signal:
    fields: dict[str, object] = {
        "id": "sig-1",
        "symbol": "EURUSD",
        "direction": Direction.BUY,
        "entry_price": 1.1000,
        "stop_loss": 1.0950,
        "take_profits": (1.1050, 1.1100),
    }
    fields.update(overrides)
    return Signal(**fields)  # type: ignore[arg-type]


def test_signal_normalizes_targets_hit() -> None:
    """targets_hit is deduplicated and sorted."""
    signal = _buy(targets_hit=[2, 1, 2])
    assert signal.targets_hit == (1, 2)


def test_signal_accepts_string_enums() -> None:
    signal = _buy(direction="SELL", status="expired")
    assert signal.direction == Direction.SELL
    assert signal.status == SignalStatus.EXPIRED


def test_signal_is_frozen() -> None:
    signal = _buy()
    with pytest.raises(FrozenInstanceError):
        signal.stop_loss = 1.0  # type: ignore[misc]


def test_has_valid_stop_direction() -> None:
    assert _buy().has_valid_stop_direction is True
    assert _buy(stop_loss=1.1050).has_valid_stop_direction is False
    sell = _buy(direction=Direction.SELL, stop_loss=1.1050, take_profits=(1.0950,))
    assert sell.has_valid_stop_direction is True
    assert _buy(direction=Direction.SELL, stop_loss=1.0950).has_valid_stop_direction is False


def test_stop_equal_to_entry_is_invalid() -> None:
    assert _buy(stop_loss=1.1000).has_valid_stop_direction is False


def test_all_targets_hit() -> None:
    assert _buy().all_targets_hit is False
    assert _buy(targets_hit=(1,)).all_targets_hit is False
    assert _buy(targets_hit=(1, 2)).all_targets_hit is True
    # An empty ladder is never "complete"
    assert _buy(take_profits=()).all_targets_hit is False
    # Targets outside the ladder do not complete it
    assert _buy(targets_hit=(2, 3)).all_targets_hit is False
    assert _buy(targets_hit=(1, 2, 3)).all_targets_hit is True


@pytest.mark.parametrize(
    ("overrides", "expected"),
    [
        ({}, None),
        ({"stop_loss": 0.0}, "non-positive or non-finite price"),
        ({"entry_price": float("nan")}, "non-positive or non-finite price"),
        ({"take_profits": (1.1050, float("inf"))}, "non-positive or non-finite price"),
        ({"targets_hit": (3,)}, "target index outside the take-profit ladder"),
        ({"targets_hit": (0, 1)}, "target index outside the take-profit ladder"),
        ({"take_profits": (), "targets_hit": (1,)}, "target index outside the take-profit ladder"),
    ],
)
def test_data_error(overrides: dict[str, object], expected: str | None) -> None:
    assert _buy(**overrides).data_error == expected


def test_with_helpers_return_copies() -> None:
    signal = _buy()
    trailed = signal.with_stop_loss(1.1035).with_targets((1,))
    assert trailed.stop_loss == 1.1035
    assert trailed.targets_hit == (1,)
    assert signal.stop_loss == 1.0950
    assert signal.targets_hit == ()
    assert trailed.highest_target_hit == 1
    assert signal.highest_target_hit is None


class TestOutcome:
    """Outcome invariants."""

    def test_valid_hit(self) -> None:
        outcome = Outcome(
            signal_id="sig-1", hit_target=True, exit_price=1.11, pnl_pips=100,
            notes="All Take Profits Hit", target_hit_level=2,
        )
        assert outcome.exit_timestamp.tzinfo is not None

    def test_hit_with_non_positive_pips_rejected(self) -> None:
        with pytest.raises(ValueError, match="non-positive pips"):
            Outcome(signal_id="sig-1", hit_target=True, exit_price=1.1, pnl_pips=0, notes="x")

    def test_loss_with_negative_pips_allowed(self) -> None:
        outcome = Outcome(signal_id="sig-1", hit_target=False, exit_price=1.095, pnl_pips=-50, notes="Stop Loss Hit")
        assert outcome.pnl_pips == -50

    def test_non_positive_exit_price_rejected(self) -> None:
        with pytest.raises(ValueError, match="Exit price must be positive"):
            Outcome(signal_id="sig-1", hit_target=False, exit_price=0.0, pnl_pips=-10, notes="x")

    def test_zero_level_rejected(self) -> None:
        with pytest.raises(ValueError, match="1-based"):
            Outcome(signal_id="sig-1", hit_target=True, exit_price=1.1, pnl_pips=5, notes="x", target_hit_level=0)
