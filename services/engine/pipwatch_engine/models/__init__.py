"""Data models for signals, outcomes, and instrument conventions."""

from .instrument import InstrumentSpec, calculate_pips, get_instrument_spec
from .outcome import ExitReason, InsertResult, Outcome
from .signal import Direction, Signal, SignalStatus

__all__ = [
    "Direction",
    "ExitReason",
    "InsertResult",
    "InstrumentSpec",
    "Outcome",
    "Signal",
    "SignalStatus",
    "calculate_pips",
    "get_instrument_spec",
]
