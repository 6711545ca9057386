"""Core evaluation, confirmation, and outcome logic.

Note: ReconciliationLoop, RepairPass and MonitorScheduler are not exported
here to keep this package free of persistence and alerting imports.
Import directly: `from pipwatch_engine.core.scheduler import MonitorScheduler`
"""

from .confirmation import (
    CONFIRMATION_COUNT,
    CONFIRMATION_MAX_AGE,
    CONFIRMATION_WINDOW,
    ConfirmationStatus,
    ConfirmationTracker,
)
from .evaluator import TRAILING_STOP_FACTOR, Evaluation, Evaluator
from .outcome_builder import build_retroactive_outcome, build_terminal_outcome

__all__ = [
    "CONFIRMATION_COUNT",
    "CONFIRMATION_MAX_AGE",
    "CONFIRMATION_WINDOW",
    "TRAILING_STOP_FACTOR",
    "ConfirmationStatus",
    "ConfirmationTracker",
    "Evaluation",
    "Evaluator",
    "build_retroactive_outcome",
    "build_terminal_outcome",
]
