"""
Candle replay engine for the trading gym.

Historical candles are revealed one tick (or one candle) at a time while the
user opens and closes simulated positions; resting stop-loss / take-profit
levels are checked against the prices on screen at every step.

This package is headless: it exposes plain session objects that the Flask app
wraps with API endpoints.
"""

from replay.errors import InvalidInputError, NotFoundError, ReplayError
from replay.session import (
    NullPersistence,
    ReplaySession,
    ReplaySessionConfig,
    SqlitePersistence,
    StepResult,
)
from replay.types import (
    Candle,
    ClosedPosition,
    ExitReason,
    FormingWindow,
    Position,
    ReplayMode,
    Side,
    Tick,
)

__all__ = [
    "ReplaySession",
    "ReplaySessionConfig",
    "StepResult",
    "NullPersistence",
    "SqlitePersistence",
    "ReplayError",
    "NotFoundError",
    "InvalidInputError",
    "Candle",
    "Tick",
    "FormingWindow",
    "Position",
    "ClosedPosition",
    "Side",
    "ExitReason",
    "ReplayMode",
]
