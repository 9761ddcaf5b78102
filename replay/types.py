from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from replay.errors import InvalidInputError
from replay.events import _iso_z


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def parse(cls, value: Any) -> "Side":
        if isinstance(value, Side):
            return value
        key = str(value or "").strip().upper()
        try:
            return cls(key)
        except ValueError:
            raise InvalidInputError(f"side must be BUY or SELL, got {value!r}") from None


class ExitReason(str, Enum):
    MANUAL = "manual"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"


class ReplayMode(str, Enum):
    PROGRESSIVE = "progressive"
    INSTANT = "instant"

    @classmethod
    def parse(cls, value: Any) -> "ReplayMode":
        if isinstance(value, ReplayMode):
            return value
        key = str(value or "").strip().lower()
        try:
            return cls(key)
        except ValueError:
            raise InvalidInputError(f"mode must be progressive or instant, got {value!r}") from None


@dataclass(frozen=True)
class Candle:
    """
    One OHLCV bar. Times are UTC datetimes marking the start of the bucket.
    """

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def __post_init__(self) -> None:
        if self.low > min(self.open, self.close) or self.high < max(self.open, self.close):
            raise InvalidInputError(
                f"candle at {self.timestamp.isoformat()} violates low <= open/close <= high "
                f"(o={self.open} h={self.high} l={self.low} c={self.close})"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": _iso_z(self.timestamp),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


@dataclass(frozen=True)
class Tick:
    tick_index: int
    timestamp: datetime
    price: float
    running_open: float
    running_high: float
    running_low: float
    running_close: float
    is_final_tick: bool


@dataclass(frozen=True)
class PriceRange:
    """Bare high/low excursion, for callers evaluating arbitrary windows."""

    high: float
    low: float


@dataclass(frozen=True)
class FormingWindow:
    """
    OHLC visible at a cursor position. For a forming candle, high/low are the
    running extremes so far and close is the latest tick price.
    `timestamp` is the candle start; `price_time` is when `close` was printed.
    """

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    is_complete: bool
    candle_index: int
    tick_index: int
    price_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": _iso_z(self.timestamp),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "is_complete": self.is_complete,
            "price_time": _iso_z(self.price_time) if self.price_time is not None else None,
        }


@dataclass(frozen=True)
class CursorState:
    candle_index: int
    tick_index: int
    mode: ReplayMode


@dataclass(frozen=True)
class Position:
    id: str
    session_id: str
    side: Side
    entry_price: float
    size: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    entry_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "side": self.side.value,
            "entry_price": self.entry_price,
            "size": self.size,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "entry_time": _iso_z(self.entry_time) if self.entry_time is not None else None,
            "status": "open",
        }


@dataclass(frozen=True)
class ClosedPosition:
    id: str
    session_id: str
    side: Side
    entry_price: float
    size: float
    stop_loss: Optional[float]
    take_profit: Optional[float]
    entry_time: Optional[datetime]
    exit_price: float
    exit_time: Optional[datetime]
    exit_reason: ExitReason
    pnl: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "side": self.side.value,
            "entry_price": self.entry_price,
            "size": self.size,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "entry_time": _iso_z(self.entry_time) if self.entry_time is not None else None,
            "exit_price": self.exit_price,
            "exit_time": _iso_z(self.exit_time) if self.exit_time is not None else None,
            "exit_reason": self.exit_reason.value,
            "pnl": self.pnl,
            "status": "closed",
        }
