from __future__ import annotations

import random
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from replay.errors import InvalidInputError, NotFoundError
from replay.pricepath import generate_path
from replay.types import Candle, Tick

TICKS_PER_CANDLE = 100

TIMEFRAME_SECONDS: Dict[str, int] = {
    "1m": 60,
    "5m": 5 * 60,
    "15m": 15 * 60,
    "1h": 60 * 60,
    "4h": 4 * 60 * 60,
    "1d": 24 * 60 * 60,
}


def timeframe_seconds(timeframe: str) -> int:
    try:
        return TIMEFRAME_SECONDS[str(timeframe).strip()]
    except KeyError:
        raise InvalidInputError(
            f"unknown timeframe {timeframe!r}; expected one of {sorted(TIMEFRAME_SECONDS)}"
        ) from None


def build_ticks(
    candle: Candle,
    duration_sec: int,
    n: int = TICKS_PER_CANDLE,
    *,
    rng: Optional[random.Random] = None,
) -> List[Tick]:
    """
    Split one candle into `n` ticks with running OHLC.

    Tick i is stamped at candle start + i * (duration / n). Running high/low are
    seeded at the candle open, so tick 0 always reports o=h=l=c=open.
    """
    if int(duration_sec) <= 0:
        raise InvalidInputError("duration_sec must be > 0")
    prices = generate_path(candle.open, candle.high, candle.low, candle.close, n, rng=rng)
    step = timedelta(seconds=float(duration_sec) / len(prices))

    ticks: List[Tick] = []
    running_high = candle.open
    running_low = candle.open
    last = len(prices) - 1
    for i, px in enumerate(prices):
        running_high = max(running_high, px)
        running_low = min(running_low, px)
        ticks.append(
            Tick(
                tick_index=i,
                timestamp=candle.timestamp + step * i,
                price=px,
                running_open=candle.open,
                running_high=running_high,
                running_low=running_low,
                running_close=px,
                is_final_tick=(i == last),
            )
        )
    return ticks


def _validate_ticks(candle_idx: int, ticks: Sequence[Tick]) -> None:
    for j, t in enumerate(ticks):
        if t.tick_index != j:
            raise InvalidInputError(f"candle {candle_idx}: tick at position {j} has tick_index {t.tick_index}")
        if t.is_final_tick != (j == len(ticks) - 1):
            raise InvalidInputError(f"candle {candle_idx}: only the last tick may be final (tick {j})")


class CandleSeries:
    """
    Read-only, time-ordered list of candles, each optionally paired with its ticks.

    Gaps between timestamps are allowed. A candle without ticks is revealed as a
    single step.
    """

    def __init__(
        self,
        candles: Sequence[Candle],
        ticks: Optional[Sequence[Optional[Sequence[Tick]]]] = None,
    ):
        self._candles: Tuple[Candle, ...] = tuple(candles)
        for i in range(1, len(self._candles)):
            if self._candles[i].timestamp <= self._candles[i - 1].timestamp:
                raise InvalidInputError(
                    f"candles must be strictly ascending by timestamp (index {i})"
                )
        if ticks is not None and len(ticks) != len(self._candles):
            raise InvalidInputError("ticks must align with candles (one entry per candle)")
        tick_lists: List[Tuple[Tick, ...]] = []
        for i in range(len(self._candles)):
            tl = tuple(ticks[i] or ()) if ticks is not None else ()
            _validate_ticks(i, tl)
            tick_lists.append(tl)
        self._ticks: Tuple[Tuple[Tick, ...], ...] = tuple(tick_lists)

    def __len__(self) -> int:
        return len(self._candles)

    def length(self) -> int:
        return len(self._candles)

    def _check(self, i: int) -> int:
        i = int(i)
        if i < 0 or i >= len(self._candles):
            raise NotFoundError(f"candle index {i} out of range (series length {len(self._candles)})")
        return i

    def candle_at(self, i: int) -> Candle:
        return self._candles[self._check(i)]

    def ticks_of(self, i: int) -> Tuple[Tick, ...]:
        return self._ticks[self._check(i)]

    def has_ticks(self, i: int) -> bool:
        return len(self.ticks_of(i)) > 0

    @property
    def candles(self) -> Tuple[Candle, ...]:
        return self._candles

    def with_generated_ticks(
        self,
        duration_sec: int,
        n: int = TICKS_PER_CANDLE,
        *,
        rng_for: Optional[Callable[[Candle], Optional[random.Random]]] = None,
    ) -> "CandleSeries":
        """
        Return a new series where tickless candles get interpolated ticks.
        Candles that already carry ticks keep them.
        """
        filled: List[Sequence[Tick]] = []
        for c, tl in zip(self._candles, self._ticks):
            if tl:
                filled.append(tl)
            else:
                rng = rng_for(c) if rng_for is not None else None
                filled.append(build_ticks(c, duration_sec, n, rng=rng))
        return CandleSeries(self._candles, filled)
