from __future__ import annotations

from typing import List

from replay.errors import NotFoundError
from replay.series import CandleSeries
from replay.types import Candle, CursorState, FormingWindow, ReplayMode


def _candle_window(candle: Candle, candle_index: int, tick_index: int) -> FormingWindow:
    return FormingWindow(
        timestamp=candle.timestamp,
        open=candle.open,
        high=candle.high,
        low=candle.low,
        close=candle.close,
        volume=candle.volume,
        is_complete=True,
        candle_index=candle_index,
        tick_index=tick_index,
        price_time=candle.timestamp,
    )


class ReplayCursor:
    """
    Position (candle_index, tick_index) within a CandleSeries.

    Progressive mode reveals a candle tick by tick; instant mode reveals whole
    candles. The cursor only moves forward and stops at the last candle (and its
    final tick); advancing from there is a no-op, observable via `is_complete`.
    """

    def __init__(
        self,
        series: CandleSeries,
        *,
        mode: ReplayMode = ReplayMode.PROGRESSIVE,
        candle_index: int = 0,
        tick_index: int = 0,
    ):
        if len(series) == 0:
            raise NotFoundError("cannot replay an empty candle series")
        self.series = series
        self.mode = ReplayMode.parse(mode)
        # Restored positions (resume) are clamped into range.
        self._candle_index = min(max(0, int(candle_index)), len(series) - 1)
        n_ticks = len(series.ticks_of(self._candle_index))
        self._tick_index = min(max(0, int(tick_index)), max(0, n_ticks - 1))

    @property
    def candle_index(self) -> int:
        return self._candle_index

    @property
    def tick_index(self) -> int:
        return self._tick_index

    def state(self) -> CursorState:
        return CursorState(candle_index=self._candle_index, tick_index=self._tick_index, mode=self.mode)

    def set_mode(self, mode: ReplayMode) -> None:
        """
        Switch modes without moving back in time: leaving instant mode the
        current candle was already shown whole, so progressive resumes at its
        final tick.
        """
        new_mode = ReplayMode.parse(mode)
        if self.mode == ReplayMode.INSTANT and new_mode == ReplayMode.PROGRESSIVE:
            self._tick_index = max(0, len(self.series.ticks_of(self._candle_index)) - 1)
        self.mode = new_mode

    def uses_ticks(self) -> bool:
        return self.mode == ReplayMode.PROGRESSIVE and self.series.has_ticks(self._candle_index)

    @property
    def is_last_candle(self) -> bool:
        return self._candle_index >= len(self.series) - 1

    @property
    def is_complete(self) -> bool:
        """True once the final visible step of the series is on screen."""
        if not self.is_last_candle:
            return False
        if not self.uses_ticks():
            return True
        return self._tick_index >= len(self.series.ticks_of(self._candle_index)) - 1

    def advance(self) -> bool:
        """
        Move one step forward. Returns False (and leaves the cursor untouched)
        when already at the end of the series.
        """
        if self.uses_ticks():
            n_ticks = len(self.series.ticks_of(self._candle_index))
            if self._tick_index < n_ticks - 1:
                self._tick_index += 1
                return True
        if self.is_last_candle:
            return False
        self._candle_index += 1
        self._tick_index = 0
        return True

    def skip_to_next_candle(self) -> bool:
        """
        Jump to the start of the next candle regardless of mode. On the last
        candle the cursor lands on that candle's final tick instead.

        Callers must evaluate resting orders against `full_candle_window()`
        before skipping, so nothing escapes a level the skipped ticks crossed.
        """
        if not self.is_last_candle:
            self._candle_index += 1
            self._tick_index = 0
            return True
        n_ticks = len(self.series.ticks_of(self._candle_index))
        last_tick = max(0, n_ticks - 1)
        if self._tick_index == last_tick:
            return False
        self._tick_index = last_tick
        return True

    def current_forming_window(self) -> FormingWindow:
        candle = self.series.candle_at(self._candle_index)
        if not self.uses_ticks():
            return _candle_window(candle, self._candle_index, self._tick_index)
        tick = self.series.ticks_of(self._candle_index)[self._tick_index]
        n_ticks = len(self.series.ticks_of(self._candle_index))
        return FormingWindow(
            timestamp=candle.timestamp,
            open=candle.open,
            high=tick.running_high,
            low=tick.running_low,
            close=tick.price,
            volume=candle.volume * (self._tick_index + 1) / n_ticks,
            is_complete=tick.is_final_tick,
            candle_index=self._candle_index,
            tick_index=self._tick_index,
            price_time=tick.timestamp,
        )

    def full_candle_window(self) -> FormingWindow:
        candle = self.series.candle_at(self._candle_index)
        return _candle_window(candle, self._candle_index, self._tick_index)

    def visible_history(self) -> List[FormingWindow]:
        """
        Completed candles strictly before the cursor, then the forming bar.
        Never includes future candles.
        """
        out = [_candle_window(self.series.candle_at(i), i, 0) for i in range(self._candle_index)]
        out.append(self.current_forming_window())
        return out
