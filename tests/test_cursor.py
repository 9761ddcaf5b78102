import random
import unittest
from datetime import datetime, timedelta, timezone

from replay.cursor import ReplayCursor
from replay.errors import NotFoundError
from replay.series import CandleSeries, build_ticks
from replay.types import Candle, ReplayMode

T0 = datetime(2024, 1, 2, 0, 0, tzinfo=timezone.utc)


def _series(n_candles=3, n_ticks=5, with_ticks=True):
    candles = []
    price = 100.0
    for i in range(n_candles):
        close = price + 2.0
        candles.append(
            Candle(
                timestamp=T0 + timedelta(hours=i),
                open=price,
                high=close + 1.0,
                low=price - 1.0,
                close=close,
                volume=50.0,
            )
        )
        price = close
    if not with_ticks:
        return CandleSeries(candles)
    ticks = [build_ticks(c, 3600, n_ticks, rng=random.Random(i)) for i, c in enumerate(candles)]
    return CandleSeries(candles, ticks)


class ProgressiveCursorTests(unittest.TestCase):
    def test_walks_every_tick_then_stops(self):
        cursor = ReplayCursor(_series(3, 5))
        positions = [(cursor.candle_index, cursor.tick_index)]
        while cursor.advance():
            positions.append((cursor.candle_index, cursor.tick_index))
        self.assertEqual(len(positions), 15)
        self.assertEqual(positions[:6], [(0, 0), (0, 1), (0, 2), (0, 3), (0, 4), (1, 0)])
        self.assertEqual(positions[-1], (2, 4))
        self.assertTrue(cursor.is_complete)

        # Idempotent at the end.
        self.assertFalse(cursor.advance())
        self.assertEqual((cursor.candle_index, cursor.tick_index), (2, 4))

    def test_forming_window_uses_running_values(self):
        series = _series(1, 5)
        cursor = ReplayCursor(series)
        cursor.advance()
        cursor.advance()
        tick = series.ticks_of(0)[2]
        w = cursor.current_forming_window()
        self.assertEqual(w.timestamp, T0)
        self.assertEqual(w.price_time, tick.timestamp)
        self.assertEqual((w.open, w.high, w.low, w.close), (100.0, tick.running_high, tick.running_low, tick.price))
        self.assertAlmostEqual(w.volume, 50.0 * 3 / 5)
        self.assertFalse(w.is_complete)

        cursor.advance()
        cursor.advance()
        self.assertTrue(cursor.current_forming_window().is_complete)

    def test_tickless_candles_are_single_steps(self):
        cursor = ReplayCursor(_series(3, with_ticks=False))
        self.assertTrue(cursor.current_forming_window().is_complete)
        self.assertTrue(cursor.advance())
        self.assertEqual((cursor.candle_index, cursor.tick_index), (1, 0))
        self.assertTrue(cursor.advance())
        self.assertTrue(cursor.is_complete)
        self.assertFalse(cursor.advance())


class InstantCursorTests(unittest.TestCase):
    def test_moves_whole_candles(self):
        series = _series(3, 5)
        cursor = ReplayCursor(series, mode=ReplayMode.INSTANT)
        w = cursor.current_forming_window()
        c0 = series.candle_at(0)
        self.assertEqual((w.open, w.high, w.low, w.close), (c0.open, c0.high, c0.low, c0.close))
        self.assertTrue(w.is_complete)

        self.assertTrue(cursor.advance())
        self.assertEqual(cursor.candle_index, 1)
        self.assertTrue(cursor.advance())
        self.assertTrue(cursor.is_complete)
        self.assertFalse(cursor.advance())
        self.assertEqual(cursor.candle_index, 2)

    def test_mode_switch_mid_candle(self):
        cursor = ReplayCursor(_series(2, 5))
        cursor.advance()
        cursor.set_mode("instant")
        self.assertTrue(cursor.current_forming_window().is_complete)
        self.assertTrue(cursor.advance())
        self.assertEqual((cursor.candle_index, cursor.tick_index), (1, 0))

    def test_back_to_progressive_keeps_candle_whole(self):
        series = _series(2, 5)
        cursor = ReplayCursor(series, mode=ReplayMode.INSTANT)
        cursor.advance()
        self.assertEqual((cursor.candle_index, cursor.tick_index), (1, 0))

        cursor.set_mode("progressive")
        self.assertEqual((cursor.candle_index, cursor.tick_index), (1, 4))
        w = cursor.current_forming_window()
        c = series.candle_at(1)
        self.assertTrue(w.is_complete)
        self.assertEqual((w.high, w.low, w.close), (c.high, c.low, c.close))
        self.assertTrue(cursor.is_complete)

    def test_repeated_progressive_mode_does_not_move(self):
        cursor = ReplayCursor(_series(2, 5))
        cursor.advance()
        cursor.set_mode("progressive")
        self.assertEqual((cursor.candle_index, cursor.tick_index), (0, 1))


class SkipAndHistoryTests(unittest.TestCase):
    def test_skip_to_next_candle(self):
        cursor = ReplayCursor(_series(2, 5))
        cursor.advance()
        self.assertTrue(cursor.skip_to_next_candle())
        self.assertEqual((cursor.candle_index, cursor.tick_index), (1, 0))

        # On the last candle skipping lands on the final tick.
        self.assertTrue(cursor.skip_to_next_candle())
        self.assertEqual((cursor.candle_index, cursor.tick_index), (1, 4))
        self.assertTrue(cursor.is_complete)
        self.assertFalse(cursor.skip_to_next_candle())

    def test_full_candle_window_ignores_tick_position(self):
        series = _series(1, 5)
        cursor = ReplayCursor(series)
        w = cursor.full_candle_window()
        c = series.candle_at(0)
        self.assertEqual((w.high, w.low, w.close), (c.high, c.low, c.close))
        self.assertTrue(w.is_complete)

    def test_visible_history_never_shows_future(self):
        series = _series(3, 5)
        cursor = ReplayCursor(series)
        self.assertEqual(len(cursor.visible_history()), 1)
        for _ in range(7):
            cursor.advance()
        hist = cursor.visible_history()
        self.assertEqual(cursor.candle_index, 1)
        self.assertEqual(len(hist), 2)
        self.assertEqual(hist[0].close, series.candle_at(0).close)
        self.assertEqual(hist[-1], cursor.current_forming_window())
        self.assertTrue(all(h.timestamp <= series.candle_at(1).timestamp for h in hist))


class ConstructionTests(unittest.TestCase):
    def test_empty_series(self):
        with self.assertRaises(NotFoundError):
            ReplayCursor(CandleSeries([]))

    def test_restored_position_is_clamped(self):
        cursor = ReplayCursor(_series(2, 5), candle_index=9, tick_index=99)
        self.assertEqual((cursor.candle_index, cursor.tick_index), (1, 4))
        state = cursor.state()
        self.assertEqual((state.candle_index, state.tick_index, state.mode), (1, 4, ReplayMode.PROGRESSIVE))


if __name__ == "__main__":
    unittest.main()
