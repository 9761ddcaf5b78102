import random
import unittest
from datetime import datetime, timezone

from replay.errors import InvalidInputError
from replay.pricepath import generate_path, seeded_rng


class GeneratePathBoundaryTests(unittest.TestCase):
    def test_endpoints_and_bounds_hold_for_many_shapes(self):
        shapes = [
            (50000.0, 50500.0, 49800.0, 50200.0),  # bullish
            (50200.0, 50500.0, 49800.0, 50000.0),  # bearish
            (100.0, 100.0, 90.0, 95.0),  # opens at the high
            (100.0, 110.0, 100.0, 105.0),  # opens at the low
            (100.0, 110.0, 90.0, 100.0),  # doji
        ]
        for seed in range(20):
            rng = random.Random(seed)
            for o, h, l, c in shapes:
                for n in (4, 5, 10, 100):
                    path = generate_path(o, h, l, c, n, rng=rng)
                    self.assertEqual(len(path), n)
                    self.assertEqual(path[0], o)
                    self.assertEqual(path[-1], c)
                    self.assertTrue(all(l <= p <= h for p in path), (seed, o, h, l, c, n))

    def test_path_visits_high_and_low(self):
        for seed in range(25):
            rng = random.Random(seed)
            for o, h, l, c in ((50000.0, 50500.0, 49800.0, 50200.0), (50200.0, 50500.0, 49800.0, 50000.0)):
                path = generate_path(o, h, l, c, 100, rng=rng)
                self.assertEqual(max(path), h)
                self.assertEqual(min(path), l)

    def test_short_paths(self):
        self.assertEqual(generate_path(100.0, 110.0, 90.0, 105.0, 2), [100.0, 105.0])
        # Interior point goes to whichever extreme the endpoints miss.
        self.assertEqual(generate_path(100.0, 110.0, 100.0, 105.0, 3), [100.0, 110.0, 105.0])
        self.assertEqual(generate_path(110.0, 110.0, 90.0, 100.0, 3), [110.0, 90.0, 100.0])

    def test_flat_candle_is_constant(self):
        self.assertEqual(generate_path(42.0, 42.0, 42.0, 42.0, 7), [42.0] * 7)

    def test_invalid_inputs(self):
        with self.assertRaises(InvalidInputError):
            generate_path(100.0, 110.0, 90.0, 105.0, 1)
        with self.assertRaises(InvalidInputError):
            generate_path(100.0, 99.0, 90.0, 95.0, 10)  # open above high
        with self.assertRaises(InvalidInputError):
            generate_path(100.0, 110.0, 101.0, 105.0, 10)  # open below low


class SeededPathTests(unittest.TestCase):
    def test_same_key_reproduces_path(self):
        ts = datetime(2024, 1, 2, 10, tzinfo=timezone.utc)
        a = generate_path(100.0, 110.0, 90.0, 105.0, 50, rng=seeded_rng("BTCUSDT", "1h", ts, 7))
        b = generate_path(100.0, 110.0, 90.0, 105.0, 50, rng=seeded_rng("BTCUSDT", "1h", ts, 7))
        self.assertEqual(a, b)

    def test_key_includes_candle_timestamp(self):
        t1 = datetime(2024, 1, 2, 10, tzinfo=timezone.utc)
        t2 = datetime(2024, 1, 2, 11, tzinfo=timezone.utc)
        a = generate_path(100.0, 110.0, 90.0, 105.0, 50, rng=seeded_rng("BTCUSDT", "1h", t1, 7))
        b = generate_path(100.0, 110.0, 90.0, 105.0, 50, rng=seeded_rng("BTCUSDT", "1h", t2, 7))
        self.assertNotEqual(a, b)


if __name__ == "__main__":
    unittest.main()
