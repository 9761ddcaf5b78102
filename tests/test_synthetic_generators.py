import os
import tempfile
import unittest
from datetime import datetime, timezone, timedelta

import database
from replay.market import SqliteMarketData
from synthetic_generators import (
    GENERATOR_REGISTRY,
    generate_regime_walk_candles,
    get_generator,
    write_candles_to_db,
)


class RegimeWalkGeneratorTests(unittest.TestCase):
    def test_generate_regime_walk_shapes(self):
        start_ts = datetime(2025, 1, 1, 0, 0, tzinfo=timezone.utc)
        candles = generate_regime_walk_candles(50000.0, 50, timeframe="1h", start_ts=start_ts, seed=42)

        self.assertEqual(len(candles), 50)
        self.assertEqual(candles[0].timestamp, start_ts)
        self.assertEqual(candles[1].timestamp, start_ts + timedelta(hours=1))
        self.assertEqual(candles[0].open, 50000.0)
        for prev, cur in zip(candles, candles[1:]):
            self.assertEqual(cur.open, prev.close)
        for c in candles:
            self.assertLessEqual(c.low, min(c.open, c.close))
            self.assertGreaterEqual(c.high, max(c.open, c.close))
            self.assertGreater(c.volume, 0.0)

    def test_seed_reproduces_series(self):
        start_ts = datetime(2025, 1, 1, tzinfo=timezone.utc)
        a = generate_regime_walk_candles(100.0, 20, start_ts=start_ts, seed=7)
        b = generate_regime_walk_candles(100.0, 20, start_ts=start_ts, seed=7)
        self.assertEqual(a, b)

    def test_default_start_ends_before_now(self):
        candles = generate_regime_walk_candles(100.0, 5, timeframe="5m", seed=1)
        self.assertLessEqual(candles[-1].timestamp, datetime.now(timezone.utc))
        self.assertEqual(candles[0].timestamp.second, 0)

    def test_write_candles_to_db_upserts_rows(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            old_db = database.DB_NAME
            database.DB_NAME = os.path.join(tmpdir, "test.db")
            try:
                database.init_database()
                candles = generate_regime_walk_candles(
                    5000.0, 3, seed=123, start_ts=datetime(2025, 1, 1, tzinfo=timezone.utc)
                )

                conn = database.get_db_connection()
                try:
                    write_candles_to_db("DEMO", "1h", candles, conn=conn)
                    write_candles_to_db("DEMO", "1h", candles[:1], conn=conn)
                    cur = conn.cursor()
                    cur.execute("SELECT COUNT(*) FROM market_data WHERE asset = 'DEMO'")
                    count = cur.fetchone()[0]
                finally:
                    conn.close()

                self.assertEqual(count, 3)
                self.assertEqual(
                    SqliteMarketData().fetch_candles("DEMO", "1h", candles[0].timestamp),
                    candles,
                )
            finally:
                database.DB_NAME = old_db


class BackfillTicksTests(unittest.TestCase):
    def test_backfill_writes_ticks_for_stored_candles(self):
        from generate_ticks import backfill_ticks

        with tempfile.TemporaryDirectory() as tmpdir:
            old_db = database.DB_NAME
            database.DB_NAME = os.path.join(tmpdir, "test.db")
            try:
                database.init_database()
                candles = generate_regime_walk_candles(
                    100.0, 4, seed=5, start_ts=datetime(2025, 1, 1, tzinfo=timezone.utc)
                )
                write_candles_to_db("DEMO", "1h", candles)

                self.assertEqual(backfill_ticks("DEMO", "1h", ticks_per_candle=10, seed=3), 4)
                self.assertEqual(backfill_ticks("DEMO", "1h", ticks_per_candle=10, only_missing=True), 0)

                ticks = SqliteMarketData().fetch_ticks("DEMO", "1h", candles[2].timestamp)
                self.assertEqual(len(ticks), 10)
                self.assertEqual(ticks[0].price, candles[2].open)
                self.assertEqual(ticks[-1].price, candles[2].close)
                self.assertTrue(ticks[-1].is_final_tick)
            finally:
                database.DB_NAME = old_db


class RegistryTests(unittest.TestCase):
    def test_registry_contains_regime_walk(self):
        gen = get_generator("regime_walk")
        self.assertIn("regime_walk", GENERATOR_REGISTRY)
        self.assertIs(gen, generate_regime_walk_candles)

    def test_registry_unknown_name(self):
        with self.assertRaises(KeyError):
            get_generator("unknown_scenario")


if __name__ == "__main__":
    unittest.main()
