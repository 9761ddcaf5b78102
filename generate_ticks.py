"""
Backfill `candle_ticks` for candles stored in `market_data`.

Each candle is split into N interpolated ticks (running OHLC per tick) so the
replay can reveal it progressively. Uses the same interpolator as the live
session's on-the-fly tick synthesis.

Usage:
  python generate_ticks.py --asset BTCUSDT
  python generate_ticks.py --asset BTCUSDT --timeframe 1h --ticks 100 --seed 7 --only-missing

  # Seed a demo series first (regime random walk), then backfill its ticks
  python generate_ticks.py --asset DEMO --timeframe 1h --sample-candles 500 --start-price 50000
"""

from __future__ import annotations

import argparse
import os
from typing import List, Optional

import database
from database import get_db_connection, init_database
from replay.events import _iso_z, _parse_iso
from replay.pricepath import seeded_rng
from replay.series import TICKS_PER_CANDLE, build_ticks, timeframe_seconds
from replay.types import Candle
from synthetic_generators import get_generator, write_candles_to_db, write_ticks_to_db


def _timeframes_for(asset: str) -> List[str]:
    conn = get_db_connection()
    try:
        cur = conn.cursor()
        cur.execute("SELECT DISTINCT timeframe FROM market_data WHERE asset = ?", (asset,))
        return [str(r[0]) for r in cur.fetchall()]
    finally:
        conn.close()


def _candles_needing_ticks(asset: str, timeframe: str, only_missing: bool) -> List[Candle]:
    conn = get_db_connection()
    try:
        cur = conn.cursor()
        sql = """
            SELECT m.timestamp, m.open, m.high, m.low, m.close, COALESCE(m.volume, 0)
            FROM market_data m
            WHERE m.asset = ? AND m.timeframe = ?
        """
        if only_missing:
            sql += """
              AND NOT EXISTS (
                SELECT 1 FROM candle_ticks t
                WHERE t.asset = m.asset AND t.timeframe = m.timeframe
                  AND t.candle_timestamp = m.timestamp
              )
            """
        sql += " ORDER BY m.timestamp ASC"
        cur.execute(sql, (asset, timeframe))
        rows = cur.fetchall()
    finally:
        conn.close()
    return [
        Candle(timestamp=_parse_iso(ts), open=float(o), high=float(h), low=float(l), close=float(c), volume=float(v))
        for (ts, o, h, l, c, v) in rows
    ]


def backfill_ticks(
    asset: str,
    timeframe: str,
    *,
    ticks_per_candle: int = TICKS_PER_CANDLE,
    seed: Optional[int] = None,
    only_missing: bool = False,
) -> int:
    """Generate and store ticks for every stored candle of (asset, timeframe). Returns candles processed."""
    duration = timeframe_seconds(timeframe)
    candles = _candles_needing_ticks(asset, timeframe, only_missing)
    if not candles:
        return 0

    conn = get_db_connection()
    try:
        for i, candle in enumerate(candles, start=1):
            rng = seeded_rng(asset, timeframe, candle.timestamp, seed) if seed is not None else None
            ticks = build_ticks(candle, duration, ticks_per_candle, rng=rng)
            write_ticks_to_db(asset, timeframe, candle.timestamp, ticks, conn=conn)
            if i % 500 == 0:
                print(f"  {asset} {timeframe}: {i:,}/{len(candles):,} candles")
    finally:
        conn.close()
    return len(candles)


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--asset", required=True, help="Asset symbol as stored in market_data (e.g. BTCUSDT)")
    ap.add_argument("--timeframe", default=None, help="Only this timeframe (default: every timeframe stored for the asset)")
    ap.add_argument("--ticks", type=int, default=TICKS_PER_CANDLE, help=f"Ticks per candle (default: {TICKS_PER_CANDLE})")
    ap.add_argument("--seed", type=int, default=None, help="Make paths reproducible (keyed per candle)")
    ap.add_argument("--only-missing", action="store_true", help="Skip candles that already have ticks")
    ap.add_argument("--db", default=None, help="SQLite DB path (default: TRADINGGYM_DB_PATH or trading_gym.db)")
    ap.add_argument("--sample-candles", type=int, default=0, help="First write N synthetic candles for --asset/--timeframe")
    ap.add_argument("--start-price", type=float, default=100.0, help="Start price for --sample-candles")
    ap.add_argument("--start", default=None, help="ISO start of the synthetic series (default: ends now)")
    args = ap.parse_args()

    if args.ticks < 2:
        raise SystemExit("--ticks must be >= 2")
    if args.db:
        database.DB_NAME = os.path.abspath(args.db)

    # Ensure schema exists.
    init_database()

    if args.sample_candles > 0:
        if not args.timeframe:
            raise SystemExit("--sample-candles requires --timeframe")
        candles = get_generator("regime_walk")(
            args.start_price,
            args.sample_candles,
            timeframe=args.timeframe,
            start_ts=_parse_iso(args.start) if args.start else None,
            seed=args.seed,
        )
        n = write_candles_to_db(args.asset, args.timeframe, candles)
        print(f"[OK] wrote {n:,} synthetic candles for {args.asset} {args.timeframe} starting {_iso_z(candles[0].timestamp)}")

    timeframes = [args.timeframe] if args.timeframe else _timeframes_for(args.asset)
    if not timeframes:
        print(f"No candles found for {args.asset}.")
        return

    for tf in timeframes:
        print(f"\nGenerating ticks for {args.asset} ({tf})...")
        n = backfill_ticks(
            args.asset,
            tf,
            ticks_per_candle=args.ticks,
            seed=args.seed,
            only_missing=bool(args.only_missing),
        )
        print(f"[OK] {n:,} candles x {args.ticks} ticks written to candle_ticks ({tf})")


if __name__ == "__main__":
    main()
