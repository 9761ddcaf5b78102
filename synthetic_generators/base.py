from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Sequence

from database import get_db_connection
from replay.events import _iso_z
from replay.types import Candle, Tick


def write_candles_to_db(
    asset: str,
    timeframe: str,
    candles: Sequence[Candle],
    *,
    conn: sqlite3.Connection | None = None,
) -> int:
    """
    Upsert candles into `market_data`. Accepts an optional connection to make
    tests easier to isolate. Returns the number of rows written.
    """
    owns_conn = conn is None
    conn = conn or get_db_connection()

    try:
        cur = conn.cursor()
        for c in candles:
            cur.execute(
                """
                INSERT INTO market_data (asset, timeframe, timestamp, open, high, low, close, volume)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(asset, timeframe, timestamp) DO UPDATE SET
                    open=excluded.open,
                    high=excluded.high,
                    low=excluded.low,
                    close=excluded.close,
                    volume=excluded.volume
                """,
                (asset, timeframe, _iso_z(c.timestamp), c.open, c.high, c.low, c.close, c.volume),
            )
        conn.commit()
    finally:
        if owns_conn:
            conn.close()
    return len(candles)


def write_ticks_to_db(
    asset: str,
    timeframe: str,
    candle_ts: datetime,
    ticks: Sequence[Tick],
    *,
    conn: sqlite3.Connection | None = None,
) -> int:
    """
    Replace the stored ticks of one candle. Old rows are removed first so a
    shorter regenerated path never leaves stale trailing ticks behind.
    """
    owns_conn = conn is None
    conn = conn or get_db_connection()
    key = _iso_z(candle_ts)

    try:
        cur = conn.cursor()
        cur.execute(
            "DELETE FROM candle_ticks WHERE asset = ? AND timeframe = ? AND candle_timestamp = ?",
            (asset, timeframe, key),
        )
        cur.executemany(
            """
            INSERT INTO candle_ticks (
                asset, timeframe, candle_timestamp, tick_index, timestamp, price,
                running_open, running_high, running_low, running_close, is_final_tick
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    asset,
                    timeframe,
                    key,
                    t.tick_index,
                    _iso_z(t.timestamp),
                    t.price,
                    t.running_open,
                    t.running_high,
                    t.running_low,
                    t.running_close,
                    1 if t.is_final_tick else 0,
                )
                for t in ticks
            ],
        )
        conn.commit()
    finally:
        if owns_conn:
            conn.close()
    return len(ticks)
