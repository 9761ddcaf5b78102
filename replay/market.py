from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from database import get_db_connection
from replay.events import _iso_z, _parse_iso
from replay.series import CandleSeries
from replay.types import Candle, Tick


def _tick_from_row(row: Sequence[Any]) -> Tick:
    (tick_index, ts, price, r_open, r_high, r_low, r_close, is_final) = row
    return Tick(
        tick_index=int(tick_index),
        timestamp=_parse_iso(ts),
        price=float(price),
        running_open=float(r_open),
        running_high=float(r_high),
        running_low=float(r_low),
        running_close=float(r_close),
        is_final_tick=bool(is_final),
    )


@dataclass
class SqliteMarketData:
    """
    Read side of the `market_data` / `candle_ticks` tables.

    Rows are written by offline scripts (see generate_ticks.py); the replay
    core only reads them.
    """

    def fetch_candles(
        self,
        asset: str,
        timeframe: str,
        from_ts: datetime,
        limit: int = 1000,
        offset: int = 0,
    ) -> List[Candle]:
        conn = get_db_connection()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT timestamp, open, high, low, close, COALESCE(volume, 0)
                FROM market_data
                WHERE asset = ?
                  AND timeframe = ?
                  AND timestamp >= ?
                ORDER BY timestamp ASC
                LIMIT ? OFFSET ?
                """,
                (asset, timeframe, _iso_z(from_ts), int(limit), int(offset)),
            )
            rows = cur.fetchall()
        finally:
            conn.close()

        return [
            Candle(
                timestamp=_parse_iso(ts),
                open=float(o),
                high=float(h),
                low=float(l),
                close=float(c),
                volume=float(v or 0.0),
            )
            for (ts, o, h, l, c, v) in rows
        ]

    def fetch_ticks(self, asset: str, timeframe: str, candle_ts: datetime) -> List[Tick]:
        conn = get_db_connection()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT tick_index, timestamp, price, running_open, running_high,
                       running_low, running_close, is_final_tick
                FROM candle_ticks
                WHERE asset = ? AND timeframe = ? AND candle_timestamp = ?
                ORDER BY tick_index ASC
                """,
                (asset, timeframe, _iso_z(candle_ts)),
            )
            rows = cur.fetchall()
        finally:
            conn.close()
        return [_tick_from_row(r) for r in rows]

    def fetch_ticks_for(
        self,
        asset: str,
        timeframe: str,
        candle_timestamps: Sequence[datetime],
    ) -> Dict[str, List[Tick]]:
        """
        Ticks for many candles in one range query, grouped by candle timestamp (ISO Z).
        Candles without ticks are absent from the result.
        """
        if not candle_timestamps:
            return {}
        keys = {_iso_z(ts) for ts in candle_timestamps}
        lo = min(keys)
        hi = max(keys)
        conn = get_db_connection()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT candle_timestamp, tick_index, timestamp, price, running_open,
                       running_high, running_low, running_close, is_final_tick
                FROM candle_ticks
                WHERE asset = ? AND timeframe = ?
                  AND candle_timestamp >= ? AND candle_timestamp <= ?
                ORDER BY candle_timestamp ASC, tick_index ASC
                """,
                (asset, timeframe, lo, hi),
            )
            rows = cur.fetchall()
        finally:
            conn.close()

        grouped: Dict[str, List[Tick]] = {}
        for row in rows:
            key = str(row[0])
            if key not in keys:
                continue
            grouped.setdefault(key, []).append(_tick_from_row(row[1:]))
        return grouped

    def load_series(
        self,
        asset: str,
        timeframe: str,
        start: datetime,
        limit: int = 1000,
    ) -> CandleSeries:
        candles = self.fetch_candles(asset, timeframe, start, limit=limit, offset=0)
        ticks_by_ts = self.fetch_ticks_for(asset, timeframe, [c.timestamp for c in candles])
        ticks = [ticks_by_ts.get(_iso_z(c.timestamp), []) for c in candles]
        return CandleSeries(candles, ticks)

    def date_range(self, asset: str, timeframe: str) -> Dict[str, Any]:
        conn = get_db_connection()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT MIN(timestamp), MAX(timestamp), COUNT(*)
                FROM market_data
                WHERE asset = ? AND timeframe = ?
                """,
                (asset, timeframe),
            )
            lo, hi, n = cur.fetchone()
        finally:
            conn.close()
        return {"min_date": lo, "max_date": hi, "total_candles": int(n or 0)}

    def available_data(self, asset: str) -> List[Dict[str, Any]]:
        order = {"1m": 0, "5m": 1, "15m": 2, "1h": 3, "4h": 4, "1d": 5}
        conn = get_db_connection()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT timeframe, MIN(timestamp), MAX(timestamp), COUNT(*)
                FROM market_data
                WHERE asset = ?
                GROUP BY timeframe
                """,
                (asset,),
            )
            rows = cur.fetchall()
        finally:
            conn.close()
        out = [
            {"timeframe": tf, "min_date": lo, "max_date": hi, "total_candles": int(n)}
            for (tf, lo, hi, n) in rows
        ]
        out.sort(key=lambda r: order.get(r["timeframe"], 99))
        return out

    def random_start(
        self,
        asset: str,
        timeframe: str,
        rng: Optional[random.Random] = None,
    ) -> Optional[datetime]:
        """Pick a random candle timestamp of the series, or None when there is no data."""
        info = self.date_range(asset, timeframe)
        n = info["total_candles"]
        if n <= 0:
            return None
        r = rng if rng is not None else random.SystemRandom()
        pick = r.randrange(n)
        conn = get_db_connection()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT timestamp FROM market_data
                WHERE asset = ? AND timeframe = ?
                ORDER BY timestamp ASC
                LIMIT 1 OFFSET ?
                """,
                (asset, timeframe, pick),
            )
            row = cur.fetchone()
        finally:
            conn.close()
        return _parse_iso(row[0]) if row else None
