#!/usr/bin/env python
"""
Smoke test for the replay engine.

This does NOT start the Flask server. It:
- Picks an (asset, timeframe) that exists in `market_data`
- Creates a replay session from a random start candle
- Opens one BUY with a stop-loss and take-profit around the current price
- Steps through a couple of candles (or until the position closes)
- Prints the trade outcome and event counts written to SQLite
"""

from __future__ import annotations

from config import setup_logging
from database import get_db_connection, init_database
from replay.events import _iso_z
from replay.session import ReplaySession, ReplaySessionConfig, SqlitePersistence
from replay.types import ReplayMode


def main() -> int:
    setup_logging()
    init_database()

    conn = get_db_connection()
    try:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT asset, timeframe, COUNT(*)
            FROM market_data
            GROUP BY asset, timeframe
            ORDER BY COUNT(*) DESC
            LIMIT 1
            """
        )
        row = cur.fetchone()
    finally:
        conn.close()
    if not row:
        print("No candles found in market_data. Run generate_ticks.py --sample-candles first.")
        return 2
    asset, timeframe, n = str(row[0]), str(row[1]), int(row[2])
    print(f"Using {asset} {timeframe} ({n:,} candles)")

    cfg = ReplaySessionConfig(
        user_id="smoke",
        asset=asset,
        timeframe=timeframe,
        mode=ReplayMode.PROGRESSIVE,
        seed=1,
        synthesize_ticks=True,
    )
    sess = ReplaySession.create(cfg, persistence=SqlitePersistence())
    print(f"Created session: {sess.session_id} start={_iso_z(sess.start_date)} candles={len(sess.series)}")

    px = sess.get_current_price()
    pos = sess.open_position("BUY", 1, stop_loss=px * 0.995, take_profit=px * 1.005)
    print(f"Opened BUY {pos.id} at {pos.entry_price:.4f} sl={pos.stop_loss:.4f} tp={pos.take_profit:.4f}")

    steps = 0
    while sess.get_open_positions() and steps < 2 * cfg.ticks_per_candle:
        result = sess.step()
        steps += 1
        for c in result.closed:
            print(f"Closed by {c.exit_reason.value} at {c.exit_price:.4f} pnl={c.pnl:.4f} after {steps} steps")
        if result.is_complete:
            print("Reached the end of the series.")
            break
    if sess.get_open_positions():
        closed = sess.close_position(pos.id)
        print(f"Closed manually at {closed.exit_price:.4f} pnl={closed.pnl:.4f}")

    summary = sess.end()
    print(f"Balance: {summary['balance']:.2f} (initial {cfg.initial_balance:.2f})")

    conn = get_db_connection()
    try:
        cur = conn.cursor()
        cur.execute(
            "SELECT event_type, COUNT(*) FROM replay_events WHERE session_id = ? GROUP BY event_type",
            (sess.session_id,),
        )
        for event_type, count in cur.fetchall():
            print(f"Events written: {event_type}={count}")
    finally:
        conn.close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
