from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from database import get_db_connection
from replay.errors import NotFoundError
from replay.events import _iso_z, _parse_iso
from replay.types import ClosedPosition, ExitReason, Position, ReplayMode, Side


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _opt_ts(value: Optional[str]) -> Optional[datetime]:
    return _parse_iso(value) if value else None


def _opt_int(value: Any) -> Optional[int]:
    return int(value) if value is not None else None


@dataclass(frozen=True)
class SessionRecord:
    session_id: str
    user_id: str
    asset: str
    timeframe: str
    start_date: datetime
    initial_balance: float
    mode: ReplayMode
    seed: Optional[int]
    candle_index: int
    tick_index: int
    status: str
    created_at: str
    updated_at: str
    summary: Optional[Dict[str, Any]] = None
    # Replay settings; None means "use the configured default".
    ticks_per_candle: Optional[int] = None
    synthesize_ticks: bool = False
    persist_every: Optional[int] = None
    candle_limit: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "asset": self.asset,
            "timeframe": self.timeframe,
            "start_date": _iso_z(self.start_date),
            "initial_balance": self.initial_balance,
            "mode": self.mode.value,
            "seed": self.seed,
            "candle_index": self.candle_index,
            "tick_index": self.tick_index,
            "ticks_per_candle": self.ticks_per_candle,
            "synthesize_ticks": self.synthesize_ticks,
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "summary": self.summary,
        }


@dataclass(frozen=True)
class EntryPoint:
    """Cursor position a trade was opened at."""

    candle_index: int
    tick_index: int
    at_close: bool = False


_SESSION_COLUMNS = """
    session_id, user_id, asset, timeframe, start_date, initial_balance, mode, seed,
    candle_index, tick_index, status, created_at, updated_at, summary_json,
    ticks_per_candle, synthesize_ticks, persist_every, candle_limit
"""


def _session_from_row(row: Tuple[Any, ...]) -> SessionRecord:
    (sid, uid, asset, tf, start, bal, mode, seed, ci, ti, status, created, updated, summary,
     tpc, synth, every, limit) = row
    return SessionRecord(
        session_id=str(sid),
        user_id=str(uid),
        asset=str(asset),
        timeframe=str(tf),
        start_date=_parse_iso(start),
        initial_balance=float(bal),
        mode=ReplayMode.parse(mode),
        seed=_opt_int(seed),
        candle_index=int(ci),
        tick_index=int(ti),
        status=str(status),
        created_at=str(created),
        updated_at=str(updated),
        summary=json.loads(summary) if summary else None,
        ticks_per_candle=_opt_int(tpc),
        synthesize_ticks=bool(synth),
        persist_every=_opt_int(every),
        candle_limit=_opt_int(limit),
    )


class SessionStore:
    """`replay_sessions` rows: one per started replay, never deleted."""

    def create_session(
        self,
        user_id: str,
        asset: str,
        timeframe: str,
        start_date: datetime,
        initial_balance: float,
        *,
        mode: ReplayMode = ReplayMode.PROGRESSIVE,
        seed: Optional[int] = None,
        session_id: Optional[str] = None,
        ticks_per_candle: Optional[int] = None,
        synthesize_ticks: bool = False,
        persist_every: Optional[int] = None,
        candle_limit: Optional[int] = None,
    ) -> str:
        sid = session_id or str(uuid.uuid4())
        now = _iso_z(_utc_now())
        conn = get_db_connection()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO replay_sessions (
                    session_id, user_id, asset, timeframe, start_date, initial_balance,
                    mode, seed, candle_index, tick_index, status, created_at, updated_at,
                    ticks_per_candle, synthesize_ticks, persist_every, candle_limit
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, 0, 'active', ?, ?, ?, ?, ?, ?)
                """,
                (
                    sid,
                    str(user_id),
                    asset,
                    timeframe,
                    _iso_z(start_date),
                    float(initial_balance),
                    ReplayMode.parse(mode).value,
                    seed,
                    now,
                    now,
                    _opt_int(ticks_per_candle),
                    1 if synthesize_ticks else 0,
                    _opt_int(persist_every),
                    _opt_int(candle_limit),
                ),
            )
            conn.commit()
        finally:
            conn.close()
        return sid

    def load_session(self, session_id: str) -> SessionRecord:
        conn = get_db_connection()
        try:
            cur = conn.cursor()
            cur.execute(
                f"SELECT {_SESSION_COLUMNS} FROM replay_sessions WHERE session_id = ?",
                (session_id,),
            )
            row = cur.fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError(f"session {session_id} not found")
        return _session_from_row(row)

    def list_sessions(self, user_id: Optional[str] = None, limit: int = 50) -> List[SessionRecord]:
        conn = get_db_connection()
        try:
            cur = conn.cursor()
            if user_id is not None:
                cur.execute(
                    f"""
                    SELECT {_SESSION_COLUMNS} FROM replay_sessions
                    WHERE user_id = ?
                    ORDER BY created_at DESC
                    LIMIT ?
                    """,
                    (str(user_id), int(limit)),
                )
            else:
                cur.execute(
                    f"SELECT {_SESSION_COLUMNS} FROM replay_sessions ORDER BY created_at DESC LIMIT ?",
                    (int(limit),),
                )
            rows = cur.fetchall()
        finally:
            conn.close()
        return [_session_from_row(r) for r in rows]

    def update_progress(
        self,
        session_id: str,
        *,
        candle_index: int,
        tick_index: int,
        mode: ReplayMode,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """
        Save the cursor. With `conn` the caller owns the transaction and commits.
        """
        owns_conn = conn is None
        conn = conn or get_db_connection()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE replay_sessions
                SET candle_index = ?, tick_index = ?, mode = ?, updated_at = ?
                WHERE session_id = ?
                """,
                (int(candle_index), int(tick_index), ReplayMode.parse(mode).value, _iso_z(_utc_now()), session_id),
            )
            if owns_conn:
                conn.commit()
        finally:
            if owns_conn:
                conn.close()

    def mark_ended(self, session_id: str, summary: Optional[Dict[str, Any]] = None) -> None:
        conn = get_db_connection()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE replay_sessions
                SET status = 'ended',
                    updated_at = ?,
                    summary_json = COALESCE(?, summary_json)
                WHERE session_id = ?
                """,
                (
                    _iso_z(_utc_now()),
                    None if summary is None else json.dumps(summary, default=str),
                    session_id,
                ),
            )
            conn.commit()
        finally:
            conn.close()


class TradeStore:
    """
    `trades` rows. Open rows are updated once, in place, when the position closes.

    The write methods accept an optional connection so a trade and the matching
    cursor/event rows can be committed together.
    """

    def record_open(
        self,
        position: Position,
        *,
        entry: Optional[EntryPoint] = None,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        owns_conn = conn is None
        conn = conn or get_db_connection()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT COALESCE(MAX(seq), 0) + 1 FROM trades WHERE session_id = ?",
                (position.session_id,),
            )
            seq = int(cur.fetchone()[0])
            cur.execute(
                """
                INSERT INTO trades (
                    id, session_id, seq, side, entry_price, size, stop_loss, take_profit,
                    entry_time, entry_candle_index, entry_tick_index, entry_at_close, status
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'open')
                """,
                (
                    position.id,
                    position.session_id,
                    seq,
                    position.side.value,
                    position.entry_price,
                    position.size,
                    position.stop_loss,
                    position.take_profit,
                    _iso_z(position.entry_time) if position.entry_time is not None else None,
                    entry.candle_index if entry is not None else None,
                    entry.tick_index if entry is not None else None,
                    1 if entry is not None and entry.at_close else 0,
                ),
            )
            if owns_conn:
                conn.commit()
        finally:
            if owns_conn:
                conn.close()

    def record_close(self, closed: ClosedPosition, *, conn: sqlite3.Connection | None = None) -> None:
        owns_conn = conn is None
        conn = conn or get_db_connection()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT COALESCE(MAX(close_seq), 0) + 1 FROM trades WHERE session_id = ?",
                (closed.session_id,),
            )
            close_seq = int(cur.fetchone()[0])
            cur.execute(
                """
                UPDATE trades
                SET exit_price = ?, exit_time = ?, exit_reason = ?, pnl = ?,
                    close_seq = ?, status = 'closed'
                WHERE id = ? AND status = 'open'
                """,
                (
                    closed.exit_price,
                    _iso_z(closed.exit_time) if closed.exit_time is not None else None,
                    closed.exit_reason.value,
                    closed.pnl,
                    close_seq,
                    closed.id,
                ),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"trade {closed.id} is not open in the store")
            if owns_conn:
                conn.commit()
        finally:
            if owns_conn:
                conn.close()

    def list_trades(self, session_id: str) -> Tuple[List[Position], List[ClosedPosition]]:
        """
        Returns (open positions in open order, closed positions in close order).
        """
        conn = get_db_connection()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT id, session_id, side, entry_price, size, stop_loss, take_profit,
                       entry_time, exit_price, exit_time, exit_reason, pnl, status
                FROM trades
                WHERE session_id = ?
                ORDER BY COALESCE(close_seq, 0) ASC, seq ASC
                """,
                (session_id,),
            )
            rows = cur.fetchall()
        finally:
            conn.close()

        open_positions: List[Position] = []
        closed_positions: List[ClosedPosition] = []
        for (tid, sid, side, entry, size, sl, tp, entry_t, exit_px, exit_t, reason, pnl, status) in rows:
            if status == "closed":
                closed_positions.append(
                    ClosedPosition(
                        id=str(tid),
                        session_id=str(sid),
                        side=Side.parse(side),
                        entry_price=float(entry),
                        size=float(size),
                        stop_loss=None if sl is None else float(sl),
                        take_profit=None if tp is None else float(tp),
                        entry_time=_opt_ts(entry_t),
                        exit_price=float(exit_px),
                        exit_time=_opt_ts(exit_t),
                        exit_reason=ExitReason(reason),
                        pnl=float(pnl),
                    )
                )
            else:
                open_positions.append(
                    Position(
                        id=str(tid),
                        session_id=str(sid),
                        side=Side.parse(side),
                        entry_price=float(entry),
                        size=float(size),
                        stop_loss=None if sl is None else float(sl),
                        take_profit=None if tp is None else float(tp),
                        entry_time=_opt_ts(entry_t),
                    )
                )
        return open_positions, closed_positions

    def entry_points(self, session_id: str) -> Dict[str, EntryPoint]:
        """Entry cursor positions of the session's open trades, by trade id."""
        conn = get_db_connection()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT id, entry_candle_index, entry_tick_index, entry_at_close
                FROM trades
                WHERE session_id = ? AND status = 'open' AND entry_candle_index IS NOT NULL
                """,
                (session_id,),
            )
            rows = cur.fetchall()
        finally:
            conn.close()
        return {
            str(tid): EntryPoint(candle_index=int(ci), tick_index=int(ti or 0), at_close=bool(at_close))
            for (tid, ci, ti, at_close) in rows
        }
