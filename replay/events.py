from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from database import get_db_connection


def _iso_z(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


def _parse_iso(ts: str) -> datetime:
    # Accept Z or offset; if tz-less assume UTC
    dt = datetime.fromisoformat(str(ts).strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class EventLogger:
    """
    Minimal append-only event logger.
    Rows in `replay_events` are never updated; they form the audit trail of a session.
    """

    session_id: str

    def emit(
        self,
        *,
        event_type: str,
        ts_exec: datetime,
        payload: Dict[str, Any],
        ts_market: Optional[datetime] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        owns_conn = conn is None
        conn = conn or get_db_connection()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO replay_events (session_id, ts_exec, ts_market, event_type, payload_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    self.session_id,
                    _iso_z(ts_exec),
                    _iso_z(ts_market) if ts_market is not None else None,
                    event_type,
                    json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str),
                ),
            )
            if owns_conn:
                conn.commit()
            return int(cur.lastrowid)
        finally:
            if owns_conn:
                conn.close()

    def list_events(self, *, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        conn = get_db_connection()
        try:
            cur = conn.cursor()
            if event_type:
                cur.execute(
                    """
                    SELECT id, ts_exec, ts_market, event_type, payload_json
                    FROM replay_events
                    WHERE session_id = ? AND event_type = ?
                    ORDER BY id ASC
                    """,
                    (self.session_id, event_type),
                )
            else:
                cur.execute(
                    """
                    SELECT id, ts_exec, ts_market, event_type, payload_json
                    FROM replay_events
                    WHERE session_id = ?
                    ORDER BY id ASC
                    """,
                    (self.session_id,),
                )
            rows = cur.fetchall()
        finally:
            conn.close()
        return [
            {
                "id": int(eid),
                "ts_exec": ts_exec,
                "ts_market": ts_market,
                "event_type": etype,
                "payload": json.loads(payload_json),
            }
            for (eid, ts_exec, ts_market, etype, payload_json) in rows
        ]
