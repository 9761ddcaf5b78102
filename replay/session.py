from __future__ import annotations

import logging
import random
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from config import settings
from database import get_db_connection
from replay.cursor import ReplayCursor
from replay.errors import InvalidInputError, NotFoundError
from replay.evaluator import Trigger, evaluate
from replay.events import EventLogger, _iso_z
from replay.ledger import PositionLedger, _positive, compute_pnl
from replay.market import SqliteMarketData
from replay.pricepath import seeded_rng
from replay.series import CandleSeries, timeframe_seconds
from replay.stats import compute_trading_stats
from replay.store import EntryPoint, SessionStore, TradeStore
from replay.types import ClosedPosition, ExitReason, FormingWindow, Position, PriceRange, ReplayMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplaySessionConfig:
    user_id: str
    asset: str
    timeframe: str
    start_date: Optional[datetime] = None  # None: random candle of the series
    initial_balance: float = settings.initial_balance
    mode: ReplayMode = ReplayMode.PROGRESSIVE
    seed: Optional[int] = None
    candle_limit: int = settings.candle_limit
    ticks_per_candle: int = settings.ticks_per_candle
    synthesize_ticks: bool = settings.synthesize_ticks
    persist_every: int = settings.persist_every


@dataclass(frozen=True)
class StepResult:
    advanced: bool
    is_complete: bool
    window: FormingWindow
    closed: List[ClosedPosition] = field(default_factory=list)
    steps_taken: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "advanced": self.advanced,
            "is_complete": self.is_complete,
            "steps_taken": self.steps_taken,
            "window": self.window.to_dict(),
            "closed": [c.to_dict() for c in self.closed],
        }


class PersistenceHook(Protocol):
    def on_create(self, session: "ReplaySession") -> None: ...

    def on_open(self, session: "ReplaySession", position: Position) -> None: ...

    def on_close(self, session: "ReplaySession", closed: ClosedPosition, *, triggered: bool) -> None: ...

    def on_progress(self, session: "ReplaySession", *, event_type: str, payload: Dict[str, Any]) -> None: ...

    def on_end(self, session: "ReplaySession", summary: Dict[str, Any]) -> None: ...


class NullPersistence:
    """Keeps everything in memory. Used by tests and throwaway sessions."""

    def on_create(self, session: "ReplaySession") -> None:
        return None

    def on_open(self, session: "ReplaySession", position: Position) -> None:
        return None

    def on_close(self, session: "ReplaySession", closed: ClosedPosition, *, triggered: bool) -> None:
        return None

    def on_progress(self, session: "ReplaySession", *, event_type: str, payload: Dict[str, Any]) -> None:
        return None

    def on_end(self, session: "ReplaySession", summary: Dict[str, Any]) -> None:
        return None


class SqlitePersistence:
    """
    Writes session rows, trades and the `replay_events` audit trail.

    Trade writes commit together with the cursor and the event row, so a
    resumed session never lands before a recorded entry.
    """

    def __init__(self, sessions: Optional[SessionStore] = None, trades: Optional[TradeStore] = None):
        self.sessions = sessions or SessionStore()
        self.trades = trades or TradeStore()

    def _events(self, session: "ReplaySession") -> EventLogger:
        return EventLogger(session_id=session.session_id)

    def _save_cursor(self, session: "ReplaySession", conn=None) -> None:
        st = session.cursor.state()
        self.sessions.update_progress(
            session.session_id,
            candle_index=st.candle_index,
            tick_index=st.tick_index,
            mode=st.mode,
            conn=conn,
        )

    def on_create(self, session: "ReplaySession") -> None:
        cfg = session.cfg
        self.sessions.create_session(
            cfg.user_id,
            cfg.asset,
            cfg.timeframe,
            session.start_date,
            cfg.initial_balance,
            mode=session.cursor.mode,
            seed=cfg.seed,
            session_id=session.session_id,
            ticks_per_candle=cfg.ticks_per_candle,
            synthesize_ticks=cfg.synthesize_ticks,
            persist_every=cfg.persist_every,
            candle_limit=cfg.candle_limit,
        )
        self._events(session).emit(
            event_type="SESSION_START",
            ts_exec=session.market_time(),
            ts_market=session.market_time(),
            payload={
                "user_id": cfg.user_id,
                "asset": cfg.asset,
                "timeframe": cfg.timeframe,
                "start_date": _iso_z(session.start_date),
                "initial_balance": cfg.initial_balance,
                "mode": session.cursor.mode.value,
                "seed": cfg.seed,
                "ticks_per_candle": cfg.ticks_per_candle,
                "synthesize_ticks": cfg.synthesize_ticks,
                "n_candles": len(session.series),
            },
        )

    def on_open(self, session: "ReplaySession", position: Position) -> None:
        conn = get_db_connection()
        try:
            self._save_cursor(session, conn=conn)
            self.trades.record_open(position, entry=session._entry_marks.get(position.id), conn=conn)
            self._events(session).emit(
                event_type="POSITION_OPENED",
                ts_exec=session.market_time(),
                ts_market=position.entry_time,
                payload=position.to_dict(),
                conn=conn,
            )
            conn.commit()
        finally:
            conn.close()

    def on_close(self, session: "ReplaySession", closed: ClosedPosition, *, triggered: bool) -> None:
        payload = closed.to_dict()
        payload["triggered"] = triggered
        payload["balance"] = session.get_balance()
        conn = get_db_connection()
        try:
            self._save_cursor(session, conn=conn)
            self.trades.record_close(closed, conn=conn)
            self._events(session).emit(
                event_type="POSITION_CLOSED",
                ts_exec=session.market_time(),
                ts_market=closed.exit_time,
                payload=payload,
                conn=conn,
            )
            conn.commit()
        finally:
            conn.close()

    def on_progress(self, session: "ReplaySession", *, event_type: str, payload: Dict[str, Any]) -> None:
        self._save_cursor(session)
        self._events(session).emit(
            event_type=event_type,
            ts_exec=session.market_time(),
            ts_market=session.market_time(),
            payload=payload,
        )

    def on_end(self, session: "ReplaySession", summary: Dict[str, Any]) -> None:
        self._save_cursor(session)
        self.sessions.mark_ended(session.session_id, summary)
        self._events(session).emit(
            event_type="SESSION_END",
            ts_exec=session.market_time(),
            ts_market=session.market_time(),
            payload=summary,
        )


class ReplaySession:
    """
    One user's replay of one (asset, timeframe) series.

    Each step evaluates resting stop-loss / take-profit levels against the
    window currently on screen, applies the resulting closes, then moves the
    cursor. All public methods take the session lock, so concurrent requests
    against one session serialize.
    """

    def __init__(
        self,
        *,
        session_id: str,
        cfg: ReplaySessionConfig,
        series: CandleSeries,
        start_date: datetime,
        persistence: Optional[PersistenceHook] = None,
        candle_index: int = 0,
        tick_index: int = 0,
        mode: Optional[ReplayMode] = None,
    ):
        self.session_id = session_id
        self.cfg = cfg
        self.series = series
        self.start_date = start_date
        self.persistence: PersistenceHook = persistence if persistence is not None else NullPersistence()
        self.cursor = ReplayCursor(
            series,
            mode=mode if mode is not None else cfg.mode,
            candle_index=candle_index,
            tick_index=tick_index,
        )
        self.ledger = PositionLedger(session_id)
        self.status = "active"
        self._lock = threading.RLock()
        self._entry_marks: Dict[str, EntryPoint] = {}
        self._steps_since_persist = 0

    @classmethod
    def create(
        cls,
        cfg: ReplaySessionConfig,
        *,
        market: Optional[SqliteMarketData] = None,
        persistence: Optional[PersistenceHook] = None,
    ) -> "ReplaySession":
        duration = timeframe_seconds(cfg.timeframe)
        _positive("initial_balance", cfg.initial_balance)
        if not str(cfg.user_id or "").strip():
            raise InvalidInputError("user_id is required")
        if not str(cfg.asset or "").strip():
            raise InvalidInputError("asset is required")
        if int(cfg.ticks_per_candle) < 2:
            raise InvalidInputError("ticks_per_candle must be >= 2")

        if cfg.synthesize_ticks and cfg.seed is None:
            # Synthesized paths must come back identical on resume.
            cfg = replace(cfg, seed=random.randrange(1, 2**31))

        market = market or SqliteMarketData()
        start = cfg.start_date
        if start is None:
            start = market.random_start(cfg.asset, cfg.timeframe)
            if start is None:
                raise NotFoundError(f"no candles for {cfg.asset} {cfg.timeframe}")
        series = _load_series(market, cfg, start, duration)

        sess = cls(
            session_id=str(uuid.uuid4()),
            cfg=cfg,
            series=series,
            start_date=series.candle_at(0).timestamp,
            persistence=persistence,
        )
        sess.persistence.on_create(sess)
        logger.info(
            "session %s started: user=%s %s %s from %s (%d candles, mode=%s)",
            sess.session_id,
            cfg.user_id,
            cfg.asset,
            cfg.timeframe,
            _iso_z(sess.start_date),
            len(series),
            sess.cursor.mode.value,
        )
        return sess

    @classmethod
    def resume(
        cls,
        session_id: str,
        *,
        market: Optional[SqliteMarketData] = None,
        persistence: Optional[SqlitePersistence] = None,
    ) -> "ReplaySession":
        """
        Rebuild a session from its stored row and trades. The cursor resumes
        at the last persisted position.
        """
        persistence = persistence or SqlitePersistence()
        rec = persistence.sessions.load_session(session_id)
        if rec.status != "active":
            raise InvalidInputError(f"session {session_id} has ended")

        cfg = ReplaySessionConfig(
            user_id=rec.user_id,
            asset=rec.asset,
            timeframe=rec.timeframe,
            start_date=rec.start_date,
            initial_balance=rec.initial_balance,
            mode=rec.mode,
            seed=rec.seed,
            candle_limit=rec.candle_limit or settings.candle_limit,
            ticks_per_candle=rec.ticks_per_candle or settings.ticks_per_candle,
            synthesize_ticks=rec.synthesize_ticks,
            persist_every=rec.persist_every or settings.persist_every,
        )
        market = market or SqliteMarketData()
        series = _load_series(market, cfg, rec.start_date, timeframe_seconds(cfg.timeframe))
        sess = cls(
            session_id=rec.session_id,
            cfg=cfg,
            series=series,
            start_date=rec.start_date,
            persistence=persistence,
            candle_index=rec.candle_index,
            tick_index=rec.tick_index,
            mode=rec.mode,
        )
        open_positions, closed_positions = persistence.trades.list_trades(session_id)
        sess.ledger.restore(open_positions, closed_positions)
        sess._entry_marks = persistence.trades.entry_points(session_id)
        logger.info(
            "session %s resumed at candle %d tick %d (%d open, %d closed)",
            session_id,
            sess.cursor.candle_index,
            sess.cursor.tick_index,
            len(open_positions),
            len(closed_positions),
        )
        return sess

    # ---- helpers -------------------------------------------------------

    def _require_active(self) -> None:
        if self.status != "active":
            raise InvalidInputError(f"session {self.session_id} has ended")

    def market_time(self) -> datetime:
        w = self.cursor.current_forming_window()
        return w.price_time or w.timestamp

    def _range_since_entry(self, pos: Position, window: FormingWindow, upto_tick: int) -> Optional[PriceRange]:
        """
        Price range a position can react to. Positions opened inside the current
        candle only see ticks printed from their entry onward.
        """
        mark = self._entry_marks.get(pos.id)
        if mark is None or mark.candle_index != window.candle_index:
            return PriceRange(high=window.high, low=window.low)
        if mark.at_close:
            return None
        ticks = self.series.ticks_of(window.candle_index)
        if not ticks:
            return None
        seen = [t.price for t in ticks[mark.tick_index : upto_tick + 1]]
        if not seen:
            return None
        return PriceRange(high=max(seen), low=min(seen))

    def _evaluate(self, window: FormingWindow, upto_tick: int) -> List[Trigger]:
        out: List[Trigger] = []
        for pos in self.ledger.open_positions():
            rng = self._range_since_entry(pos, window, upto_tick)
            if rng is not None:
                out.extend(evaluate([pos], rng))
        return out

    def _apply_triggers(self, triggers: List[Trigger], exit_time: Optional[datetime]) -> List[ClosedPosition]:
        closed: List[ClosedPosition] = []
        for trig in triggers:
            c = self.ledger.close(trig.position_id, trig.exit_price, trig.reason, exit_time=exit_time)
            self._persist_close(c, triggered=True)
            closed.append(c)
            logger.info(
                "session %s: %s %s closed by %s at %.6f (pnl %.4f)",
                self.session_id,
                c.side.value,
                c.id,
                c.exit_reason.value,
                c.exit_price,
                c.pnl,
            )
        return closed

    def _persist_open(self, pos: Position) -> None:
        try:
            self.persistence.on_open(self, pos)
        except Exception:
            # Memory follows the store: a position that was not recorded was never opened.
            self.ledger.discard(pos.id)
            self._entry_marks.pop(pos.id, None)
            raise

    def _persist_close(self, closed: ClosedPosition, *, triggered: bool) -> None:
        try:
            self.persistence.on_close(self, closed, triggered=triggered)
        except Exception:
            self.ledger.reopen(closed)
            raise
        self._entry_marks.pop(closed.id, None)

    def _cursor_payload(self) -> Dict[str, Any]:
        st = self.cursor.state()
        return {"candle_index": st.candle_index, "tick_index": st.tick_index, "mode": st.mode.value}

    # ---- stepping ------------------------------------------------------

    def step(self, steps: int = 1) -> StepResult:
        """
        Advance up to `steps` positions. Reaching the end of the series is not
        an error: the result reports advanced=False and is_complete=True.
        """
        n = int(steps)
        if n < 1:
            raise InvalidInputError("steps must be >= 1")
        with self._lock:
            self._require_active()
            closed: List[ClosedPosition] = []
            taken = 0
            advanced = False
            for _ in range(n):
                window = self.cursor.current_forming_window()
                upto = window.tick_index
                if not self.cursor.uses_ticks():
                    upto = max(0, len(self.series.ticks_of(window.candle_index)) - 1)
                closed.extend(self._apply_triggers(self._evaluate(window, upto), window.price_time))
                if not self.cursor.advance():
                    break
                advanced = True
                taken += 1
                self._steps_since_persist += 1
                if self._steps_since_persist >= max(1, int(self.cfg.persist_every)):
                    self._steps_since_persist = 0
                    self.persistence.on_progress(self, event_type="STEP", payload=self._cursor_payload())
            return StepResult(
                advanced=advanced,
                is_complete=self.cursor.is_complete,
                window=self.cursor.current_forming_window(),
                closed=closed,
                steps_taken=taken,
            )

    def skip_candle(self) -> StepResult:
        """
        Jump to the next candle. Resting levels are first checked against the
        whole current candle so nothing the skipped ticks crossed is missed.
        """
        with self._lock:
            self._require_active()
            full = self.cursor.full_candle_window()
            last_tick = max(0, len(self.series.ticks_of(full.candle_index)) - 1)
            closed = self._apply_triggers(self._evaluate(full, last_tick), full.price_time)
            advanced = self.cursor.skip_to_next_candle()
            if advanced:
                self._steps_since_persist = 0
                self.persistence.on_progress(self, event_type="SKIP_CANDLE", payload=self._cursor_payload())
            return StepResult(
                advanced=advanced,
                is_complete=self.cursor.is_complete,
                window=self.cursor.current_forming_window(),
                closed=closed,
                steps_taken=1 if advanced else 0,
            )

    def set_mode(self, mode: Any) -> ReplayMode:
        with self._lock:
            self._require_active()
            new_mode = ReplayMode.parse(mode)
            if new_mode != self.cursor.mode:
                self.cursor.set_mode(new_mode)
                self.persistence.on_progress(self, event_type="MODE_CHANGED", payload=self._cursor_payload())
            return new_mode

    # ---- trading -------------------------------------------------------

    def open_position(
        self,
        side: Any,
        size: Any,
        stop_loss: Any = None,
        take_profit: Any = None,
        entry_price: Any = None,
    ) -> Position:
        """Open at `entry_price`, or at the price currently on screen."""
        with self._lock:
            self._require_active()
            window = self.cursor.current_forming_window()
            pos = self.ledger.open(
                side,
                window.close if entry_price is None else entry_price,
                size,
                stop_loss,
                take_profit,
                entry_time=window.price_time,
            )
            self._entry_marks[pos.id] = EntryPoint(
                candle_index=window.candle_index,
                tick_index=window.tick_index,
                at_close=not self.cursor.uses_ticks(),
            )
            self._persist_open(pos)
            logger.info(
                "session %s: opened %s %s size=%s at %.6f sl=%s tp=%s",
                self.session_id,
                pos.side.value,
                pos.id,
                pos.size,
                pos.entry_price,
                pos.stop_loss,
                pos.take_profit,
            )
            return pos

    def close_position(self, position_id: str, exit_price: Any = None) -> ClosedPosition:
        """Manual close at `exit_price`, or at the price currently on screen."""
        with self._lock:
            self._require_active()
            window = self.cursor.current_forming_window()
            closed = self.ledger.close(
                position_id,
                window.close if exit_price is None else exit_price,
                ExitReason.MANUAL,
                exit_time=window.price_time,
            )
            self._persist_close(closed, triggered=False)
            logger.info("session %s: closed %s manually (pnl %.4f)", self.session_id, position_id, closed.pnl)
            return closed

    # ---- queries -------------------------------------------------------

    def get_visible_history(self) -> List[FormingWindow]:
        with self._lock:
            return self.cursor.visible_history()

    def get_current_price(self) -> float:
        with self._lock:
            return self.cursor.current_forming_window().close

    def get_open_positions(self) -> List[Position]:
        with self._lock:
            return self.ledger.open_positions()

    def get_closed_positions(self) -> List[ClosedPosition]:
        with self._lock:
            return self.ledger.closed_positions()

    def get_balance(self) -> float:
        with self._lock:
            return float(self.cfg.initial_balance) + self.ledger.realized_pnl()

    def unrealized_pnl(self) -> float:
        with self._lock:
            px = self.get_current_price()
            return sum(compute_pnl(p.side, p.entry_price, px, p.size) for p in self.ledger.open_positions())

    def get_stats(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            stats = compute_trading_stats(
                self.ledger.closed_positions(),
                self.cfg.initial_balance,
                self.get_balance(),
            )
            return None if stats is None else stats.to_dict()

    def get_state_payload(self) -> Dict[str, Any]:
        with self._lock:
            window = self.cursor.current_forming_window()
            balance = self.get_balance()
            unrealized = self.unrealized_pnl()
            return {
                "session_id": self.session_id,
                "user_id": self.cfg.user_id,
                "asset": self.cfg.asset,
                "timeframe": self.cfg.timeframe,
                "start_date": _iso_z(self.start_date),
                "status": self.status,
                "cursor": self._cursor_payload(),
                "n_candles": len(self.series),
                "is_complete": self.cursor.is_complete,
                "current": window.to_dict(),
                "current_price": window.close,
                "initial_balance": float(self.cfg.initial_balance),
                "balance": balance,
                "unrealized_pnl": unrealized,
                "equity": balance + unrealized,
                "open_positions": [p.to_dict() for p in self.ledger.open_positions()],
                "closed_count": len(self.ledger.closed_positions()),
            }

    def end(self) -> Dict[str, Any]:
        """
        End the session. Open positions stay open in the record; calling end
        again returns the same summary without writing anything.
        """
        with self._lock:
            summary = {
                "balance": self.get_balance(),
                "realized_pnl": self.ledger.realized_pnl(),
                "open_positions": len(self.ledger.open_positions()),
                "stats": self.get_stats(),
            }
            if self.status == "active":
                self.status = "ended"
                self.persistence.on_end(self, summary)
                logger.info("session %s ended (balance %.2f)", self.session_id, summary["balance"])
            return summary


def _load_series(
    market: SqliteMarketData,
    cfg: ReplaySessionConfig,
    start: datetime,
    duration: int,
) -> CandleSeries:
    series = market.load_series(cfg.asset, cfg.timeframe, start, limit=int(cfg.candle_limit))
    if len(series) == 0:
        raise NotFoundError(f"no candles for {cfg.asset} {cfg.timeframe} at or after {_iso_z(start)}")
    if cfg.synthesize_ticks:
        seed = cfg.seed

        def rng_for(candle):
            if seed is None:
                return None
            return seeded_rng(cfg.asset, cfg.timeframe, candle.timestamp, seed)

        series = series.with_generated_ticks(duration, int(cfg.ticks_per_candle), rng_for=rng_for)
    return series
