from __future__ import annotations

import math
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from replay.errors import InvalidInputError, NotFoundError
from replay.types import ClosedPosition, ExitReason, Position, Side


def compute_pnl(side: Side, entry_price: float, exit_price: float, size: float) -> float:
    # No fees, slippage, or leverage.
    if side == Side.BUY:
        return (exit_price - entry_price) * size
    return (entry_price - exit_price) * size


def _positive(name: str, value: Any) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise InvalidInputError(f"{name} must be a number, got {value!r}") from None
    if not math.isfinite(v) or v <= 0:
        raise InvalidInputError(f"{name} must be > 0, got {value!r}")
    return v


def _optional_level(name: str, value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return _positive(name, value)


class PositionLedger:
    """
    Open and closed positions for one session.

    Positions are opened explicitly and closed exactly once, either manually or
    by the SL/TP evaluator. `close` is the only place pnl is realized; the
    caller owns the running balance.
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        self._open: Dict[str, Position] = {}
        self._closed: List[ClosedPosition] = []
        # Open order, so an undone close goes back to its original slot.
        self._open_seq: Dict[str, int] = {}

    def open(
        self,
        side: Any,
        entry_price: Any,
        size: Any,
        stop_loss: Any = None,
        take_profit: Any = None,
        *,
        entry_time: Optional[datetime] = None,
        position_id: Optional[str] = None,
    ) -> Position:
        # Validate everything before touching state. SL/TP may sit on either side of entry.
        side_v = Side.parse(side)
        entry_v = _positive("entry_price", entry_price)
        size_v = _positive("size", size)
        sl_v = _optional_level("stop_loss", stop_loss)
        tp_v = _optional_level("take_profit", take_profit)
        pid = position_id or str(uuid.uuid4())
        if pid in self._open or any(c.id == pid for c in self._closed):
            raise InvalidInputError(f"duplicate position id {pid}")

        pos = Position(
            id=pid,
            session_id=self.session_id,
            side=side_v,
            entry_price=entry_v,
            size=size_v,
            stop_loss=sl_v,
            take_profit=tp_v,
            entry_time=entry_time,
        )
        self._open[pid] = pos
        self._open_seq[pid] = max(self._open_seq.values(), default=0) + 1
        return pos

    def close(
        self,
        position_id: str,
        exit_price: Any,
        reason: ExitReason = ExitReason.MANUAL,
        *,
        exit_time: Optional[datetime] = None,
    ) -> ClosedPosition:
        pos = self._open.get(position_id)
        if pos is None:
            raise NotFoundError(f"position {position_id} is not open")
        exit_v = _positive("exit_price", exit_price)
        del self._open[position_id]
        closed = ClosedPosition(
            id=pos.id,
            session_id=pos.session_id,
            side=pos.side,
            entry_price=pos.entry_price,
            size=pos.size,
            stop_loss=pos.stop_loss,
            take_profit=pos.take_profit,
            entry_time=pos.entry_time,
            exit_price=exit_v,
            exit_time=exit_time,
            exit_reason=ExitReason(reason),
            pnl=compute_pnl(pos.side, pos.entry_price, exit_v, pos.size),
        )
        self._closed.append(closed)
        return closed

    def discard(self, position_id: str) -> None:
        """Undo an `open` whose record could not be saved."""
        self._open.pop(position_id, None)
        self._open_seq.pop(position_id, None)

    def reopen(self, closed: ClosedPosition) -> Position:
        """Undo a `close` whose record could not be saved. Restores open order."""
        if not self._closed or self._closed[-1].id != closed.id:
            raise InvalidInputError(f"position {closed.id} is not the most recent close")
        self._closed.pop()
        pos = Position(
            id=closed.id,
            session_id=closed.session_id,
            side=closed.side,
            entry_price=closed.entry_price,
            size=closed.size,
            stop_loss=closed.stop_loss,
            take_profit=closed.take_profit,
            entry_time=closed.entry_time,
        )
        self._open[pos.id] = pos
        self._open = dict(sorted(self._open.items(), key=lambda kv: self._open_seq.get(kv[0], 0)))
        return pos

    def get(self, position_id: str) -> Position:
        pos = self._open.get(position_id)
        if pos is None:
            raise NotFoundError(f"position {position_id} is not open")
        return pos

    def open_positions(self) -> List[Position]:
        return list(self._open.values())

    def closed_positions(self) -> List[ClosedPosition]:
        return list(self._closed)

    def realized_pnl(self) -> float:
        return sum(c.pnl for c in self._closed)

    def restore(self, open_positions: Iterable[Position], closed_positions: Iterable[ClosedPosition]) -> None:
        """Reload persisted state when resuming a session."""
        self._open = {p.id: p for p in open_positions}
        self._closed = list(closed_positions)
        self._open_seq = {pid: i for i, pid in enumerate(self._open, start=1)}
