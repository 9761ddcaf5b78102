"""
Stop-loss / take-profit evaluation against one price window.

Fill rules:
- Stop-loss is checked before take-profit. If one window spans both levels the
  position closes at the stop.
- Fills happen exactly at the resting level, never at the window's high/low.
- A position with neither level set never closes here.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Protocol

from replay.types import ExitReason, Position, Side


class HasRange(Protocol):
    high: float
    low: float


@dataclass(frozen=True)
class Trigger:
    position_id: str
    exit_price: float
    reason: ExitReason


def evaluate(open_positions: Iterable[Position], window: HasRange) -> List[Trigger]:
    """
    Return the positions to force-close for this window, in the order given.
    Does not mutate anything; the caller applies the closes.
    """
    high = float(window.high)
    low = float(window.low)
    out: List[Trigger] = []
    for pos in open_positions:
        sl = pos.stop_loss
        tp = pos.take_profit
        if pos.side == Side.BUY:
            if sl is not None and low <= sl:
                out.append(Trigger(pos.id, sl, ExitReason.STOP_LOSS))
            elif tp is not None and high >= tp:
                out.append(Trigger(pos.id, tp, ExitReason.TAKE_PROFIT))
        else:
            if sl is not None and high >= sl:
                out.append(Trigger(pos.id, sl, ExitReason.STOP_LOSS))
            elif tp is not None and low <= tp:
                out.append(Trigger(pos.id, tp, ExitReason.TAKE_PROFIT))
    return out
