from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from replay.types import ClosedPosition

# Per-trade returns are annualized as if each trade were one trading day.
TRADING_DAYS = 252


@dataclass(frozen=True)
class TradingStats:
    total_trades: int
    winning_trades: int
    losing_trades: int
    break_even_trades: int
    win_rate: float
    total_pnl: float
    total_return: float
    avg_win: float
    avg_loss: float
    risk_reward_ratio: float
    profit_factor: float
    max_drawdown: float
    sharpe_ratio: float
    best_trade: float
    worst_trade: float
    max_win_streak: int
    max_loss_streak: int
    current_streak: int
    expectancy: float
    equity_curve: List[float] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        # JSON has no infinity; an unbounded ratio is reported as null.
        out = asdict(self)
        for k, v in out.items():
            if isinstance(v, float) and not math.isfinite(v):
                out[k] = None
        return out


def _ratio(num: float, den: float) -> float:
    if den > 0:
        return num / den
    return math.inf if num > 0 else 0.0


def _streaks(pnl: Sequence[float]) -> Dict[str, int]:
    max_win = max_loss = win = loss = 0
    for p in pnl:
        if p > 0:
            win += 1
            loss = 0
            max_win = max(max_win, win)
        elif p < 0:
            loss += 1
            win = 0
            max_loss = max(max_loss, loss)

    # Signed length of the run of same-signed trades ending at the last trade.
    current = 0
    if pnl:
        last_sign = int(np.sign(pnl[-1]))
        if last_sign != 0:
            for p in reversed(pnl):
                if int(np.sign(p)) != last_sign:
                    break
                current += last_sign
    return {"max_win_streak": max_win, "max_loss_streak": max_loss, "current_streak": current}


def compute_trading_stats(
    closed_positions: Sequence[ClosedPosition],
    initial_balance: float,
    balance: Optional[float] = None,
) -> Optional[TradingStats]:
    """
    Summary statistics over closed trades, in close order.

    Returns None when nothing has been closed yet. `balance` defaults to
    initial_balance plus realized pnl.
    """
    if not closed_positions:
        return None

    initial = float(initial_balance)
    pnl = pd.Series([float(c.pnl) for c in closed_positions], dtype=float)
    if balance is None:
        balance = initial + float(pnl.sum())

    wins = pnl[pnl > 0]
    losses = pnl[pnl < 0]
    total = int(len(pnl))
    win_rate = len(wins) / total * 100.0

    avg_win = float(wins.mean()) if len(wins) else 0.0
    avg_loss = abs(float(losses.mean())) if len(losses) else 0.0
    gross_profit = float(wins.sum())
    gross_loss = abs(float(losses.sum()))

    equity = pd.concat([pd.Series([initial]), initial + pnl.cumsum()], ignore_index=True)
    peak = equity.cummax()
    drawdown = ((peak - equity) / peak.where(peak > 0)).fillna(0.0) * 100.0
    max_drawdown = max(0.0, float(drawdown.max()))

    returns = equity.pct_change().iloc[1:].replace([np.inf, -np.inf], np.nan).dropna()
    std = float(returns.std(ddof=1)) if len(returns) > 1 else 0.0
    sharpe = float(returns.mean()) / std * math.sqrt(TRADING_DAYS) if std > 0 else 0.0

    return TradingStats(
        total_trades=total,
        winning_trades=int(len(wins)),
        losing_trades=int(len(losses)),
        break_even_trades=int((pnl == 0).sum()),
        win_rate=win_rate,
        total_pnl=float(pnl.sum()),
        total_return=(float(balance) - initial) / initial * 100.0 if initial else 0.0,
        avg_win=avg_win,
        avg_loss=avg_loss,
        risk_reward_ratio=_ratio(avg_win, avg_loss),
        profit_factor=_ratio(gross_profit, gross_loss),
        max_drawdown=max_drawdown,
        sharpe_ratio=sharpe,
        best_trade=float(pnl.max()),
        worst_trade=float(pnl.min()),
        expectancy=(win_rate / 100.0) * avg_win - ((100.0 - win_rate) / 100.0) * avg_loss,
        equity_curve=[float(x) for x in equity],
        **_streaks(pnl.tolist()),
    )
