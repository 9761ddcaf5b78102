from __future__ import annotations

import math
import random
from datetime import datetime, timedelta, timezone
from typing import List, Literal

from replay.series import timeframe_seconds
from replay.types import Candle

Regime = Literal["UP", "DOWN", "CHOP"]

REGIMES: dict[Regime, dict[str, float]] = {
    "UP": {"drift": 0.0007, "vol": 0.0025},
    "DOWN": {"drift": -0.0007, "vol": 0.0025},
    "CHOP": {"drift": 0.0, "vol": 0.0015},
}


def generate_regime_walk_candles(
    start_price: float,
    n_candles: int,
    *,
    timeframe: str = "1h",
    start_ts: datetime | None = None,
    seed: int | None = None,
    stay_prob: float = 0.92,
) -> List[Candle]:
    """
    Random-walk candles with a simple 3-regime model: UP, DOWN, CHOP.

    Each candle opens at the previous close (no gaps). The close is a
    log-normal step from the open; wicks extend past the body by a random
    fraction of the candle's range.
    """
    if start_price <= 0:
        raise ValueError("start_price must be > 0")
    duration_sec = timeframe_seconds(timeframe)
    rng = random.Random(seed) if seed is not None else random.Random()

    if start_ts is None:
        now = datetime.now(timezone.utc)
        start_ts = datetime.fromtimestamp((int(now.timestamp()) // duration_sec) * duration_sec, tz=timezone.utc)
        start_ts -= timedelta(seconds=duration_sec * n_candles)

    current_regime: Regime = "CHOP"
    price = float(start_price)
    candles: List[Candle] = []

    for i in range(n_candles):
        if rng.random() > stay_prob:
            candidates = [r for r in REGIMES.keys() if r != current_regime]
            current_regime = rng.choice(candidates)  # type: ignore[assignment]

        params = REGIMES[current_regime]
        ret = params["drift"] + params["vol"] * rng.gauss(0, 1)
        price_close = price * math.exp(ret)

        base_range = abs(ret) * price if abs(ret) > 0 else 0.001 * price
        bar_range = base_range + (0.5 + rng.random()) * params["vol"] * price

        upper_wiggle = 0.3 * bar_range + rng.random() * 0.7 * bar_range
        lower_wiggle = 0.3 * bar_range + rng.random() * 0.7 * bar_range

        price_open = price
        price_high = max(price_open, price_close) + upper_wiggle
        price_low = max(1e-9, min(price_open, price_close) - lower_wiggle)

        regime_vol_multiplier = {"UP": 1.2, "DOWN": 1.2, "CHOP": 0.8}[current_regime]
        volume = 1000.0 * regime_vol_multiplier * rng.uniform(0.5, 1.5)

        candles.append(
            Candle(
                timestamp=start_ts + timedelta(seconds=i * duration_sec),
                open=price_open,
                high=price_high,
                low=price_low,
                close=price_close,
                volume=volume,
            )
        )
        price = price_close

    return candles
