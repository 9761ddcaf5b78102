"""
Intra-candle price path interpolation.

Turns one candle's open/high/low/close into a plausible sequence of sub-candle
prices used to animate progressive candle formation. The shape is randomized;
only the boundary guarantees are stable:

- path[0] == open and path[-1] == close
- every value lies in [low, high]
- the path touches both high and low (given at least two interior samples)
"""

from __future__ import annotations

import random
from datetime import datetime
from typing import List, Optional, Tuple

from replay.errors import InvalidInputError
from replay.events import _iso_z

NOISE_FRACTION = 0.02
SWING_BAND = 0.2


def seeded_rng(asset: str, timeframe: str, candle_ts: datetime, seed: int) -> random.Random:
    """
    RNG keyed by (asset, timeframe, candle timestamp, seed) so the same candle
    always produces the same path within a seeded replay.
    """
    return random.Random(f"{asset}|{timeframe}|{_iso_z(candle_ts)}|{int(seed)}")


def _smoothstep(p: float) -> float:
    return p * p * (3.0 - 2.0 * p)


def _pin_index(position: float, n: int) -> int:
    return min(n - 2, max(1, int(round(position * (n - 1)))))


def generate_path(
    open_: float,
    high: float,
    low: float,
    close: float,
    n: int,
    *,
    rng: Optional[random.Random] = None,
) -> List[float]:
    open_, high, low, close = float(open_), float(high), float(low), float(close)
    n = int(n)
    if n < 2:
        raise InvalidInputError(f"path needs at least 2 points, got n={n}")
    if not (low <= min(open_, close) and max(open_, close) <= high):
        raise InvalidInputError(
            f"expected low <= open/close <= high (o={open_} h={high} l={low} c={close})"
        )
    r = rng if rng is not None else random

    if high == low:
        return [open_] * n
    if n == 2:
        return [open_, close]
    if n == 3:
        # One interior slot: spend it on whichever extreme open/close do not already reach.
        if min(open_, close) == low:
            mid = high
        elif max(open_, close) == high:
            mid = low
        else:
            mid = low if close >= open_ else high
        return [open_, mid, close]

    span = high - low
    bullish = close >= open_

    # Extra swings: evenly spread with jitter, each landing near the top or bottom of the range.
    waypoints: List[Tuple[float, float]] = []
    n_swings = r.randint(3, 5)
    for i in range(n_swings):
        pos = (i + 1) / (n_swings + 1) + (r.random() - 0.5) * 0.1
        if r.random() > 0.5:
            px = high - r.random() * span * SWING_BAND
        else:
            px = low + r.random() * span * SWING_BAND
        waypoints.append((pos, px))

    # Mandatory extremes: bullish dips early and peaks late; bearish mirrors it.
    first_px, second_px = (low, high) if bullish else (high, low)
    first_idx = _pin_index(r.random() * 0.3, n)
    second_idx = _pin_index(0.7 + r.random() * 0.2, n)
    if second_idx == first_idx:
        second_idx = first_idx + 1 if first_idx + 1 <= n - 2 else first_idx - 1
    pinned = {first_idx: first_px, second_idx: second_px}
    for idx, px in pinned.items():
        waypoints.append((idx / (n - 1), px))

    waypoints.sort(key=lambda w: w[0])
    anchors = [(0.0, open_)] + waypoints + [(1.0, close)]

    points: List[float] = []
    seg = 0
    for i in range(n):
        pos = i / (n - 1)
        while seg < len(anchors) - 2 and pos > anchors[seg + 1][0]:
            seg += 1
        (p0, v0), (p1, v1) = anchors[seg], anchors[seg + 1]
        progress = (pos - p0) / (p1 - p0) if p1 > p0 else 1.0
        progress = min(1.0, max(0.0, progress))
        target = v0 + (v1 - v0) * _smoothstep(progress)
        target += (r.random() - 0.5) * span * NOISE_FRACTION
        points.append(max(low, min(high, target)))

    for idx, px in pinned.items():
        points[idx] = px
    points[0] = open_
    points[-1] = close
    return points
