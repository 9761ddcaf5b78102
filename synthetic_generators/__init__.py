from __future__ import annotations

from typing import Callable, Dict, List

from replay.types import Candle

from .base import write_candles_to_db, write_ticks_to_db
from .regime_walk import generate_regime_walk_candles


Generator = Callable[..., List[Candle]]

GENERATOR_REGISTRY: Dict[str, Generator] = {
    "regime_walk": generate_regime_walk_candles,
}


def get_generator(name: str) -> Generator:
    try:
        return GENERATOR_REGISTRY[name]
    except KeyError as exc:
        raise KeyError(f"Unknown synthetic generator: {name}") from exc


__all__ = [
    "write_candles_to_db",
    "write_ticks_to_db",
    "generate_regime_walk_candles",
    "get_generator",
    "GENERATOR_REGISTRY",
]
