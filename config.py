"""
Environment-driven settings for the trading gym.

Values come from the process environment, optionally seeded from a `.env` file
that sits next to this module.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

_REPO_DIR = os.path.dirname(os.path.abspath(__file__))

load_dotenv(dotenv_path=os.path.join(_REPO_DIR, ".env"), override=False)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip() in ("1", "true", "TRUE", "True", "yes", "YES")


@dataclass(frozen=True)
class Settings:
    db_path: str
    ticks_per_candle: int = 100
    initial_balance: float = 10000.0
    candle_limit: int = 1000
    persist_every: int = 25
    synthesize_ticks: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=os.getenv("TRADINGGYM_DB_PATH") or os.path.join(_REPO_DIR, "trading_gym.db"),
            ticks_per_candle=max(2, _env_int("TRADINGGYM_TICKS_PER_CANDLE", 100)),
            initial_balance=_env_float("TRADINGGYM_INITIAL_BALANCE", 10000.0),
            candle_limit=max(1, _env_int("TRADINGGYM_CANDLE_LIMIT", 1000)),
            persist_every=max(1, _env_int("TRADINGGYM_PERSIST_EVERY", 25)),
            synthesize_ticks=_env_bool("TRADINGGYM_SYNTHESIZE_TICKS", False),
            log_level=(os.getenv("TRADINGGYM_LOG_LEVEL") or "INFO").strip().upper(),
        )


settings = Settings.from_env()


def setup_logging(level: str | None = None) -> logging.Logger:
    """
    Configure the root `replay` logger with a single stream handler.
    Safe to call more than once.
    """
    logger = logging.getLogger("replay")
    logger.setLevel(getattr(logging, (level or settings.log_level), logging.INFO))
    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s - %(message)s"))
        logger.addHandler(handler)
    return logger
