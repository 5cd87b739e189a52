"""
Runtime configuration (environment driven)
"""
import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional

from backtester import (
    DEFAULT_FEE_RATE,
    DEFAULT_INITIAL_BALANCE,
    DEFAULT_SLIPPAGE,
)

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
HANDLER_NAME = "backtester-console"


def _env_list(name: str, default: str) -> List[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw not in (None, "") else default


@dataclass(frozen=True)
class Settings:
    """Service settings"""
    cors_origins: List[str] = field(default_factory=list)
    data_dir: Optional[str] = None
    max_workers: int = 6
    log_level: str = "INFO"
    initial_balance: float = DEFAULT_INITIAL_BALANCE
    fee_rate: float = DEFAULT_FEE_RATE
    slippage: float = DEFAULT_SLIPPAGE

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            cors_origins=_env_list(
                "BACKTESTER_CORS_ORIGINS",
                "http://localhost:5173,http://localhost:4000,http://127.0.0.1:5173",
            ),
            data_dir=os.environ.get("BACKTESTER_DATA_DIR") or None,
            max_workers=int(os.environ.get("BACKTESTER_MAX_WORKERS", "6")),
            log_level=os.environ.get("BACKTESTER_LOG_LEVEL", "INFO").upper(),
            initial_balance=_env_float("BACKTESTER_INITIAL_BALANCE", DEFAULT_INITIAL_BALANCE),
            fee_rate=_env_float("BACKTESTER_FEE_RATE", DEFAULT_FEE_RATE),
            slippage=_env_float("BACKTESTER_SLIPPAGE", DEFAULT_SLIPPAGE),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Settings singleton (read once per process)"""
    return Settings.from_env()


def configure_logging(level: Optional[str] = None) -> None:
    """Install a console handler on the package logger"""
    level_name = (level or get_settings().log_level).upper()
    logger = logging.getLogger("backtester")
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    if not any(h.get_name() == HANDLER_NAME for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
        handler.set_name(HANDLER_NAME)
        logger.addHandler(handler)
