"""
Pytest fixtures for backtester tests.

Candle series are deterministic: one candle per UTC day starting at
2024-01-01, with high/low defaulting to the close.
"""
from typing import List, Optional, Sequence

import numpy as np
import pytest

from backtester.data import InMemoryDataSource, candles_to_arrays, format_date, parse_date
from backtester.models import BacktestOptions, Candle, Strategy

DAY_MS = 24 * 60 * 60 * 1000
START = "2024-01-01"


def make_candles(closes: Sequence[float], highs: Optional[Sequence[float]] = None,
                 lows: Optional[Sequence[float]] = None, start: str = START,
                 step_ms: int = DAY_MS) -> List[Candle]:
    first = parse_date(start)
    highs = highs if highs is not None else closes
    lows = lows if lows is not None else closes
    return [
        Candle(timestamp=first + i * step_ms, open=float(c), high=float(h),
               low=float(lo), close=float(c), volume=1.0)
        for i, (c, h, lo) in enumerate(zip(closes, highs, lows))
    ]


def end_date(candles: Sequence[Candle]) -> str:
    return format_date(candles[-1].timestamp)


def options_for(candles: Sequence[Candle], **overrides) -> BacktestOptions:
    settings = dict(startDate=START, endDate=end_date(candles), feeRate=0.0, slippage=0.0)
    settings.update(overrides)
    return BacktestOptions(**settings)


@pytest.fixture
def wave_closes():
    """Two full sine cycles on a slow uptrend (crossovers in both directions)"""
    x = np.arange(120)
    return (100 + 10 * np.sin(x / 120 * 4 * np.pi) + x * 0.05).round(4).tolist()


@pytest.fixture
def wave_candles(wave_closes):
    return make_candles(wave_closes)


@pytest.fixture
def wave_data(wave_candles):
    return candles_to_arrays(wave_candles)


@pytest.fixture
def ma_strategy():
    return Strategy(
        id="ma-1",
        name="MA cross",
        type="MA_CROSSOVER",
        parameters={"pair": "BTC/USDT", "shortPeriod": 5, "longPeriod": 20},
    )


@pytest.fixture
def data_source(wave_candles):
    return InMemoryDataSource({"BTC/USDT": wave_candles})
