"""
Historical Data
Candle arrays, CSV parsing, timeframe aggregation and data sources
"""
import logging
import os
import re
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

import numpy as np
import pandas as pd

from backtester.models import Candle

logger = logging.getLogger(__name__)

CANDLE_FIELDS = ['timestamp', 'open', 'high', 'low', 'close', 'volume']

_TIMEFRAME_UNITS = {'m': 'min', 'h': 'h', 'd': 'D', 'w': 'W'}

_EPOCH = pd.Timestamp(0, tz='UTC')
_MILLISECOND = pd.Timedelta(milliseconds=1)


def parse_date(value) -> int:
    """ISO-8601 string (or datetime-like) -> epoch milliseconds UTC"""
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize('UTC')
    return int((ts - _EPOCH) // _MILLISECOND)


def format_date(timestamp_ms: int) -> str:
    return pd.Timestamp(timestamp_ms, unit='ms', tz='UTC').strftime('%Y-%m-%d')


def candles_to_arrays(candles: Sequence[Candle]) -> Dict[str, np.ndarray]:
    """Columnar view of a candle sequence for the vectorized engine"""
    return {
        'timestamp': np.array([c.timestamp for c in candles], dtype=np.int64),
        'open': np.array([c.open for c in candles], dtype=np.float64),
        'high': np.array([c.high for c in candles], dtype=np.float64),
        'low': np.array([c.low for c in candles], dtype=np.float64),
        'close': np.array([c.close for c in candles], dtype=np.float64),
        'volume': np.array([c.volume for c in candles], dtype=np.float64),
    }


def arrays_to_candles(data: Dict[str, np.ndarray]) -> List[Candle]:
    n = len(data['close'])
    times = data['timestamp'].astype(np.int64).tolist()
    opens = data['open'].tolist()
    highs = data['high'].tolist()
    lows = data['low'].tolist()
    closes = data['close'].tolist()
    volumes = data['volume'].tolist()
    return [
        Candle(timestamp=times[i], open=opens[i], high=highs[i],
               low=lows[i], close=closes[i], volume=volumes[i])
        for i in range(n)
    ]


def parse_candle_frame(df: pd.DataFrame) -> List[Candle]:
    """Parse a DataFrame (e.g. from a CSV upload) into time-ordered candles"""
    df = df.copy()
    df.columns = df.columns.str.lower().str.strip()
    for alias in ('time', 'datetime', 'date'):
        if alias in df.columns and 'timestamp' not in df.columns:
            df.rename(columns={alias: 'timestamp'}, inplace=True)

    if 'volume' not in df.columns:
        df['volume'] = 0.0

    missing = [c for c in CANDLE_FIELDS if c not in df.columns]
    if missing:
        raise ValueError(f"CSV must contain: {CANDLE_FIELDS} (missing: {missing}, found: {list(df.columns)})")

    if not pd.api.types.is_numeric_dtype(df['timestamp']):
        parsed = pd.to_datetime(df['timestamp'], utc=True)
        df['timestamp'] = ((parsed - _EPOCH) // _MILLISECOND).astype(np.int64)
    else:
        df['timestamp'] = df['timestamp'].astype(np.int64)
        # Epoch seconds -> milliseconds
        if len(df) and df['timestamp'].abs().max() < 10**11:
            df['timestamp'] = df['timestamp'] * 1000

    df = df.sort_values('timestamp', kind='stable').reset_index(drop=True)

    return arrays_to_candles({
        'timestamp': df['timestamp'].values,
        'open': df['open'].values.astype(float),
        'high': df['high'].values.astype(float),
        'low': df['low'].values.astype(float),
        'close': df['close'].values.astype(float),
        'volume': df['volume'].values.astype(float),
    })


def timeframe_to_offset(timeframe: str) -> str:
    """'15m' -> '15min', '4h' -> '4h', '1d' -> '1D'"""
    match = re.fullmatch(r'(\d+)\s*([mhdw])', timeframe.strip().lower())
    if not match:
        raise ValueError(f"Unsupported timeframe: {timeframe!r}")
    return f"{int(match.group(1))}{_TIMEFRAME_UNITS[match.group(2)]}"


def aggregate_candles(candles: Sequence[Candle], timeframe: Optional[str]) -> List[Candle]:
    """Resample candles into a coarser timeframe"""
    if not timeframe or not candles:
        return list(candles)

    data = candles_to_arrays(candles)
    df = pd.DataFrame(data)
    df['dt'] = pd.to_datetime(df['timestamp'], unit='ms', utc=True)
    df.set_index('dt', inplace=True)

    resampled = df.resample(timeframe_to_offset(timeframe), label='left', closed='left').agg({
        'open': 'first',
        'high': 'max',
        'low': 'min',
        'close': 'last',
        'volume': 'sum',
    }).dropna()

    return arrays_to_candles({
        'timestamp': ((resampled.index - _EPOCH) // _MILLISECOND).values.astype(np.int64),
        'open': resampled['open'].values.astype(float),
        'high': resampled['high'].values.astype(float),
        'low': resampled['low'].values.astype(float),
        'close': resampled['close'].values.astype(float),
        'volume': resampled['volume'].values.astype(float),
    })


def filter_range(candles: Iterable[Candle], start: int, end: int) -> List[Candle]:
    return [c for c in candles if start <= c.timestamp <= end]


class HistoricalDataSource(Protocol):
    """Collaborator that supplies candles for a pair and time range"""

    def get_historical_data(self, pair: str, start: int, end: int,
                            timeframe: Optional[str] = None) -> List[Candle]:
        ...


class InMemoryDataSource:
    """Candles held per pair (uploads, tests)"""

    def __init__(self, candles: Optional[Dict[str, Sequence[Candle]]] = None):
        self._candles: Dict[str, List[Candle]] = {
            pair: sorted(series, key=lambda c: c.timestamp)
            for pair, series in (candles or {}).items()
        }

    def set_candles(self, pair: str, candles: Sequence[Candle]) -> None:
        self._candles[pair] = sorted(candles, key=lambda c: c.timestamp)

    def pairs(self) -> Dict[str, int]:
        return {pair: len(series) for pair, series in self._candles.items()}

    def get_historical_data(self, pair: str, start: int, end: int,
                            timeframe: Optional[str] = None) -> List[Candle]:
        candles = filter_range(self._candles.get(pair, []), start, end)
        return aggregate_candles(candles, timeframe)


class CSVDataSource:
    """One `<PAIR>.csv` file per pair inside a directory"""

    def __init__(self, directory: str):
        self.directory = directory
        self._cache: Dict[str, List[Candle]] = {}

    def _path(self, pair: str) -> str:
        return os.path.join(self.directory, f"{pair}.csv")

    def _load(self, pair: str) -> List[Candle]:
        if pair not in self._cache:
            path = self._path(pair)
            if not os.path.exists(path):
                logger.warning("No CSV for %s at %s", pair, path)
                return []
            self._cache[pair] = parse_candle_frame(pd.read_csv(path))
            logger.info("Loaded %d bars for %s from %s", len(self._cache[pair]), pair, path)
        return self._cache[pair]

    def get_historical_data(self, pair: str, start: int, end: int,
                            timeframe: Optional[str] = None) -> List[Candle]:
        candles = filter_range(self._load(pair), start, end)
        return aggregate_candles(candles, timeframe)


class ChainedDataSource:
    """First source with candles for the request wins"""

    def __init__(self, *sources: HistoricalDataSource):
        self.sources = sources

    def get_historical_data(self, pair: str, start: int, end: int,
                            timeframe: Optional[str] = None) -> List[Candle]:
        for source in self.sources:
            candles = source.get_historical_data(pair, start, end, timeframe)
            if candles:
                return candles
        return []
