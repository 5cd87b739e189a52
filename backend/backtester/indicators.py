"""
Technical Indicators
Full-series NumPy implementations (Numba-accelerated cores) plus
scalar "latest value" helpers over a finite price window
"""
from typing import Dict, Sequence, Tuple

import numpy as np
from numba import jit


class IndicatorBank:
    """Per-run indicator cache, built on demand"""

    def __init__(self, data: Dict[str, np.ndarray]):
        self.data = data
        self.open = data['open']
        self.close = data['close']
        self.high = data['high']
        self.low = data['low']
        self.length = len(self.close)
        self.indicators: Dict[str, np.ndarray] = {}

    def _cached(self, key: str, build):
        if key not in self.indicators:
            self.indicators[key] = build()
        return self.indicators[key]

    def sma(self, period: int) -> np.ndarray:
        return self._cached(f'sma_{period}', lambda: calculate_sma(self.close, period))

    def ema(self, period: int) -> np.ndarray:
        return self._cached(f'ema_{period}', lambda: calculate_ema(self.close, period))

    def rsi(self, period: int) -> np.ndarray:
        return self._cached(f'rsi_{period}', lambda: calculate_rsi(self.close, period))

    def macd(self, fast: int, slow: int, signal: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        key = f'{fast}_{slow}_{signal}'
        if f'macd_{key}' not in self.indicators:
            macd, signal_line, hist = calculate_macd(self.close, fast, slow, signal)
            self.indicators[f'macd_{key}'] = macd
            self.indicators[f'macd_signal_{key}'] = signal_line
            self.indicators[f'macd_hist_{key}'] = hist
        return (
            self.indicators[f'macd_{key}'],
            self.indicators[f'macd_signal_{key}'],
            self.indicators[f'macd_hist_{key}'],
        )

    def bollinger(self, period: int, std_dev: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        key = f'{period}_{std_dev}'
        if f'bb_middle_{key}' not in self.indicators:
            upper, middle, lower = calculate_bollinger_bands(self.close, period, std_dev)
            self.indicators[f'bb_upper_{key}'] = upper
            self.indicators[f'bb_middle_{key}'] = middle
            self.indicators[f'bb_lower_{key}'] = lower
        return (
            self.indicators[f'bb_upper_{key}'],
            self.indicators[f'bb_middle_{key}'],
            self.indicators[f'bb_lower_{key}'],
        )

    def prior_high(self, lookback: int) -> np.ndarray:
        return self._cached(f'prior_high_{lookback}', lambda: calculate_prior_high(self.high, lookback))

    def prior_low(self, lookback: int) -> np.ndarray:
        return self._cached(f'prior_low_{lookback}', lambda: calculate_prior_low(self.low, lookback))

    def ichimoku(self, conversion: int, base: int, span_b: int) -> Tuple[np.ndarray, ...]:
        key = f'{conversion}_{base}_{span_b}'
        names = ('conversion', 'base', 'span_a', 'span_b')
        if f'ichimoku_conversion_{key}' not in self.indicators:
            lines = calculate_ichimoku(self.high, self.low, conversion, base, span_b)
            for name, line in zip(names, lines):
                self.indicators[f'ichimoku_{name}_{key}'] = line
        return tuple(self.indicators[f'ichimoku_{name}_{key}'] for name in names)

    def patterns(self) -> Dict[str, np.ndarray]:
        if 'pattern_doji' not in self.indicators:
            for name, found in detect_candle_patterns(self.open, self.high, self.low, self.close).items():
                self.indicators[f'pattern_{name}'] = found
        return {name: self.indicators[f'pattern_{name}'] for name in PATTERN_NAMES}


# ==================== INDICATOR FUNCTIONS ====================

@jit(nopython=True)
def _window_stats_core(values: np.ndarray, period: int):
    """Mean and population std of each trailing window (Numba optimized)"""
    count = len(values)
    means = np.full(count, np.nan)
    stds = np.full(count, np.nan)

    for end in range(period, count + 1):
        window = values[end - period:end]
        means[end - 1] = np.mean(window)
        stds[end - 1] = np.std(window)

    return means, stds


def calculate_sma(values: np.ndarray, period: int) -> np.ndarray:
    """Simple Moving Average"""
    values = np.asarray(values, dtype=np.float64)
    if len(values) < period:
        return np.full(len(values), np.nan)
    return _window_stats_core(values, period)[0]


def sma(values: Sequence[float], period: int) -> float:
    """SMA of the last `period` values, 0 when the window is too short"""
    if len(values) < period:
        return 0.0
    return float(np.mean(np.asarray(values[len(values) - period:], dtype=np.float64)))


@jit(nopython=True)
def _ema_core(values: np.ndarray, period: int) -> np.ndarray:
    """EMA seeded with the SMA of the first `period` values"""
    out = np.full(len(values), np.nan)
    alpha = 2.0 / (period + 1)
    prev = np.mean(values[:period])
    out[period - 1] = prev

    for i in range(period, len(values)):
        prev = prev + (values[i] - prev) * alpha
        out[i] = prev

    return out


def calculate_ema(values: np.ndarray, period: int) -> np.ndarray:
    """Exponential Moving Average"""
    values = np.asarray(values, dtype=np.float64)
    if len(values) < period:
        return np.full(len(values), np.nan)
    return _ema_core(values, period)


def ema(values: Sequence[float], period: int) -> float:
    """Latest EMA value, 0 when there are fewer than `period` values"""
    if len(values) < period:
        return 0.0
    return float(calculate_ema(values, period)[-1])


@jit(nopython=True)
def _rsi_core(values: np.ndarray, period: int) -> np.ndarray:
    """RSI Core (Numba optimized, Wilder smoothing)"""
    out = np.full(len(values), np.nan)
    avg_gain = 0.0
    avg_loss = 0.0

    for i in range(1, len(values)):
        change = values[i] - values[i - 1]
        gain = change if change > 0 else 0.0
        loss = -change if change < 0 else 0.0

        if i <= period:
            # Seed: plain average of the first `period` changes
            avg_gain += gain / period
            avg_loss += loss / period
            if i < period:
                continue
        else:
            avg_gain = (avg_gain * (period - 1) + gain) / period
            avg_loss = (avg_loss * (period - 1) + loss) / period

        if avg_loss == 0:
            out[i] = 100.0
        else:
            out[i] = 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)

    return out


def calculate_rsi(values: np.ndarray, period: int = 14) -> np.ndarray:
    """Relative Strength Index"""
    values = np.asarray(values, dtype=np.float64)
    if len(values) <= period:
        return np.full(len(values), np.nan)
    return _rsi_core(values, period)


def rsi(values: Sequence[float], period: int = 14) -> float:
    """Latest RSI value; 50 (neutral) until more than `period` values exist"""
    if len(values) <= period:
        return 50.0
    return float(calculate_rsi(values, period)[-1])


def calculate_macd(values: np.ndarray, fast: int = 12, slow: int = 26, signal: int = 9):
    """MACD line, signal line (EMA of the valid MACD values only) and histogram"""
    values = np.asarray(values, dtype=np.float64)
    line = calculate_ema(values, fast) - calculate_ema(values, slow)

    # The line is defined once both EMAs are seeded
    offset = max(fast, slow) - 1
    signal_line = np.full(len(line), np.nan)
    if offset + signal <= len(line):
        signal_line[offset:] = calculate_ema(line[offset:], signal)

    return line, signal_line, line - signal_line


def calculate_bollinger_bands(values: np.ndarray, period: int = 20, std_dev: float = 2.0):
    """Bollinger Bands (population std over the SMA window)"""
    values = np.asarray(values, dtype=np.float64)
    if len(values) < period:
        empty = np.full(len(values), np.nan)
        return empty, empty.copy(), empty.copy()

    middle, spread = _window_stats_core(values, period)
    return middle + spread * std_dev, middle, middle - spread * std_dev


@jit(nopython=True)
def _prior_extreme_core(values: np.ndarray, lookback: int, use_max: bool) -> np.ndarray:
    """Extreme of the `lookback` values before each index (current excluded)"""
    n = len(values)
    result = np.full(n, np.nan)

    for i in range(lookback, n):
        window = values[i - lookback:i]
        result[i] = np.max(window) if use_max else np.min(window)

    return result


def calculate_prior_high(high: np.ndarray, lookback: int) -> np.ndarray:
    """Highest high of the previous `lookback` candles"""
    high = np.asarray(high, dtype=np.float64)
    if len(high) < lookback + 1:
        return np.full(len(high), np.nan)
    return _prior_extreme_core(high, lookback, True)


def calculate_prior_low(low: np.ndarray, lookback: int) -> np.ndarray:
    """Lowest low of the previous `lookback` candles"""
    low = np.asarray(low, dtype=np.float64)
    if len(low) < lookback + 1:
        return np.full(len(low), np.nan)
    return _prior_extreme_core(low, lookback, False)


@jit(nopython=True)
def _midpoint_core(high: np.ndarray, low: np.ndarray, period: int) -> np.ndarray:
    """(highest high + lowest low) / 2 over the trailing window, current candle included"""
    n = len(high)
    result = np.full(n, np.nan)

    for i in range(period - 1, n):
        result[i] = (np.max(high[i - period + 1:i + 1]) + np.min(low[i - period + 1:i + 1])) / 2.0

    return result


def calculate_ichimoku(high: np.ndarray, low: np.ndarray, conversion: int = 9, base: int = 26,
                       span_b: int = 52):
    """Ichimoku conversion line, base line and the two leading spans at each candle"""
    high = np.asarray(high, dtype=np.float64)
    low = np.asarray(low, dtype=np.float64)
    conversion_line = _midpoint_core(high, low, conversion)
    base_line = _midpoint_core(high, low, base)
    span_a = (conversion_line + base_line) / 2.0
    return conversion_line, base_line, span_a, _midpoint_core(high, low, span_b)


# ==================== CANDLE PATTERNS ====================

PATTERN_NAMES = (
    'doji', 'hammer', 'bullish_engulfing', 'bearish_engulfing', 'morning_star', 'evening_star',
)


def detect_candle_patterns(open_: np.ndarray, high: np.ndarray, low: np.ndarray,
                           close: np.ndarray) -> Dict[str, np.ndarray]:
    """Boolean mask per pattern; multi-candle patterns end at the flagged candle"""
    open_ = np.asarray(open_, dtype=np.float64)
    high = np.asarray(high, dtype=np.float64)
    low = np.asarray(low, dtype=np.float64)
    close = np.asarray(close, dtype=np.float64)
    n = len(close)

    body = np.abs(close - open_)
    candle_range = high - low
    upper_shadow = high - np.maximum(open_, close)
    lower_shadow = np.minimum(open_, close) - low
    bullish = close > open_
    bearish = close < open_

    with np.errstate(divide='ignore', invalid='ignore'):
        has_range = candle_range > 0
        body_ratio = np.where(has_range, body / candle_range, np.inf)
        upper_ratio = np.where(has_range, upper_shadow / candle_range, np.inf)
        lower_ratio = np.where(has_range, lower_shadow / candle_range, 0.0)

    patterns = {
        'doji': has_range & (body_ratio < 0.1),
        'hammer': has_range & (body_ratio < 0.3) & (lower_ratio > 0.6) & (upper_ratio < 0.1),
    }

    engulf_up = np.zeros(n, dtype=bool)
    engulf_down = np.zeros(n, dtype=bool)
    if n >= 2:
        engulf_up[1:] = (bearish[:-1] & bullish[1:]
                         & (open_[1:] < close[:-1]) & (close[1:] > open_[:-1]))
        engulf_down[1:] = (bullish[:-1] & bearish[1:]
                           & (open_[1:] > close[:-1]) & (close[1:] < open_[:-1]))
    patterns['bullish_engulfing'] = engulf_up
    patterns['bearish_engulfing'] = engulf_down

    morning = np.zeros(n, dtype=bool)
    evening = np.zeros(n, dtype=bool)
    if n >= 3:
        first, middle, last = slice(0, -2), slice(1, -1), slice(2, None)
        small_middle = body[first] > body[middle]
        morning[2:] = (bearish[first] & small_middle
                       & (np.maximum(open_[middle], close[middle]) < close[first])
                       & bullish[last] & (close[last] > high[middle]))
        evening[2:] = (bullish[first] & small_middle
                       & (np.minimum(open_[middle], close[middle]) > close[first])
                       & bearish[last] & (close[last] < low[middle]))
    patterns['morning_star'] = morning
    patterns['evening_star'] = evening

    return patterns
