"""
Signal Handlers for the Backtest Engine
Each handler takes (indicator_bank, params) and returns an int8 array:
1 = BUY, -1 = SELL, 0 = NEUTRAL for every candle.
"""
import logging
from typing import Callable, Dict, List, Optional, Sequence, Union

import numpy as np
from pydantic import ValidationError

from backtester.data import candles_to_arrays
from backtester.exceptions import StrategyConfigError
from backtester.indicators import IndicatorBank
from backtester.models import (
    PARAMETER_MODELS,
    BollingerBandsParameters,
    BreakoutParameters,
    Candle,
    IchimokuParameters,
    MACDParameters,
    MACrossoverParameters,
    MultiFactorParameters,
    PatternRecognitionParameters,
    RSIParameters,
    Signal,
    Strategy,
    StrategyParameters,
    StrategyType,
)

logger = logging.getLogger(__name__)

BUY = 1
SELL = -1
NEUTRAL = 0

SIGNAL_NAMES = {BUY: Signal.BUY, SELL: Signal.SELL, NEUTRAL: Signal.NEUTRAL}

# Candles inspected by the longest candle pattern, with margin
PATTERN_LOOKBACK = 5


def _crossover(fast: np.ndarray, slow: np.ndarray) -> np.ndarray:
    """Golden cross -> BUY, death cross -> SELL (NaN never crosses)"""
    result = np.zeros(len(fast), dtype=np.int8)
    if len(fast) < 2:
        return result
    cross_up = (fast[:-1] <= slow[:-1]) & (fast[1:] > slow[1:])
    cross_down = (fast[:-1] >= slow[:-1]) & (fast[1:] < slow[1:])
    result[1:][cross_down] = SELL
    result[1:][cross_up] = BUY
    return result


# ---------------------------------------------------------------------------
# Strategy handlers
# ---------------------------------------------------------------------------

def ma_crossover(bank: IndicatorBank, params: MACrossoverParameters) -> np.ndarray:
    return _crossover(bank.sma(params.shortPeriod), bank.sma(params.longPeriod))


def rsi_reversal(bank: IndicatorBank, params: RSIParameters) -> np.ndarray:
    rsi = bank.rsi(params.period)
    result = np.zeros(bank.length, dtype=np.int8)
    if bank.length < 2:
        return result
    prev, cur = rsi[:-1], rsi[1:]
    crossed_down = (prev >= params.overbought) & (cur < params.overbought)
    crossed_up = (prev <= params.oversold) & (cur > params.oversold)
    result[1:][crossed_down] = SELL
    result[1:][crossed_up] = BUY
    return result


def breakout(bank: IndicatorBank, params: BreakoutParameters) -> np.ndarray:
    factor = params.breakoutThreshold / 100.0
    upper = bank.prior_high(params.lookbackPeriod) * (1 + factor)
    lower = bank.prior_low(params.lookbackPeriod) * (1 - factor)
    result = np.zeros(bank.length, dtype=np.int8)
    result[bank.close < lower] = SELL
    result[bank.close > upper] = BUY
    return result


def macd_crossover(bank: IndicatorBank, params: MACDParameters) -> np.ndarray:
    macd, signal_line, _ = bank.macd(params.fastPeriod, params.slowPeriod, params.signalPeriod)
    return _crossover(macd, signal_line)


def bollinger_reversion(bank: IndicatorBank, params: BollingerBandsParameters) -> np.ndarray:
    upper, _, lower = bank.bollinger(params.period, params.standardDeviations)
    result = np.zeros(bank.length, dtype=np.int8)
    result[bank.close >= upper] = SELL
    result[bank.close <= lower] = BUY
    return result


def ichimoku_cloud(bank: IndicatorBank, params: IchimokuParameters) -> np.ndarray:
    """Conversion/base line cross first, then a close breaking through the cloud"""
    conversion, base, span_a, span_b = bank.ichimoku(
        params.conversionPeriod, params.basePeriod, params.laggingSpanPeriod)
    result = _crossover(conversion, base)
    if bank.length < 2:
        return result

    cloud_top = np.fmax(span_a, span_b)[1:]
    cloud_bottom = np.fmin(span_a, span_b)[1:]
    prev_close, cur_close = bank.close[:-1], bank.close[1:]
    no_cross = result[1:] == NEUTRAL
    above = no_cross & (cur_close > cloud_top) & (prev_close <= cloud_top)
    below = no_cross & (cur_close < cloud_bottom) & (prev_close >= cloud_bottom)
    result[1:][above] = BUY
    result[1:][below] = SELL
    return result


# detected pattern -> (parameter name, direction, strength)
PATTERN_RULES = {
    'doji': ('doji', NEUTRAL, 0.5),
    'hammer': ('hammer', BUY, 0.7),
    'bullish_engulfing': ('engulfing', BUY, 0.8),
    'bearish_engulfing': ('engulfing', SELL, 0.8),
    'morning_star': ('morningstar', BUY, 0.9),
    'evening_star': ('eveningstar', SELL, 0.9),
}


def pattern_recognition(bank: IndicatorBank, params: PatternRecognitionParameters) -> np.ndarray:
    """Strongest enabled pattern per candle; earlier rules win ties"""
    enabled = set(params.patterns)
    best_strength = np.full(bank.length, -np.inf)
    best_direction = np.zeros(bank.length, dtype=np.int8)

    for name, found in bank.patterns().items():
        option, direction, strength = PATTERN_RULES[name]
        if option not in enabled:
            continue
        stronger = found & (strength > best_strength)
        best_strength[stronger] = strength
        best_direction[stronger] = direction

    return np.where(best_strength >= params.minStrength, best_direction, NEUTRAL).astype(np.int8)


def _sub_strategies(params: MultiFactorParameters) -> List[Strategy]:
    """Embedded strategies, trading the parent pair unless they name their own"""
    return [
        sub.model_copy(update={'parameters': {'pair': params.pair, **sub.parameters}})
        for sub in params.strategies
    ]


def multi_factor(bank: IndicatorBank, params: MultiFactorParameters) -> np.ndarray:
    strategies = _sub_strategies(params)
    weights = params.weights or [1.0] * len(strategies)
    if len(weights) != len(strategies):
        raise StrategyConfigError(
            f"MULTI_FACTOR needs one weight per strategy ({len(weights)} weights, {len(strategies)} strategies)")

    votes = np.array([generate_signals(sub, bank.data, bank) for sub in strategies])
    result = np.zeros(bank.length, dtype=np.int8)

    if params.operator == 'AND':
        result[(votes == BUY).all(axis=0)] = BUY
        result[(votes == SELL).all(axis=0)] = SELL
        return result

    if params.operator == 'OR':
        buy, sell = (votes == BUY).sum(axis=0), (votes == SELL).sum(axis=0)
    else:
        w = np.asarray(weights, dtype=np.float64)[:, None]
        buy, sell = (w * (votes == BUY)).sum(axis=0), (w * (votes == SELL)).sum(axis=0)
    result[buy > sell] = BUY
    result[sell > buy] = SELL
    return result


SIGNAL_HANDLERS: Dict[StrategyType, Callable[[IndicatorBank, StrategyParameters], np.ndarray]] = {
    StrategyType.MA_CROSSOVER: ma_crossover,
    StrategyType.RSI: rsi_reversal,
    StrategyType.BREAKOUT: breakout,
    StrategyType.MACD: macd_crossover,
    StrategyType.BOLLINGER_BANDS: bollinger_reversion,
    StrategyType.ICHIMOKU: ichimoku_cloud,
    StrategyType.PATTERN_RECOGNITION: pattern_recognition,
    StrategyType.MULTI_FACTOR: multi_factor,
}


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

def strategy_type(strategy: Strategy) -> Optional[StrategyType]:
    try:
        return StrategyType(strategy.type)
    except ValueError:
        return None


def resolve_parameters(strategy: Strategy) -> Optional[StrategyParameters]:
    """Typed parameter record for the strategy, None for unknown types"""
    kind = strategy_type(strategy)
    if kind is None:
        return None
    try:
        return PARAMETER_MODELS[kind](**strategy.parameters)
    except ValidationError as e:
        raise StrategyConfigError(f"Invalid parameters for {kind.value} strategy: {e}") from e


def lookback_period(strategy: Strategy, params: Optional[StrategyParameters] = None) -> int:
    """Candles an indicator needs before its first value"""
    kind = strategy_type(strategy)
    if kind is None:
        return 0
    params = params or resolve_parameters(strategy)

    if kind is StrategyType.MA_CROSSOVER:
        return max(params.shortPeriod, params.longPeriod)
    if kind is StrategyType.RSI:
        return params.period
    if kind is StrategyType.BREAKOUT:
        return params.lookbackPeriod
    if kind is StrategyType.MACD:
        return max(params.fastPeriod, params.slowPeriod) + params.signalPeriod
    if kind is StrategyType.BOLLINGER_BANDS:
        return params.period
    if kind is StrategyType.ICHIMOKU:
        return max(params.conversionPeriod, params.basePeriod, params.laggingSpanPeriod) + params.displacement
    if kind is StrategyType.PATTERN_RECOGNITION:
        return PATTERN_LOOKBACK
    if kind is StrategyType.MULTI_FACTOR:
        return max(lookback_period(sub) for sub in _sub_strategies(params))
    raise AssertionError(f"No lookback defined for {kind}")


def min_candles(strategy: Strategy, params: Optional[StrategyParameters] = None) -> int:
    """History needed to compare the current value with the previous one"""
    return lookback_period(strategy, params) + 2


def generate_signals(strategy: Strategy, data: Dict[str, np.ndarray],
                     bank: Optional[IndicatorBank] = None) -> np.ndarray:
    """Signal for every candle; entry i only looks at candles 0..i"""
    length = len(data['close'])
    kind = strategy_type(strategy)
    if kind is None:
        logger.debug("Unknown strategy type %r, emitting no signals", strategy.type)
        return np.zeros(length, dtype=np.int8)

    params = resolve_parameters(strategy)
    bank = bank or IndicatorBank(data)
    signals = SIGNAL_HANDLERS[kind](bank, params).astype(np.int8)

    # Not enough history -> NEUTRAL
    signals[:min(length, min_candles(strategy, params) - 1)] = NEUTRAL
    return signals


def generate_signal(strategy: Strategy,
                    candles: Union[Sequence[Candle], Dict[str, np.ndarray]]) -> Signal:
    """Signal at the last of `candles` (the window up to and including t)"""
    data = candles if isinstance(candles, dict) else candles_to_arrays(candles)
    if len(data['close']) == 0:
        return Signal.NEUTRAL
    return SIGNAL_NAMES[int(generate_signals(strategy, data)[-1])]


def combine_strategies(strategies: Sequence[Strategy], rule: str = 'WEIGHTED',
                       weights: Optional[Sequence[float]] = None, name: str = '') -> Strategy:
    """MULTI_FACTOR strategy voting with `strategies` on the first one's pair"""
    if not strategies:
        raise StrategyConfigError("Cannot combine an empty list of strategies")

    combined = Strategy(
        id='+'.join(s.id for s in strategies if s.id),
        name=name or ' + '.join(s.name or s.type for s in strategies),
        type=StrategyType.MULTI_FACTOR.value,
        parameters={
            'pair': strategies[0].parameters.get('pair', ''),
            'strategies': [s.model_dump(exclude_none=True) for s in strategies],
            'operator': rule,
            **({'weights': list(weights)} if weights is not None else {}),
        },
    )
    resolve_parameters(combined)
    return combined
