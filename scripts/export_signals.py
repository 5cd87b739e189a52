#!/usr/bin/env python3
"""
Dump indicator and signal values of a strategy over a CSV, bar by bar,
for comparison with a charting platform.
Usage: python scripts/export_signals.py BTC_USDT.csv MA_CROSSOVER shortPeriod=10 longPeriod=50
"""
import sys
from pathlib import Path

import numpy as np
import pandas as pd

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))
from backtester.data import candles_to_arrays, format_date, parse_candle_frame
from backtester.indicators import IndicatorBank
from backtester.models import Strategy, StrategyType
from backtester.signals import SIGNAL_NAMES, generate_signals, resolve_parameters


def _parse_params(args):
    params = {'pair': 'CSV'}
    for arg in args:
        name, _, value = arg.partition('=')
        params[name] = float(value) if '.' in value else int(value)
    return params


def _indicator_columns(strategy, bank):
    params = resolve_parameters(strategy)
    kind = StrategyType(strategy.type)
    if kind is StrategyType.MA_CROSSOVER:
        return {'short': bank.sma(params.shortPeriod), 'long': bank.sma(params.longPeriod)}
    if kind is StrategyType.RSI:
        return {'rsi': bank.rsi(params.period)}
    if kind is StrategyType.MACD:
        macd, signal, hist = bank.macd(params.fastPeriod, params.slowPeriod, params.signalPeriod)
        return {'macd': macd, 'signal': signal, 'hist': hist}
    if kind is StrategyType.BOLLINGER_BANDS:
        upper, middle, lower = bank.bollinger(params.period, params.standardDeviations)
        return {'upper': upper, 'middle': middle, 'lower': lower}
    if kind is StrategyType.ICHIMOKU:
        lines = bank.ichimoku(params.conversionPeriod, params.basePeriod, params.laggingSpanPeriod)
        return dict(zip(('conversion', 'base', 'span_a', 'span_b'), lines))
    if kind is StrategyType.PATTERN_RECOGNITION:
        return {name: found.astype(float) for name, found in bank.patterns().items()}
    if kind is StrategyType.MULTI_FACTOR:
        return {}
    return {'high': bank.prior_high(params.lookbackPeriod), 'low': bank.prior_low(params.lookbackPeriod)}


def main():
    csv_path = sys.argv[1] if len(sys.argv) > 1 else "BTC_USDT.csv"
    strategy_type = sys.argv[2] if len(sys.argv) > 2 else "MA_CROSSOVER"
    strategy = Strategy(id="export", type=strategy_type, parameters=_parse_params(sys.argv[3:]))

    data = candles_to_arrays(parse_candle_frame(pd.read_csv(csv_path)))
    bank = IndicatorBank(data)
    signals = generate_signals(strategy, data, bank)
    columns = _indicator_columns(strategy, bank)

    header = " | ".join(f"{name:>11}" for name in columns)
    print(f"date       | close       | {header} | signal")
    print("-" * (40 + 14 * len(columns)))

    for i in range(len(data['close'])):
        values = " | ".join(
            f"{v:11.4f}" if not np.isnan(v) else f"{'nan':>11}"
            for v in (col[i] for col in columns.values())
        )
        signal = SIGNAL_NAMES[int(signals[i])].value
        marker = " <--" if signals[i] else ""
        print(f"{format_date(int(data['timestamp'][i]))} | {data['close'][i]:11.4f} | {values} | {signal}{marker}")


if __name__ == "__main__":
    main()
