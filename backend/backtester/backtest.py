"""
Backtest Engine
Signal-driven single-position simulation with fees, slippage and SL/TP exits
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from backtester import DEFAULT_RISK_STOP_PERCENT, metrics
from backtester.data import (
    HistoricalDataSource,
    candles_to_arrays,
    filter_range,
    format_date,
    parse_date,
)
from backtester.exceptions import DataUnavailableError, InputError
from backtester.indicators import IndicatorBank
from backtester.models import (
    BacktestOptions,
    BacktestResult,
    BalanceHistoryPoint,
    Candle,
    Strategy,
    StrategyPerformance,
    Trade,
    TradeMetadata,
)
from backtester.signals import BUY, NEUTRAL, SELL, generate_signals

logger = logging.getLogger(__name__)

LONG = 'long'
SHORT = 'short'

EXIT_SIGNAL = 'signal'
EXIT_STOP_LOSS = 'stop_loss'
EXIT_TAKE_PROFIT = 'take_profit'
EXIT_END_OF_DATA = 'end_of_data'


@dataclass(frozen=True)
class Position:
    """The single open position of a run"""
    side: str
    entry_price: float
    amount: float
    entry_timestamp: int

    @property
    def notional(self) -> float:
        return self.entry_price * self.amount

    def favorable_move(self, price: float) -> float:
        """Percent move in favor of the position (negative when against)"""
        if self.side == LONG:
            return (price - self.entry_price) / self.entry_price * 100
        return (self.entry_price - price) / self.entry_price * 100


class BacktestEngine:
    """Backtest engine over one candle series (construct per run)"""

    def __init__(self, data: Dict[str, np.ndarray], indicator_bank: Optional[IndicatorBank] = None):
        self.data = data
        self.indicator_bank = indicator_bank or IndicatorBank(data)
        self.length = len(data['close'])

    def run(self, strategy: Strategy, options: BacktestOptions) -> BacktestResult:
        """Run backtest"""
        signals = generate_signals(strategy, self.data, self.indicator_bank)
        trades, balance_history = self.simulate(signals, strategy, options)
        result = self._build_result(strategy, options, trades, balance_history)
        logger.debug(
            "Backtest %s: %d trades, final balance %.2f",
            strategy.id or strategy.type, result.totalTrades, result.finalBalance,
        )
        return result

    def simulate(self, signals: np.ndarray, strategy: Strategy,
                 options: BacktestOptions) -> Tuple[List[Trade], List[BalanceHistoryPoint]]:
        """Walk the candles in order, holding at most one position"""
        close = self.data['close']
        time_arr = self.data['timestamp']
        pair = str(strategy.parameters.get('pair', ''))

        start_ts = parse_date(options.startDate) if options.startDate else int(time_arr[0])
        trades: List[Trade] = []
        balance_history = [BalanceHistoryPoint(timestamp=start_ts, balance=options.initialBalance)]

        initial_balance = options.initialBalance
        cumulative_pnl = 0.0
        position: Optional[Position] = None

        def close_position(i: int, reason: str) -> None:
            nonlocal cumulative_pnl, position
            trade = self._close(position, float(close[i]), int(time_arr[i]), reason,
                                options, pair, self._trade_id(strategy, len(trades)))
            trades.append(trade)
            cumulative_pnl += trade.pnl
            balance_history.append(
                BalanceHistoryPoint(timestamp=trade.timestamp, balance=initial_balance + cumulative_pnl)
            )
            position = None

        for i in range(self.length):
            signal = int(signals[i])

            # 1. Manage the open position
            if position is not None:
                reason = self._exit_reason(position, signal, float(close[i]), options)
                if reason:
                    close_position(i, reason)
                continue

            # 2. Entry
            if signal == NEUTRAL or i < options.warmupPeriod:
                continue
            position = self._open(signal, float(close[i]), int(time_arr[i]),
                                  initial_balance + cumulative_pnl, options)

        # Close any remaining position at the end of the data
        if position is not None:
            close_position(self.length - 1, EXIT_END_OF_DATA)

        return trades, balance_history

    @staticmethod
    def _trade_id(strategy: Strategy, index: int) -> str:
        return f"{strategy.id or 'backtest'}-{index + 1}"

    @staticmethod
    def _open(signal: int, price: float, timestamp: int, balance: float,
              options: BacktestOptions) -> Optional[Position]:
        if balance <= 0:
            logger.debug("Skipping entry at %d: balance exhausted (%.2f)", timestamp, balance)
            return None

        if options.fixedTradeAmount:
            notional = options.tradeAmount
        elif options.riskPercentage:
            # Risk a fixed share of the balance over the stop distance
            stop_distance = options.stopLoss or DEFAULT_RISK_STOP_PERCENT
            notional = balance * options.riskPercentage / stop_distance
        else:
            notional = balance * options.positionSizePercent / 100
        notional = min(notional, balance)

        side = LONG if signal == BUY else SHORT
        if side == LONG:
            entry_price = price * (1 + options.slippage)
        else:
            entry_price = price * (1 - options.slippage)

        return Position(side=side, entry_price=entry_price,
                        amount=notional / entry_price, entry_timestamp=timestamp)

    @staticmethod
    def _exit_reason(position: Position, signal: int, price: float,
                     options: BacktestOptions) -> Optional[str]:
        """Opposing signal, then stop-loss, then take-profit"""
        if (position.side == LONG and signal == SELL) or (position.side == SHORT and signal == BUY):
            return EXIT_SIGNAL

        move = position.favorable_move(price)
        if options.stopLoss is not None and -move >= options.stopLoss:
            return EXIT_STOP_LOSS
        if options.takeProfit is not None and move >= options.takeProfit:
            return EXIT_TAKE_PROFIT
        return None

    @staticmethod
    def _close(position: Position, price: float, timestamp: int, reason: str,
               options: BacktestOptions, pair: str, trade_id: str) -> Trade:
        if position.side == LONG:
            exit_price = price * (1 - options.slippage)
            gross = (exit_price - position.entry_price) * position.amount
        else:
            exit_price = price * (1 + options.slippage)
            gross = (position.entry_price - exit_price) * position.amount

        exit_notional = exit_price * position.amount
        fees = (position.notional + exit_notional) * options.feeRate
        pnl = gross - fees

        return Trade(
            id=trade_id,
            pair=pair,
            timestamp=timestamp,
            side=position.side,
            price=exit_price,
            amount=position.amount,
            total=exit_notional,
            pnl=pnl,
            pnlPercent=pnl / position.notional * 100,
            metadata=TradeMetadata(
                entryPrice=position.entry_price,
                entryTimestamp=position.entry_timestamp,
                exitReason=reason,
                fees=fees,
            ),
        )

    def _build_result(self, strategy: Strategy, options: BacktestOptions, trades: List[Trade],
                      balance_history: List[BalanceHistoryPoint]) -> BacktestResult:
        """Calculate statistics"""
        time_arr = self.data['timestamp']
        total_pnl = sum(t.pnl for t in trades)
        winning_trades = sum(1 for t in trades if t.pnl > 0)
        losing_trades = sum(1 for t in trades if t.pnl < 0)
        run_metrics = metrics.calculate_metrics(trades, balance_history, options.riskFreeRate,
                                                int(time_arr[-1]))
        daily = run_metrics.dailyReturns

        return BacktestResult(
            strategyId=strategy.id,
            startDate=options.startDate or format_date(int(time_arr[0])),
            endDate=options.endDate or format_date(int(time_arr[-1])),
            initialBalance=options.initialBalance,
            finalBalance=options.initialBalance + total_pnl,
            totalPnL=total_pnl,
            totalTrades=len(trades),
            winningTrades=winning_trades,
            losingTrades=losing_trades,
            winRate=metrics.win_rate(trades),
            maxDrawdown=metrics.max_drawdown(balance_history),
            sharpeRatio=metrics.sharpe_ratio(daily, options.riskFreeRate),
            trades=trades,
            balanceHistory=balance_history,
            metrics=run_metrics,
        )


def load_candles(pair: str, start: int, end: int, candles: Optional[Sequence[Candle]] = None,
                 data_source: Optional[HistoricalDataSource] = None,
                 timeframe: Optional[str] = None) -> List[Candle]:
    """Candles for [start, end]; an empty range is a hard error"""
    if candles is not None:
        series = filter_range(sorted(candles, key=lambda c: c.timestamp), start, end)
    elif data_source is not None:
        series = data_source.get_historical_data(pair, start, end, timeframe)
    else:
        raise InputError("No candles supplied and no historical data source configured")

    if not series:
        raise DataUnavailableError(pair, start, end)
    return list(series)


def parse_range(start_date: Optional[str], end_date: Optional[str]) -> Tuple[int, int]:
    if not start_date or not end_date:
        raise InputError("Start and end dates are required for backtesting")
    try:
        start, end = parse_date(start_date), parse_date(end_date)
    except (ValueError, TypeError) as e:
        raise InputError(f"Invalid date range {start_date!r} - {end_date!r}: {e}") from e
    if start > end:
        raise InputError(f"Start date {start_date} is after end date {end_date}")
    return start, end


def run_backtest(strategy: Strategy, options: BacktestOptions,
                 candles: Optional[Sequence[Candle]] = None,
                 data_source: Optional[HistoricalDataSource] = None) -> BacktestResult:
    """Validate the request, obtain candles and run a single backtest"""
    start, end = parse_range(options.startDate, options.endDate)

    pair = strategy.parameters.get('pair')
    if not pair:
        raise InputError("Pair is required to fetch historical data")

    series = load_candles(pair, start, end, candles=candles, data_source=data_source)
    engine = BacktestEngine(candles_to_arrays(series))
    return engine.run(strategy, options)


def attach_performance(strategy: Strategy, result: BacktestResult) -> Strategy:
    """Copy of the strategy carrying the run's performance summary"""
    return strategy.model_copy(update={
        'performance': StrategyPerformance(
            totalPnL=result.totalPnL,
            winRate=result.winRate,
            tradesCount=result.totalTrades,
        )
    })
