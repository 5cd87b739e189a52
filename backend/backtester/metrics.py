"""
Performance Metrics
Derived from the trade ledger and the balance history of a run
"""
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from backtester.models import BacktestMetrics, BalanceHistoryPoint, Ratio, Trade, Unbounded

# Below this the return series is treated as flat
_ZERO_VOLATILITY = 1e-12


def win_rate(trades: Sequence[Trade]) -> float:
    if not trades:
        return 0.0
    return sum(1 for t in trades if t.pnl > 0) / len(trades)


def max_drawdown(balance_history: Sequence[BalanceHistoryPoint]) -> float:
    """Largest decline from a running peak, in percent of that peak"""
    peak = None
    worst = 0.0
    for point in balance_history:
        if peak is None or point.balance > peak:
            peak = point.balance
        if peak > 0:
            worst = max(worst, (peak - point.balance) / peak * 100)
    return worst


def _period_returns(balance_history: Sequence[BalanceHistoryPoint], freq: str,
                    end_timestamp: Optional[int] = None) -> List[float]:
    """Percent change between the closing balances of consecutive UTC periods.

    Periods without a balance change carry the previous closing balance, so
    every calendar period between the first point and `end_timestamp` (or the
    last point) counts, including flat ones.
    """
    if not balance_history:
        return []

    timestamps = [p.timestamp for p in balance_history]
    balances = [p.balance for p in balance_history]
    if end_timestamp is not None and end_timestamp > timestamps[-1]:
        timestamps.append(end_timestamp)
        balances.append(balances[-1])

    index = pd.to_datetime(timestamps, unit='ms', utc=True)
    series = pd.Series(balances, index=index, dtype=np.float64)
    closing = series.resample(freq).last().ffill().to_numpy(dtype=np.float64)

    if len(closing) < 2:
        return []
    previous, current = closing[:-1], closing[1:]
    with np.errstate(divide='ignore', invalid='ignore'):
        returns = (current - previous) / previous * 100
    return [float(r) for r in returns if np.isfinite(r)]


def daily_returns(balance_history: Sequence[BalanceHistoryPoint],
                  end_timestamp: Optional[int] = None) -> List[float]:
    return _period_returns(balance_history, 'D', end_timestamp)


def monthly_returns(balance_history: Sequence[BalanceHistoryPoint],
                    end_timestamp: Optional[int] = None) -> List[float]:
    return _period_returns(balance_history, 'MS', end_timestamp)


def volatility(returns: Sequence[float]) -> float:
    """Population standard deviation"""
    if len(returns) < 2:
        return 0.0
    return float(np.std(np.asarray(returns, dtype=np.float64)))


def sharpe_ratio(returns: Sequence[float], risk_free_rate: float = 0.0) -> float:
    """Mean daily excess return over daily volatility (annual risk-free rate as a fraction)"""
    if len(returns) < 2:
        return 0.0
    vol = volatility(returns)
    if vol < _ZERO_VOLATILITY:
        return 0.0
    daily_risk_free = risk_free_rate / 365 * 100
    return float((np.mean(returns) - daily_risk_free) / vol)


def profit_factor(trades: Sequence[Trade]) -> Ratio:
    total_wins = sum(t.pnl for t in trades if t.pnl > 0)
    total_losses = sum(t.pnl for t in trades if t.pnl < 0)
    if total_losses != 0:
        return abs(total_wins / total_losses)
    return Unbounded.INFINITY if total_wins > 0 else 0.0


def recovery_factor(total_pnl: float, drawdown: float) -> Ratio:
    """Profit per percent of drawdown; unbounded when the balance never drew down"""
    if drawdown == 0:
        return Unbounded.INFINITY
    return total_pnl / drawdown


def _mean(values: Sequence[float]) -> float:
    return float(np.mean(values)) if len(values) else 0.0


def calculate_metrics(trades: Sequence[Trade], balance_history: Sequence[BalanceHistoryPoint],
                      risk_free_rate: float = 0.0, end_timestamp: Optional[int] = None) -> BacktestMetrics:
    """Calculate the detailed metrics block of a backtest result

    `end_timestamp` extends the return series to the end of the run when it
    finishes after the last balance change.
    """
    wins = [t.pnl for t in trades if t.pnl > 0]
    losses = [t.pnl for t in trades if t.pnl < 0]
    total_pnl = sum(t.pnl for t in trades)
    daily = daily_returns(balance_history, end_timestamp)
    monthly = monthly_returns(balance_history, end_timestamp)

    return BacktestMetrics(
        dailyReturns=daily,
        monthlyReturns=monthly,
        volatility=volatility(daily),
        profitFactor=profit_factor(trades),
        recoveryFactor=recovery_factor(total_pnl, max_drawdown(balance_history)),
        averageWin=_mean(wins),
        averageLoss=_mean(losses),
        averageTrade=_mean([t.pnl for t in trades]),
        largestWin=max(wins) if wins else 0.0,
        largestLoss=min(losses) if losses else 0.0,
        averageHoldingPeriod=_mean([t.timestamp - t.metadata.entryTimestamp for t in trades]),
        bestMonth=max(monthly) if monthly else 0.0,
        worstMonth=min(monthly) if monthly else 0.0,
    )
