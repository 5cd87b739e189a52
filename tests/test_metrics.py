"""Tests for performance metrics."""
import pytest

from backtester.data import parse_date
from backtester.metrics import (
    calculate_metrics,
    daily_returns,
    max_drawdown,
    monthly_returns,
    profit_factor,
    recovery_factor,
    sharpe_ratio,
    volatility,
    win_rate,
)
from backtester.models import BalanceHistoryPoint, Trade, TradeMetadata, Unbounded

from conftest import DAY_MS


def trade(pnl, entry_ts=0, exit_ts=DAY_MS):
    return Trade(
        id="t", pair="BTC/USDT", timestamp=exit_ts, side="long", price=1.0, amount=1.0,
        total=1.0, pnl=pnl, pnlPercent=pnl,
        metadata=TradeMetadata(entryPrice=1.0, entryTimestamp=entry_ts, exitReason="signal"),
    )


def history(*points):
    return [BalanceHistoryPoint(timestamp=parse_date(ts), balance=b) for ts, b in points]


class TestRatios:
    def test_profit_factor(self):
        assert profit_factor([trade(30), trade(-10), trade(-5)]) == pytest.approx(2.0)

    def test_profit_factor_without_losses(self):
        assert profit_factor([trade(30)]) is Unbounded.INFINITY
        assert profit_factor([]) == 0.0
        assert profit_factor([trade(0)]) == 0.0

    def test_recovery_factor(self):
        assert recovery_factor(200.0, 10.0) == pytest.approx(20.0)
        assert recovery_factor(200.0, 0.0) is Unbounded.INFINITY
        assert recovery_factor(0.0, 0.0) is Unbounded.INFINITY
        assert recovery_factor(-50.0, 0.0) is Unbounded.INFINITY

    def test_win_rate(self):
        assert win_rate([]) == 0.0
        assert win_rate([trade(1), trade(-1), trade(0), trade(2)]) == pytest.approx(0.5)


class TestDrawdown:
    def test_percent_of_running_peak(self):
        points = history(("2024-01-01", 100), ("2024-01-02", 120), ("2024-01-03", 90), ("2024-01-04", 130))
        assert max_drawdown(points) == pytest.approx(25.0)

    def test_monotonic_growth(self):
        assert max_drawdown(history(("2024-01-01", 100), ("2024-01-02", 110))) == 0.0


class TestReturns:
    def test_daily_returns_use_last_balance_of_day(self):
        points = history(
            ("2024-01-01", 100),
            ("2024-01-02T08:00:00", 150),
            ("2024-01-02T20:00:00", 110),
            ("2024-01-03", 99),
        )
        assert daily_returns(points) == pytest.approx([10.0, -10.0])

    def test_monthly_returns(self):
        points = history(("2024-01-01", 100), ("2024-01-20", 105), ("2024-02-10", 126))
        assert monthly_returns(points) == pytest.approx([20.0])

    def test_days_without_changes_are_flat(self):
        points = history(("2024-01-01", 100), ("2024-01-04", 110))
        assert daily_returns(points) == pytest.approx([0.0, 0.0, 10.0])

    def test_extends_to_end_of_run(self):
        points = history(("2024-01-01", 100), ("2024-01-02", 110))
        assert daily_returns(points, parse_date("2024-01-04")) == pytest.approx([10.0, 0.0, 0.0])
        assert daily_returns(points, parse_date("2023-12-31")) == pytest.approx([10.0])

    def test_months_without_changes_are_flat(self):
        points = history(("2024-01-15", 100), ("2024-03-02", 80))
        assert monthly_returns(points) == pytest.approx([0.0, -20.0])

    def test_single_day_has_no_returns(self):
        assert daily_returns(history(("2024-01-01", 100), ("2024-01-01T12:00:00", 90))) == []

    def test_volatility_is_population_std(self):
        assert volatility([1.0, 3.0]) == pytest.approx(1.0)
        assert volatility([5.0]) == 0.0


class TestSharpe:
    def test_too_few_returns(self):
        assert sharpe_ratio([]) == 0.0
        assert sharpe_ratio([1.0]) == 0.0

    def test_flat_returns(self):
        assert sharpe_ratio([0.5, 0.5, 0.5]) == 0.0

    def test_mean_over_volatility(self):
        assert sharpe_ratio([1.0, 3.0]) == pytest.approx(2.0)

    def test_risk_free_rate_is_annual_fraction(self):
        assert sharpe_ratio([1.0, 3.0], risk_free_rate=0.365) == pytest.approx(1.9)


def test_calculate_metrics():
    trades = [trade(50, 0, 2 * DAY_MS), trade(-20, 3 * DAY_MS, 4 * DAY_MS)]
    points = history(("2024-01-01", 1000), ("2024-01-03", 1050), ("2024-01-05", 1030))
    result = calculate_metrics(trades, points)
    assert result.averageWin == pytest.approx(50.0)
    assert result.averageLoss == pytest.approx(-20.0)
    assert result.averageTrade == pytest.approx(15.0)
    assert result.largestWin == pytest.approx(50.0)
    assert result.largestLoss == pytest.approx(-20.0)
    assert result.profitFactor == pytest.approx(2.5)
    assert result.averageHoldingPeriod == pytest.approx(1.5 * DAY_MS)
    assert result.dailyReturns == pytest.approx([0.0, 5.0, 0.0, -20 / 1050 * 100])
    assert result.monthlyReturns == []
    assert result.bestMonth == 0.0


def test_empty_ledger():
    result = calculate_metrics([], history(("2024-01-01", 1000)))
    assert result.profitFactor == 0.0
    assert result.recoveryFactor is Unbounded.INFINITY
    assert result.dailyReturns == []
    assert result.volatility == 0.0
