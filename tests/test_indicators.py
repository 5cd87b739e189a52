"""Tests for technical indicators."""
import numpy as np
import pytest

from backtester.indicators import (
    IndicatorBank,
    calculate_bollinger_bands,
    calculate_ema,
    calculate_ichimoku,
    calculate_macd,
    calculate_prior_high,
    calculate_prior_low,
    calculate_rsi,
    calculate_sma,
    detect_candle_patterns,
    ema,
    rsi,
    sma,
)


class TestMovingAverages:
    def test_sma_series_is_nan_until_window_fills(self):
        result = calculate_sma(np.array([1.0, 2.0, 3.0, 4.0, 5.0]), 3)
        assert np.isnan(result[:2]).all()
        np.testing.assert_allclose(result[2:], [2.0, 3.0, 4.0])

    def test_sma_series_shorter_than_period(self):
        assert np.isnan(calculate_sma(np.array([1.0, 2.0]), 3)).all()

    def test_scalar_sma_uses_last_window(self):
        assert sma([1.0, 2.0, 3.0, 4.0], 2) == pytest.approx(3.5)

    def test_scalar_sma_short_window_is_zero(self):
        assert sma([1.0, 2.0], 3) == 0.0

    def test_ema_seeded_with_sma(self):
        result = calculate_ema(np.array([1.0, 2.0, 3.0, 4.0, 5.0]), 3)
        assert np.isnan(result[:2]).all()
        np.testing.assert_allclose(result[2:], [2.0, 3.0, 4.0])
        assert ema([1.0, 2.0, 3.0, 4.0, 5.0], 3) == pytest.approx(4.0)

    def test_scalar_ema_short_window_is_zero(self):
        assert ema([1.0], 3) == 0.0


class TestRSI:
    def test_insufficient_history_is_neutral(self):
        assert rsi([1.0, 2.0, 3.0], 14) == 50.0
        assert rsi([float(i) for i in range(15)], 14) != 50.0

    def test_only_gains_is_100(self):
        assert rsi([float(i) for i in range(30)], 14) == pytest.approx(100.0)

    def test_balanced_moves_start_at_50(self):
        result = calculate_rsi(np.array([1.0, 2.0, 1.0, 2.0, 1.0]), 2)
        assert np.isnan(result[:2]).all()
        assert result[2] == pytest.approx(50.0)

    def test_bounded(self, wave_closes):
        result = calculate_rsi(np.array(wave_closes), 14)
        valid = result[~np.isnan(result)]
        assert len(valid) == len(wave_closes) - 14
        assert ((valid >= 0) & (valid <= 100)).all()


class TestMACD:
    def test_flat_series_has_zero_lines(self):
        macd, signal, hist = calculate_macd(np.full(40, 100.0), 3, 6, 2)
        assert np.isnan(macd[4])
        assert macd[5] == pytest.approx(0.0)
        assert np.isnan(signal[5])
        assert signal[6] == pytest.approx(0.0)
        assert hist[6] == pytest.approx(0.0)

    def test_too_short_for_signal(self):
        _, signal, _ = calculate_macd(np.arange(6, dtype=float), 3, 6, 2)
        assert np.isnan(signal).all()


class TestBollingerBands:
    def test_flat_series_collapses_bands(self):
        upper, middle, lower = calculate_bollinger_bands(np.full(10, 5.0), 4, 2.0)
        np.testing.assert_allclose(upper[3:], 5.0)
        np.testing.assert_allclose(middle[3:], 5.0)
        np.testing.assert_allclose(lower[3:], 5.0)

    def test_bands_bracket_middle(self, wave_closes):
        upper, middle, lower = calculate_bollinger_bands(np.array(wave_closes), 20, 2.0)
        valid = ~np.isnan(middle)
        assert (upper[valid] >= middle[valid]).all()
        assert (lower[valid] <= middle[valid]).all()


class TestPriorExtremes:
    def test_excludes_current_candle(self):
        values = np.array([1.0, 5.0, 2.0, 3.0, 4.0])
        high = calculate_prior_high(values, 2)
        low = calculate_prior_low(values, 2)
        assert np.isnan(high[:2]).all()
        np.testing.assert_allclose(high[2:], [5.0, 5.0, 3.0])
        np.testing.assert_allclose(low[2:], [1.0, 2.0, 2.0])


class TestIchimoku:
    def test_midpoints_include_current_candle(self):
        high = np.array([2.0, 4.0, 6.0, 8.0])
        low = np.array([1.0, 1.0, 3.0, 5.0])
        conversion, base, span_a, span_b = calculate_ichimoku(high, low, 1, 2, 3)
        np.testing.assert_allclose(conversion, [1.5, 2.5, 4.5, 6.5])
        assert np.isnan(base[0])
        np.testing.assert_allclose(base[1:], [2.5, 3.5, 5.5])
        np.testing.assert_allclose(span_a[1:], [2.5, 4.0, 6.0])
        np.testing.assert_allclose(span_b[2:], [3.5, 4.5])


class TestCandlePatterns:
    def test_zero_range_candle_matches_nothing(self):
        found = detect_candle_patterns([5.0], [5.0], [5.0], [5.0])
        assert not any(mask[0] for mask in found.values())

    def test_single_candle_patterns_only(self):
        found = detect_candle_patterns([100.0], [100.5], [90.0], [100.2])
        assert found["doji"][0] and found["hammer"][0]
        assert not found["bullish_engulfing"].any()
        assert not found["morning_star"].any()


class TestIndicatorBank:
    def test_caches_per_parameter_set(self, wave_data):
        bank = IndicatorBank(wave_data)
        assert bank.sma(5) is bank.sma(5)
        assert bank.sma(5) is not bank.sma(6)
        np.testing.assert_allclose(bank.ema(10), calculate_ema(wave_data['close'], 10))
        assert bank.macd(12, 26, 9)[0] is bank.macd(12, 26, 9)[0]
        assert 'sma_5' in bank.indicators
        assert 'macd_signal_12_26_9' in bank.indicators

    def test_pattern_masks_are_cached(self, wave_data):
        bank = IndicatorBank(wave_data)
        assert bank.patterns()["doji"] is bank.patterns()["doji"]
        assert bank.ichimoku(9, 26, 52)[0] is bank.ichimoku(9, 26, 52)[0]
        assert 'ichimoku_span_b_9_26_52' in bank.indicators
