"""Unit tests for TrendAnalyzer."""

import random

import pytest

from mandi.src.models import Trend, VolatilityLevel
from mandi.src.TrendAnalyzer import (
    TrendAnalyzer,
    classify_volatility,
    linear_regression,
    moving_average,
)


class TestHelpers:
    """Test the regression and moving-average helpers."""

    def test_perfect_line(self) -> None:
        slope, corr = linear_regression([1, 2, 3, 4], [10, 20, 30, 40])
        assert slope == pytest.approx(10.0)
        assert corr == pytest.approx(1.0)

    def test_constant_series(self) -> None:
        assert linear_regression([1, 2, 3], [5, 5, 5]) == (0.0, 0.0)
        assert linear_regression([1, 1, 1], [1, 2, 3]) == (0.0, 0.0)
        assert linear_regression([1], [1]) == (0.0, 0.0)

    def test_moving_average_short_series(self) -> None:
        """With fewer points than the period, all points are averaged."""
        assert moving_average([4, 2, 6, 8], 2) == 3
        assert moving_average([4, 2, 6], 14) == 4


class TestClassifyVolatility:
    """Test the volatility buckets."""

    @pytest.mark.parametrize(
        "value,level",
        [
            (0.0, VolatilityLevel.LOW),
            (0.049, VolatilityLevel.LOW),
            (0.05, VolatilityLevel.MEDIUM),
            (0.149, VolatilityLevel.MEDIUM),
            (0.15, VolatilityLevel.HIGH),
            (0.9, VolatilityLevel.HIGH),
        ],
    )
    def test_levels(self, value, level) -> None:
        assert classify_volatility(value) is level


class TestAnalyzeTrend:
    """Test trend analysis over history."""

    def test_too_few_points(self, make_history) -> None:
        """Fewer than 7 points gives a default stable result."""
        result = TrendAnalyzer().analyze_trend("Wheat", make_history([2000, 2100, 2200]))
        assert result.trend is Trend.STABLE
        assert result.change_percent == 0.0
        assert result.prediction.confidence == 0.1
        assert result.prediction.next_period == 0.0

    def test_empty_history(self) -> None:
        result = TrendAnalyzer().analyze_trend("Wheat", [])
        assert result.trend is Trend.STABLE
        assert result.prediction.confidence == 0.1

    def test_rising(self, make_history) -> None:
        """A steady climb of 20/day over 14 days is rising."""
        # Newest first: 2260 today, 2240 yesterday, ...
        history = make_history([2260 - 20 * k for k in range(14)])
        result = TrendAnalyzer().analyze_trend("Wheat", history)

        assert result.trend is Trend.RISING
        # short MA 2200, long MA 2130
        assert result.change_percent == pytest.approx(3.29, abs=0.01)
        assert result.volatility == pytest.approx(0.03785, abs=1e-4)
        # 2260 + 20 * 7 + (2200 - 2260) * 0.3
        assert result.prediction.next_period == pytest.approx(2382.0)
        assert result.prediction.confidence == pytest.approx(1 - 2 * result.volatility, abs=1e-3)

    def test_falling(self, make_history) -> None:
        history = make_history([1740 + 20 * k for k in range(14)])
        result = TrendAnalyzer().analyze_trend("Wheat", history)

        assert result.trend is Trend.FALLING
        assert result.change_percent < -2
        assert result.prediction.next_period < 1740

    def test_flat(self, make_history) -> None:
        history = make_history([2000.0] * 10)
        result = TrendAnalyzer().analyze_trend("Wheat", history)

        assert result.trend is Trend.STABLE
        assert result.change_percent == 0.0
        assert result.volatility == 0.0
        assert result.prediction.next_period == 2000.0
        assert result.prediction.confidence == 0.1

    def test_small_change_is_stable(self, make_history) -> None:
        """A perfectly correlated but tiny drift stays stable."""
        history = make_history([2013 - k for k in range(14)])
        result = TrendAnalyzer().analyze_trend("Wheat", history)

        assert abs(result.change_percent) < 2
        assert result.trend is Trend.STABLE

    def test_input_order_does_not_matter(self, make_history) -> None:
        history = make_history([2260 - 20 * k for k in range(14)])
        shuffled = list(history)
        random.Random(7).shuffle(shuffled)

        analyzer = TrendAnalyzer()
        assert analyzer.analyze_trend("Wheat", shuffled) == analyzer.analyze_trend(
            "Wheat", history
        )

    def test_prediction_never_negative(self, make_history) -> None:
        history = make_history([50 + 100 * k for k in range(14)])
        result = TrendAnalyzer().analyze_trend("Wheat", history)
        assert result.trend is Trend.FALLING
        assert result.prediction.next_period == 0.0


class TestClassify:
    """Test direction classification."""

    def test_rules(self) -> None:
        classify = TrendAnalyzer.classify
        assert classify(10.0, 5.0, 0.9) is Trend.RISING
        assert classify(-10.0, -5.0, -0.9) is Trend.FALLING
        assert classify(10.0, 1.9, 0.9) is Trend.STABLE
        assert classify(10.0, 5.0, 0.29) is Trend.STABLE
        assert classify(10.0, -5.0, 0.9) is Trend.STABLE
