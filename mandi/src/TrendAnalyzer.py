"""TrendAnalyzer: Regression-based trend and next-period prediction.

Algorithm:
    1. Order history newest first; fewer than 7 points gives a default
       stable result with confidence 0.1
    2. Linear regression of price over time (x in days) gives the slope
       (price change per day) and the Pearson correlation
    3. 7- and 14-point simple moving averages of the most recent prices give
       change_percent = (short - long) / long * 100
    4. Stable if |change| < 2% or |correlation| < 0.3; otherwise rising or
       falling when slope and change agree in sign
    5. next_period = current + slope * 7 + (short - current) * 0.3
       confidence = max(0.1, |correlation| - min(volatility * 2, 0.8))
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from statistics import mean as _mean

from .models import HistoryEntry, Prediction, Trend, TrendResult, VolatilityLevel
from .PriceAggregator import coefficient_of_variation

MIN_POINTS = 7
SHORT_WINDOW = 7
LONG_WINDOW = 14
PREDICTION_DAYS = 7
MEAN_REVERSION = 0.3
STABLE_CHANGE_PERCENT = 2.0
MIN_CORRELATION = 0.3
MIN_CONFIDENCE = 0.1


def linear_regression(xs: Sequence[float], ys: Sequence[float]) -> tuple[float, float]:
    """Least-squares slope and Pearson correlation.

    :returns: (slope, correlation); both 0.0 when either variable is constant.
    """
    n = len(xs)
    if n < 2:
        return 0.0, 0.0
    mean_x = sum(xs) / n
    mean_y = sum(ys) / n
    sxx = sum((x - mean_x) ** 2 for x in xs)
    syy = sum((y - mean_y) ** 2 for y in ys)
    sxy = sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys))
    if sxx == 0:
        return 0.0, 0.0
    slope = sxy / sxx
    if syy == 0:
        return slope, 0.0
    return slope, sxy / math.sqrt(sxx * syy)


def moving_average(prices: Sequence[float], period: int) -> float:
    """Mean of the first ``period`` prices (all of them if fewer)."""
    return _mean(prices[:period])


def classify_volatility(volatility: float) -> VolatilityLevel:
    """Bucket a volatility ratio: low < 0.05 <= medium < 0.15 <= high."""
    if volatility < 0.05:
        return VolatilityLevel.LOW
    if volatility < 0.15:
        return VolatilityLevel.MEDIUM
    return VolatilityLevel.HIGH


class TrendAnalyzer:
    """Computes trend direction, volatility and a next-period prediction."""

    def analyze_trend(
        self, commodity: str, history: Sequence[HistoryEntry]
    ) -> TrendResult:
        """Analyze a commodity's price history.

        :param commodity: Commodity name.
        :param history: History entries in any order.
        :returns: TrendResult; a default stable result with confidence 0.1
            when fewer than 7 points are available.
        """
        points = sorted(
            (h for h in history if math.isfinite(h.price) and h.price > 0),
            key=lambda h: h.date,
            reverse=True,
        )
        if len(points) < MIN_POINTS:
            return TrendResult(
                commodity=commodity,
                trend=Trend.STABLE,
                change_percent=0.0,
                volatility=0.0,
                prediction=Prediction(next_period=0.0, confidence=MIN_CONFIDENCE),
            )

        prices = [h.price for h in points]
        xs = [float(h.date.toordinal()) for h in points]
        slope, correlation = linear_regression(xs, prices)

        short_ma = moving_average(prices, SHORT_WINDOW)
        long_ma = moving_average(prices, LONG_WINDOW)
        change_percent = (short_ma - long_ma) / long_ma * 100 if long_ma else 0.0

        volatility = coefficient_of_variation(prices)
        trend = self.classify(slope, change_percent, correlation)

        current = prices[0]
        next_period = max(
            0.0,
            current + slope * PREDICTION_DAYS + (short_ma - current) * MEAN_REVERSION,
        )
        confidence = max(
            MIN_CONFIDENCE, abs(correlation) - min(volatility * 2, 0.8)
        )

        return TrendResult(
            commodity=commodity,
            trend=trend,
            change_percent=round(change_percent, 2),
            volatility=volatility,
            prediction=Prediction(
                next_period=round(next_period, 2),
                confidence=round(confidence, 4),
            ),
        )

    @staticmethod
    def classify(slope: float, change_percent: float, correlation: float) -> Trend:
        """Classify the direction from regression and moving averages."""
        if abs(change_percent) < STABLE_CHANGE_PERCENT or abs(correlation) < MIN_CORRELATION:
            return Trend.STABLE
        if slope > 0 and change_percent > 0:
            return Trend.RISING
        if slope < 0 and change_percent < 0:
            return Trend.FALLING
        return Trend.STABLE
