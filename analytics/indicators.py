import math
from typing import List, Optional, Sequence, Union

import numpy as np

from analytics.models import PiCycleIndicator, Sample

SHORT_PERIOD = 111
LONG_PERIOD = 350
LONG_MULTIPLIER = 2.0
TREND_WINDOW = 30

SeriesLike = Union[Sequence[Sample], Sequence[float], np.ndarray]


def _as_prices(series: SeriesLike) -> np.ndarray:
    if isinstance(series, np.ndarray):
        return series.astype(float, copy=False)
    if len(series) and isinstance(series[0], Sample):
        return np.fromiter((s.price for s in series), dtype=float, count=len(series))
    return np.asarray(series, dtype=float)


def sma(series: SeriesLike, period: int) -> float:
    """Simple moving average of the last ``period`` values.

    Returns 0.0 when fewer than ``period`` values exist; callers treat 0.0 as undefined.
    """
    if period <= 0:
        raise ValueError("period must be positive")
    prices = _as_prices(series)
    if len(prices) < period:
        return 0.0
    return float(np.sum(prices[-period:]) / period)


def _trend_rate(points: List[float]) -> float:
    if len(points) < 2:
        return 0.0
    return (points[-1] - points[0]) / len(points)


class PiCycleEngine:
    """Pi-Cycle Top crossover: short SMA against a multiple of the long SMA.

    Stateless; every call recomputes from the series it is given.
    """

    def __init__(
        self,
        short_period: int = SHORT_PERIOD,
        long_period: int = LONG_PERIOD,
        long_multiplier: float = LONG_MULTIPLIER,
        trend_window: int = TREND_WINDOW,
    ):
        if short_period <= 0 or long_period <= 0:
            raise ValueError("SMA periods must be positive")
        if trend_window < 2:
            raise ValueError("trend_window must be at least 2")
        self.short_period = short_period
        self.long_period = long_period
        self.long_multiplier = float(long_multiplier)
        self.trend_window = trend_window

    def _pair(self, prices: np.ndarray):
        return sma(prices, self.short_period), sma(prices, self.long_period) * self.long_multiplier

    def compute(self, history: SeriesLike) -> Optional[PiCycleIndicator]:
        prices = _as_prices(history)
        short_avg, long_avg = self._pair(prices)
        if short_avg == 0.0 or long_avg == 0.0:
            return None

        distance_pct = (short_avg / long_avg - 1.0) * 100.0
        return PiCycleIndicator(
            sma111=short_avg,
            sma350x2=long_avg,
            distance_pct=distance_pct,
            days_to_top=self._days_to_top(prices, short_avg, long_avg),
        )

    def _days_to_top(self, prices: np.ndarray, short_avg: float, long_avg: float) -> Optional[int]:
        window = min(self.trend_window, len(prices))
        short_trend: List[float] = []
        long_trend: List[float] = []
        for offset in range(window):
            end = len(prices) - window + offset + 1
            short_val, long_val = self._pair(prices[:end])
            # Points where either average is still undefined would fake a slope.
            if short_val == 0.0 or long_val == 0.0:
                continue
            short_trend.append(short_val)
            long_trend.append(long_val)

        if len(short_trend) < 2:
            return None

        gap = long_avg - short_avg
        gap_rate = _trend_rate(short_trend) - _trend_rate(long_trend)
        if gap_rate == 0:
            return None
        days = math.ceil(gap / gap_rate)
        return days if days > 0 else None


_default_engine = PiCycleEngine()


def compute_pi_cycle(history: SeriesLike) -> Optional[PiCycleIndicator]:
    """Pi-Cycle Top with the standard 111 / 350x2 parameters."""
    return _default_engine.compute(history)
