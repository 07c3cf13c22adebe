"""
Rolling price-trend tracking for hedge decisions.

Each (period, token) keeps a bounded window of (elapsed_seconds, price)
samples. The trend is a least-squares slope scaled into a [0, 1] strength,
discounted by how consistently the prices hug the fitted line.
"""

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

SLOPE_THRESHOLD = 0.0001
PRICE_CHANGE_THRESHOLD = 0.01
SLOPE_SCALE = 1000.0


class TrendDirection(Enum):
    UP = "up"
    DOWN = "down"
    SIDEWAYS = "sideways"
    UNKNOWN = "unknown"


@dataclass
class TrendAnalysis:
    direction: TrendDirection
    strength: float
    slope: float
    price_change: float
    sample_count: int


class PriceTrendTracker:
    """Bounded window of price samples for one token in one period."""

    def __init__(self, max_history: int = 60):
        self.max_history = max_history
        self._samples: deque[tuple[int, float]] = deque(maxlen=max_history)

    def add_price(self, elapsed_seconds: int, price: float) -> None:
        self._samples.append((elapsed_seconds, price))

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    def clear(self) -> None:
        self._samples.clear()

    def calculate_trend(self, min_samples: int = 10) -> TrendAnalysis:
        """
        Fit a line through the samples and classify it.

        Args:
            min_samples: Fewer samples than this yields UNKNOWN

        Returns:
            TrendAnalysis with direction, strength in [0, 1] and slope
        """
        n = len(self._samples)
        if n < max(min_samples, 2):
            return TrendAnalysis(TrendDirection.UNKNOWN, 0.0, 0.0, 0.0, n)

        times = [float(t) for t, _ in self._samples]
        prices = [p for _, p in self._samples]

        mean_t = sum(times) / n
        mean_p = sum(prices) / n
        denom = sum((t - mean_t) ** 2 for t in times)
        if denom == 0:
            slope = 0.0
        else:
            slope = sum((t - mean_t) * (p - mean_p) for t, p in zip(times, prices)) / denom

        first_t, first_p = times[0], prices[0]
        price_change = prices[-1] - first_p

        price_range = max(prices) - min(prices)
        if price_range < 1e-9:
            consistency = 1.0
        else:
            avg_dev = sum(
                abs(p - (first_p + slope * (t - first_t))) for t, p in zip(times, prices)
            ) / n
            consistency = max(0.0, 1.0 - min(avg_dev / price_range, 1.0))

        if slope > SLOPE_THRESHOLD and price_change > PRICE_CHANGE_THRESHOLD:
            direction = TrendDirection.UP
        elif slope < -SLOPE_THRESHOLD and price_change < -PRICE_CHANGE_THRESHOLD:
            direction = TrendDirection.DOWN
        else:
            direction = TrendDirection.SIDEWAYS

        strength = min(min(abs(slope) * SLOPE_SCALE, 1.0) * consistency, 1.0)
        return TrendAnalysis(direction, strength, slope, price_change, n)

    def is_uptrending(self, min_strength: float, min_samples: int = 10) -> bool:
        analysis = self.calculate_trend(min_samples)
        return analysis.direction == TrendDirection.UP and analysis.strength >= min_strength


class TrendOracle:
    """
    Trend trackers keyed by (period, token_id).

    Example:
        oracle = TrendOracle(max_history=60)
        oracle.track_price(period, token_id, elapsed, 0.52)
        if oracle.is_uptrending(period, token_id, min_strength=0.3, min_samples=10):
            ...
    """

    def __init__(self, max_history: int = 60):
        self.max_history = max_history
        self._trackers: dict[tuple[int, str], PriceTrendTracker] = {}

    def track_price(self, period: int, token_id: str, elapsed_seconds: int, price: float) -> None:
        key = (period, token_id)
        tracker = self._trackers.get(key)
        if tracker is None:
            tracker = PriceTrendTracker(self.max_history)
            self._trackers[key] = tracker
        tracker.add_price(elapsed_seconds, price)

    def get_trend(self, period: int, token_id: str, min_samples: int = 10) -> TrendAnalysis:
        tracker = self._trackers.get((period, token_id))
        if tracker is None:
            return TrendAnalysis(TrendDirection.UNKNOWN, 0.0, 0.0, 0.0, 0)
        return tracker.calculate_trend(min_samples)

    def is_uptrending(
        self,
        period: int,
        token_id: str,
        min_strength: float,
        min_samples: int = 10,
    ) -> bool:
        tracker = self._trackers.get((period, token_id))
        if tracker is None:
            return False
        return tracker.is_uptrending(min_strength, min_samples)

    def clear_period(self, period: int) -> None:
        """Drop all trackers for a finished period."""
        stale = [key for key in self._trackers if key[0] == period]
        for key in stale:
            del self._trackers[key]
        if stale:
            logger.debug(f"Cleared {len(stale)} trend trackers for period {period}")
