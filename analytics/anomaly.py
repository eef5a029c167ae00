import logging
import math
from typing import List, Optional, Sequence

from analytics.models import AlertKind, AnomalyAlert, AnomalyWindow, Sample

logger = logging.getLogger(__name__)

PRICE_THRESHOLD_PCT = 5.0
VOLUME_THRESHOLD_PCT = 5.0
HOUR_LOOKBACK = 60
DAY_LOOKBACK = 1440


def percent_change(current: float, reference: float) -> Optional[float]:
    if reference == 0:
        return None
    change = (current - reference) / reference * 100.0
    return change if math.isfinite(change) else None


class AnomalyDetector:
    """Flags relative price and volume moves against 1h and 24h reference samples.

    Lookbacks are counted in samples, so they must match the cadence the history is
    recorded at (60 / 1440 for one sample per minute). Alerts come out price before
    volume, 1h before 24h.
    """

    def __init__(
        self,
        price_threshold_pct: float = PRICE_THRESHOLD_PCT,
        volume_threshold_pct: float = VOLUME_THRESHOLD_PCT,
        hour_lookback: int = HOUR_LOOKBACK,
        day_lookback: int = DAY_LOOKBACK,
    ):
        if hour_lookback <= 0 or day_lookback <= 0:
            raise ValueError("lookbacks must be positive")
        self.price_threshold_pct = float(price_threshold_pct)
        self.volume_threshold_pct = float(volume_threshold_pct)
        self.hour_lookback = hour_lookback
        self.day_lookback = day_lookback

    def reference_indices(self, length: int):
        hour_ago = max(0, length - self.hour_lookback)
        day_ago = max(0, length - self.day_lookback)
        return hour_ago, day_ago

    def detect(self, instrument_id: str, history: Sequence[Sample]) -> List[AnomalyAlert]:
        if len(history) <= 2:
            return []

        current = history[-1]
        hour_idx, day_idx = self.reference_indices(len(history))
        windows = (
            (AnomalyWindow.ONE_HOUR, history[hour_idx]),
            (AnomalyWindow.TWENTY_FOUR_HOUR, history[day_idx]),
        )
        checks = (
            (AlertKind.PRICE, 'price', self.price_threshold_pct),
            (AlertKind.VOLUME, 'volume', self.volume_threshold_pct),
        )

        alerts: List[AnomalyAlert] = []
        for kind, attr, threshold in checks:
            current_value = getattr(current, attr)
            for window, reference in windows:
                previous_value = getattr(reference, attr)
                change = percent_change(current_value, previous_value)
                if change is None:
                    logger.debug(
                        "Skipping %s %s check for %s: zero reference value",
                        kind.value,
                        window.value,
                        instrument_id,
                    )
                    continue
                if abs(change) >= threshold:
                    alerts.append(
                        AnomalyAlert(
                            kind=kind,
                            instrument_id=instrument_id,
                            change_pct=change,
                            window=window,
                            current_value=current_value,
                            previous_value=previous_value,
                        )
                    )
        return alerts
