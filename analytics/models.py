from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class AlertKind(str, Enum):
    PRICE = 'price'
    VOLUME = 'volume'


class AnomalyWindow(str, Enum):
    ONE_HOUR = '1h'
    TWENTY_FOUR_HOUR = '24h'


@dataclass(frozen=True)
class Sample:
    """One price/volume observation for an instrument; ``timestamp`` is epoch milliseconds."""

    instrument_id: str
    price: float
    volume: float
    timestamp: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            'instrument_id': self.instrument_id,
            'price': self.price,
            'volume': self.volume,
            'timestamp': self.timestamp,
        }


@dataclass(frozen=True)
class PriceSnapshot:
    """Latest quote for an instrument as returned by the simple price endpoint."""

    instrument_id: str
    price: float
    volume_24h: float
    fetched_at_ms: int
    change_24h_pct: Optional[float] = None

    @property
    def symbol(self) -> str:
        return self.instrument_id.upper()

    def to_sample(self) -> Sample:
        return Sample(
            instrument_id=self.instrument_id,
            price=self.price,
            volume=self.volume_24h,
            timestamp=self.fetched_at_ms,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            'id': self.instrument_id,
            'symbol': self.symbol,
            'current_price': self.price,
            'total_volume_24h': self.volume_24h,
            'price_change_percentage_24h': self.change_24h_pct,
            'fetched_at_ms': self.fetched_at_ms,
        }


@dataclass(frozen=True)
class PiCycleIndicator:
    """Pi-Cycle Top reading.

    ``days_to_top`` is a linear extrapolation of the moving-average gap and is ``None``
    whenever the averages are diverging or the trend is flat.
    """

    sma111: float
    sma350x2: float
    distance_pct: float
    days_to_top: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            'sma111': self.sma111,
            'sma350x2': self.sma350x2,
            'distance': self.distance_pct,
            'days_to_top': self.days_to_top,
        }


@dataclass(frozen=True)
class AnomalyAlert:
    kind: AlertKind
    instrument_id: str
    change_pct: float
    window: AnomalyWindow
    current_value: float
    previous_value: float

    def as_dict(self) -> Dict[str, Any]:
        return {
            'type': self.kind.value,
            'coin': self.instrument_id.upper(),
            'change': self.change_pct,
            'period': self.window.value,
            'current_value': self.current_value,
            'previous_value': self.previous_value,
        }


@dataclass
class TickResult:
    """Output of one orchestrator tick, handed to the dispatcher."""

    indicator: Optional[PiCycleIndicator] = None
    alerts: List[AnomalyAlert] = field(default_factory=list)
    snapshots: List[PriceSnapshot] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    started_at_ms: int = 0
    duration_s: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            'indicator': self.indicator.as_dict() if self.indicator else None,
            'alerts': [alert.as_dict() for alert in self.alerts],
            'snapshots': [snap.as_dict() for snap in self.snapshots],
            'failures': dict(self.failures),
            'started_at_ms': self.started_at_ms,
            'duration_s': self.duration_s,
        }
