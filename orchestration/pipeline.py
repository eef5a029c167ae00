import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Sequence

from analytics.anomaly import AnomalyDetector
from analytics.history_store import HistoryStore
from analytics.indicators import PiCycleEngine
from analytics.models import PiCycleIndicator, PriceSnapshot, Sample, TickResult
from analytics.price_cache import TTLCache
from api.metrics import metrics
from ingest.fetcher import FetchError, MarketDataFetcher, SeriesWindow

logger = logging.getLogger(__name__)

REFERENCE_INSTRUMENT = 'bitcoin'
DAY_MS = 24 * 60 * 60 * 1000
SERIES_REFRESH_S = 3600.0


class PipelineOrchestrator:
    """One tick: cached quotes -> minute history -> Pi-Cycle + anomalies.

    Owns the minute history, the daily reference series and both caches. Ticks are
    serialized by an asyncio lock so overlapping callers never interleave writes.
    """

    def __init__(
        self,
        fetcher: MarketDataFetcher,
        history: HistoryStore,
        price_cache: TTLCache,
        anomaly_detector: Optional[AnomalyDetector] = None,
        pi_cycle_engine: Optional[PiCycleEngine] = None,
        reference_instrument: str = REFERENCE_INSTRUMENT,
        reference_history: Optional[HistoryStore] = None,
        series_cache: Optional[TTLCache] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.fetcher = fetcher
        self.history = history
        self.price_cache = price_cache
        self.anomaly_detector = anomaly_detector if anomaly_detector is not None else AnomalyDetector()
        self.pi_cycle_engine = pi_cycle_engine if pi_cycle_engine is not None else PiCycleEngine()
        self.reference_instrument = reference_instrument
        # both define __len__, so an empty injected instance is falsy
        self.reference_history = (
            reference_history if reference_history is not None else HistoryStore(history.capacity)
        )
        self.series_cache = series_cache if series_cache is not None else TTLCache(SERIES_REFRESH_S)
        self._clock = clock
        self._lock = asyncio.Lock()
        self.last_result: Optional[TickResult] = None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def get_history(self, instrument_id: str) -> Sequence[Sample]:
        return self.history.get(instrument_id)

    async def tick(self, instrument_ids: Sequence[str]) -> TickResult:
        async with self._lock:
            started = self._clock()
            result = TickResult(started_at_ms=int(started * 1000))
            ids = list(dict.fromkeys(instrument_ids))

            snapshots = await self._resolve_prices(ids, result.failures)
            result.snapshots = [snapshots[i] for i in ids if i in snapshots]

            if self.reference_instrument in snapshots:
                result.indicator = await self._update_pi_cycle()

            for snap in result.snapshots:
                self.history.upsert(snap.instrument_id, snap.to_sample())
                series = self.history.get(snap.instrument_id)
                metrics.update_price(snap.instrument_id, snap.price)
                metrics.update_history_length(snap.instrument_id, len(series))
                alerts = self.anomaly_detector.detect(snap.instrument_id, series)
                for alert in alerts:
                    metrics.record_alert(alert.kind.value, alert.window.value)
                result.alerts.extend(alerts)

            result.duration_s = max(0.0, self._clock() - started)
            metrics.record_tick(result.duration_s)
            logger.info(
                "Tick done: %s/%s instruments, %s alerts, indicator=%s (%.2fs)",
                len(result.snapshots),
                len(ids),
                len(result.alerts),
                'yes' if result.indicator else 'no',
                result.duration_s,
            )
            self.last_result = result
            return result

    async def _resolve_prices(self, ids: List[str], failures: Dict[str, str]) -> Dict[str, PriceSnapshot]:
        # entries age from the start of the read, so a tick one TTL later always refetches
        stamp = self.price_cache.now()
        fresh, stale = self.price_cache.partition(ids, now=stamp)
        metrics.record_cache(hits=len(fresh), misses=len(stale))
        resolved: Dict[str, PriceSnapshot] = dict(fresh)
        if not stale:
            return resolved

        fetched = await self.fetcher.fetch_prices(stale)
        for instrument_id in stale:
            outcome = fetched.get(instrument_id)
            if isinstance(outcome, PriceSnapshot):
                self.price_cache.put(instrument_id, outcome, fetched_at=stamp)
                resolved[instrument_id] = outcome
                continue
            kind = outcome.kind if isinstance(outcome, FetchError) else 'unavailable'
            failures[instrument_id] = kind
            metrics.record_failure(kind)
        return resolved

    async def _update_pi_cycle(self) -> Optional[PiCycleIndicator]:
        ref = self.reference_instrument
        stamp = self.series_cache.now()
        if self.series_cache.get(ref, now=stamp) is None:
            try:
                samples = await self.fetcher.fetch_series(ref, SeriesWindow.DAILY)
            except FetchError as exc:
                logger.warning("Reference series refresh failed for %s (%s): %s", ref, exc.kind, exc)
            else:
                added = self.reference_history.extend(ref, samples, bucket_ms=DAY_MS)
                self.series_cache.put(ref, len(samples), fetched_at=stamp)
                logger.debug("Reference series for %s refreshed (%s samples changed)", ref, added)

        indicator = self.pi_cycle_engine.compute(self.reference_history.get(ref))
        if indicator is None:
            logger.info("Pi-Cycle unavailable: %s daily samples for %s", len(self.reference_history.get(ref)), ref)
            return None
        metrics.update_pi_cycle(indicator.distance_pct, indicator.days_to_top)
        return indicator
