import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, Optional, Sequence

from analytics.models import TickResult
from api.metrics import metrics
from orchestration.pipeline import PipelineOrchestrator

logger = logging.getLogger(__name__)

Dispatcher = Callable[[TickResult], Awaitable[None]]
INTERVAL_S = 60.0


async def log_dispatcher(result: TickResult) -> None:
    """Default sink: write the tick's findings to the log."""
    if result.indicator:
        ind = result.indicator
        logger.info(
            "Pi-Cycle: SMA111=%.2f SMA350x2=%.2f distance=%.2f%% days_to_top=%s",
            ind.sma111,
            ind.sma350x2,
            ind.distance_pct,
            ind.days_to_top if ind.days_to_top is not None else 'n/a',
        )
    for alert in result.alerts:
        logger.warning(
            "[Anomaly] %s %s %+.2f%% over %s (%.8g -> %.8g)",
            alert.instrument_id.upper(),
            alert.kind.value,
            alert.change_pct,
            alert.window.value,
            alert.previous_value,
            alert.current_value,
        )
    for instrument_id, kind in result.failures.items():
        logger.warning("No data for %s this tick (%s)", instrument_id, kind)


class TickScheduler:
    """Drive the orchestrator on a fixed period.

    A tick that overruns its slot is allowed to finish; the slots it covered are skipped,
    never queued, so at most one tick is in flight.
    """

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        instruments: Sequence[str],
        interval_s: float = INTERVAL_S,
        dispatcher: Optional[Dispatcher] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.orchestrator = orchestrator
        self.instruments = list(instruments)
        self.interval_s = float(interval_s)
        self.dispatcher = dispatcher or log_dispatcher
        self.running = False
        self.tick_count = 0
        self.skipped_ticks = 0
        self.fail_count = 0
        self._clock = clock
        self._sleep = sleep

    def set_instruments(self, instruments: Sequence[str]) -> None:
        self.instruments = list(dict.fromkeys(instruments))

    async def run_once(self) -> Optional[TickResult]:
        if self.orchestrator.busy:
            self.skipped_ticks += 1
            metrics.record_skipped_ticks()
            logger.warning("Previous tick still running; skipping this slot")
            return None
        result = await self.orchestrator.tick(self.instruments)
        self.tick_count += 1
        try:
            await self.dispatcher(result)
        except Exception:
            logger.exception("Tick dispatcher failed")
        return result

    def _slots_missed(self, next_run: float, now: float) -> int:
        if now <= next_run:
            return 0
        return int(math.floor((now - next_run) / self.interval_s)) + 1

    async def run(self, max_ticks: Optional[int] = None):
        self.running = True
        next_run = self._clock()
        try:
            while self.running:
                try:
                    await self.run_once()
                    self.fail_count = 0
                except asyncio.CancelledError:
                    raise
                except Exception:
                    self.fail_count += 1
                    logger.exception("Pipeline tick failed (%s consecutive)", self.fail_count)

                if max_ticks is not None and self.tick_count >= max_ticks:
                    break

                next_run += self.interval_s
                now = self._clock()
                missed = self._slots_missed(next_run, now)
                if missed:
                    self.skipped_ticks += missed
                    metrics.record_skipped_ticks(missed)
                    logger.warning(
                        "Tick overran its %.0fs period; skipping %s slot(s)",
                        self.interval_s,
                        missed,
                    )
                    next_run += missed * self.interval_s
                await self._sleep(max(0.0, next_run - self._clock()))
        finally:
            self.running = False

    async def stop(self):
        self.running = False
