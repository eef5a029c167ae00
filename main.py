import asyncio
import logging
from typing import Dict, List, Optional

from analytics.anomaly import AnomalyDetector
from analytics.history_store import HistoryStore
from analytics.indicators import PiCycleEngine
from analytics.price_cache import TTLCache
from api.metrics import start_metrics_server
from config import config, get_config_section
from ingest.backoff import RetryPolicy
from ingest.coingecko_rest import CoinGeckoRESTClient
from ingest.fetcher import MarketDataFetcher
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from orchestration.pipeline import PipelineOrchestrator
from orchestration.scheduler import Dispatcher, TickScheduler


logger = logging.getLogger(__name__)


class PipelineService:
    """Build every pipeline component once from config and own their lifecycle."""

    def __init__(self, config_obj=None, dispatcher: Optional[Dispatcher] = None):
        self.config = config_obj if config_obj is not None else config
        self.provider_cfg = get_config_section(self.config, 'provider')
        self.fetcher_cfg = get_config_section(self.config, 'fetcher')
        self.cache_cfg = get_config_section(self.config, 'cache')
        self.history_cfg = get_config_section(self.config, 'history')
        self.indicator_cfg = get_config_section(self.config, 'indicators')
        self.anomaly_cfg = get_config_section(self.config, 'anomaly')
        self.scheduler_cfg = get_config_section(self.config, 'scheduler')
        self.monitoring_cfg = get_config_section(self.config, 'monitoring')

        self.client = CoinGeckoRESTClient(
            base_url=self.provider_cfg.get('base_url'),
            api_key=self.provider_cfg.get('api_key'),
            timeout_s=self.provider_cfg.get('request_timeout_s'),
        )
        self.fetcher = MarketDataFetcher(
            self.client,
            retry_policy=RetryPolicy(
                max_retries=int(self.fetcher_cfg.get('max_retries', 3)),
                initial_delay_ms=int(self.fetcher_cfg.get('initial_delay_ms', 1000)),
                max_delay_ms=int(self.fetcher_cfg.get('max_delay_ms', 10000)),
            ),
            batch_size=int(self.fetcher_cfg.get('batch_size', 3)),
            inter_batch_delay_ms=int(self.fetcher_cfg.get('inter_batch_delay_ms', 1000)),
            pacing_delay_ms=int(self.fetcher_cfg.get('pacing_delay_ms', 1000)),
            series_days=int(self.indicator_cfg.get('series_days', 350)),
        )

        capacity = int(self.history_cfg.get('capacity', 1440))
        self.history = HistoryStore(capacity)
        self.price_cache = TTLCache(float(self.cache_cfg.get('ttl_s', 60)))

        self.orchestrator = PipelineOrchestrator(
            self.fetcher,
            self.history,
            self.price_cache,
            anomaly_detector=AnomalyDetector(
                price_threshold_pct=float(self.anomaly_cfg.get('price_threshold_pct', 5.0)),
                volume_threshold_pct=float(self.anomaly_cfg.get('volume_threshold_pct', 5.0)),
                hour_lookback=int(self.anomaly_cfg.get('hour_lookback', 60)),
                day_lookback=int(self.anomaly_cfg.get('day_lookback', 1440)),
            ),
            pi_cycle_engine=PiCycleEngine(
                short_period=int(self.indicator_cfg.get('short_period', 111)),
                long_period=int(self.indicator_cfg.get('long_period', 350)),
                long_multiplier=float(self.indicator_cfg.get('long_multiplier', 2.0)),
                trend_window=int(self.indicator_cfg.get('trend_window', 30)),
            ),
            reference_instrument=self.indicator_cfg.get('reference_instrument', 'bitcoin'),
            reference_history=HistoryStore(capacity),
            series_cache=TTLCache(float(self.indicator_cfg.get('series_refresh_s', 3600))),
        )

        self.scheduler = TickScheduler(
            self.orchestrator,
            self.instruments,
            interval_s=float(self.scheduler_cfg.get('interval_s', 60)),
            dispatcher=dispatcher,
        )
        self.running = False

    @property
    def instruments(self) -> List[str]:
        configured = self.scheduler_cfg.get('instruments') or []
        reference = self.indicator_cfg.get('reference_instrument', 'bitcoin')
        return list(dict.fromkeys([reference, *configured]))

    def status(self) -> Dict:
        return {
            'running': self.running,
            'instruments': list(self.scheduler.instruments),
            'ticks': self.scheduler.tick_count,
            'skipped_ticks': self.scheduler.skipped_ticks,
            'tracked': self.history.instruments(),
        }

    async def start(self):
        self.running = True
        port = self.monitoring_cfg.get('prometheus_port')
        if port:
            start_metrics_server(int(port))

        logger.info(
            "Starting pipeline for %s every %.0fs",
            ', '.join(self.scheduler.instruments),
            self.scheduler.interval_s,
        )
        tasks = [asyncio.create_task(self.scheduler.run())]

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        if not self.running:
            return
        self.running = False
        await self.scheduler.stop()
        await self.fetcher.close()
        logger.info("Pipeline stopped")


async def main():
    service = PipelineService(config)
    try:
        await service.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Pipeline shutting down on interrupt")
        await service.stop()


if __name__ == "__main__":
    setup_logging(get_config_section(config, 'monitoring').get('log_level', 'INFO'))
    asyncio.run(main())
