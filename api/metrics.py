import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _monitoring_cfg():
    return config.get('monitoring', {}) or {}


def _get_port_scan_limit() -> int:
    try:
        return int(_monitoring_cfg().get('prometheus_port_scan', 0) or 0)
    except (TypeError, ValueError):
        return 0


def _get_port_file() -> Optional[Path]:
    path_value = _monitoring_cfg().get('metrics_port_file')
    if not path_value:
        return None
    return Path(path_value)


def _write_port_file(port: int) -> None:
    port_file = _get_port_file()
    if not port_file:
        return
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except OSError as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self):
        self.fetch_requests = Counter('fetch_requests_total', 'Upstream requests by outcome', ['outcome'])
        self.fetch_retries = Counter('fetch_rate_limit_retries_total', 'Retries triggered by HTTP 429')
        self.cache_lookups = Counter('price_cache_lookups_total', 'Price cache lookups', ['result'])

        self.tick_duration = Histogram('tick_duration_seconds', 'Wall time of one pipeline tick')
        self.ticks_completed = Counter('ticks_completed_total', 'Completed pipeline ticks')
        self.ticks_skipped = Counter('ticks_skipped_total', 'Scheduler slots skipped because a tick overran')
        self.instrument_failures = Counter('instrument_failures_total', 'Per-instrument tick failures', ['kind'])

        self.alerts_emitted = Counter('anomaly_alerts_total', 'Anomaly alerts emitted', ['kind', 'window'])

        self.pi_cycle_distance = Gauge('pi_cycle_distance_pct', 'Distance of SMA111 from 2x SMA350 in percent')
        self.pi_cycle_days_to_top = Gauge('pi_cycle_days_to_top', 'Estimated days until Pi-Cycle crossover (-1 when unknown)')
        self.history_length = Gauge('history_samples', 'Samples retained per instrument', ['instrument'])
        self.current_price = Gauge('instrument_price_usd', 'Latest USD price', ['instrument'])

    def record_fetch(self, outcome: str):
        self.fetch_requests.labels(outcome=outcome).inc()

    def record_retry(self):
        self.fetch_retries.inc()

    def record_cache(self, hits: int, misses: int):
        if hits:
            self.cache_lookups.labels(result='hit').inc(hits)
        if misses:
            self.cache_lookups.labels(result='miss').inc(misses)

    def record_tick(self, duration_s: float):
        self.ticks_completed.inc()
        self.tick_duration.observe(duration_s)

    def record_skipped_ticks(self, count: int = 1):
        if count > 0:
            self.ticks_skipped.inc(count)

    def record_failure(self, kind: str):
        self.instrument_failures.labels(kind=kind).inc()

    def record_alert(self, kind: str, window: str):
        self.alerts_emitted.labels(kind=kind, window=window).inc()

    def update_pi_cycle(self, distance_pct: Optional[float], days_to_top: Optional[int]):
        if distance_pct is not None:
            self.pi_cycle_distance.set(distance_pct)
        self.pi_cycle_days_to_top.set(days_to_top if days_to_top is not None else -1)

    def update_history_length(self, instrument: str, length: int):
        self.history_length.labels(instrument=instrument).set(length)

    def update_price(self, instrument: str, price: float):
        self.current_price.labels(instrument=instrument).set(price)


def start_metrics_server(port: int = 9090):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        _write_port_file(candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error

metrics = MetricsCollector()
