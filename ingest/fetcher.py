import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar, Union

import aiohttp

from analytics.models import PriceSnapshot, Sample
from api.metrics import metrics
from ingest.backoff import RetryPolicy
from ingest.coingecko_rest import CoinGeckoAPIError, CoinGeckoRESTClient

logger = logging.getLogger(__name__)

T = TypeVar('T')

BATCH_SIZE = 3
INTER_BATCH_DELAY_MS = 1000
PACING_DELAY_MS = 1000
SERIES_DAYS = 350
HOURLY_LOOKBACK_S = 24 * 60 * 60

Sleep = Callable[[float], Awaitable[Any]]


class SeriesWindow(str, Enum):
    DAILY = 'daily'
    HOURLY = 'hourly'


class FetchError(Exception):
    kind = 'fetch_error'

    def __init__(self, instrument_id: str, message: str):
        self.instrument_id = instrument_id
        super().__init__(f"{instrument_id}: {message}")


class RateLimitedError(FetchError):
    kind = 'rate_limited'


class UnavailableError(FetchError):
    kind = 'unavailable'


class MarketDataFetcher:
    """Rate-limited access to CoinGecko price snapshots and market charts.

    Every public call resolves per instrument to either a value or a :class:`FetchError`;
    a failing instrument never aborts its batch.
    """

    def __init__(
        self,
        client: Optional[CoinGeckoRESTClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        batch_size: int = BATCH_SIZE,
        inter_batch_delay_ms: int = INTER_BATCH_DELAY_MS,
        pacing_delay_ms: int = PACING_DELAY_MS,
        series_days: int = SERIES_DAYS,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.client = client or CoinGeckoRESTClient()
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_size = batch_size
        self.inter_batch_delay_s = max(0.0, inter_batch_delay_ms / 1000.0)
        self.pacing_delay_s = max(0.0, pacing_delay_ms / 1000.0)
        self.series_days = series_days
        self._sleep = sleep
        self._clock = clock

    async def close(self):
        await self.client.close()

    async def _request(self, instrument_id: str, path: str, params: Dict[str, Any]) -> Any:
        """GET ``path`` with rate-limit retries.

        HTTP 429 is retried up to ``max_retries`` times after the first request, so the
        default of 3 allows 4 requests with 1s, 2s and 4s sleeps between them; a fourth
        consecutive 429 raises ``RateLimitedError``. Any other failure raises
        ``UnavailableError`` at once. A successful response is followed by the pacing delay.
        """
        attempt = 0
        while True:
            try:
                payload = await self.client.get(path, params=params)
            except CoinGeckoAPIError as exc:
                if not exc.rate_limited:
                    metrics.record_fetch('unavailable')
                    raise UnavailableError(instrument_id, str(exc)) from exc
                if attempt >= self.retry_policy.max_retries:
                    metrics.record_fetch('rate_limited')
                    raise RateLimitedError(
                        instrument_id, f"still rate limited after {attempt} retries"
                    ) from exc
                delay = self.retry_policy.delay_s(attempt)
                attempt += 1
                metrics.record_retry()
                logger.info(
                    "Rate limited fetching %s; retry %s/%s in %.1fs",
                    instrument_id,
                    attempt,
                    self.retry_policy.max_retries,
                    delay,
                )
                await self._sleep(delay)
                continue
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                metrics.record_fetch('unavailable')
                raise UnavailableError(instrument_id, f"{type(exc).__name__}: {exc}") from exc

            metrics.record_fetch('ok')
            if self.pacing_delay_s:
                await self._sleep(self.pacing_delay_s)
            return payload

    async def fetch_price(self, instrument_id: str) -> PriceSnapshot:
        payload = await self._request(
            instrument_id,
            '/simple/price',
            {
                'ids': instrument_id,
                'vs_currencies': 'usd',
                'include_24hr_change': True,
                'include_24hr_vol': True,
            },
        )
        entry = payload.get(instrument_id) if isinstance(payload, dict) else None
        if not isinstance(entry, dict) or entry.get('usd') is None:
            raise UnavailableError(instrument_id, "instrument missing from price response")
        try:
            change = entry.get('usd_24h_change')
            return PriceSnapshot(
                instrument_id=instrument_id,
                price=float(entry['usd']),
                volume_24h=float(entry.get('usd_24h_vol') or 0.0),
                fetched_at_ms=int(self._clock() * 1000),
                change_24h_pct=float(change) if change is not None else None,
            )
        except (TypeError, ValueError) as exc:
            raise UnavailableError(instrument_id, f"malformed price entry: {exc}") from exc

    async def fetch_series(self, instrument_id: str, window: SeriesWindow = SeriesWindow.DAILY) -> List[Sample]:
        window = SeriesWindow(window)
        if window is SeriesWindow.DAILY:
            params: Dict[str, Any] = {'vs_currency': 'usd', 'days': self.series_days, 'interval': 'daily'}
        else:
            now = int(self._clock())
            params = {
                'vs_currency': 'usd',
                'from': now - HOURLY_LOOKBACK_S,
                'to': now,
                'interval': 'hourly',
            }
        payload = await self._request(instrument_id, f'/coins/{instrument_id}/market_chart', params)
        return parse_market_chart(instrument_id, payload)

    async def fetch_prices(self, instrument_ids: Sequence[str]) -> Dict[str, Union[PriceSnapshot, FetchError]]:
        return await self._run_batched(instrument_ids, self.fetch_price)

    async def fetch_series_batch(
        self,
        instrument_ids: Sequence[str],
        window: SeriesWindow = SeriesWindow.DAILY,
    ) -> Dict[str, Union[List[Sample], FetchError]]:
        async def _one(instrument_id: str) -> List[Sample]:
            return await self.fetch_series(instrument_id, window)

        return await self._run_batched(instrument_ids, _one)

    async def _run_batched(
        self,
        instrument_ids: Sequence[str],
        fetch_one: Callable[[str], Awaitable[T]],
    ) -> Dict[str, Union[T, FetchError]]:
        ids = list(dict.fromkeys(instrument_ids))
        results: Dict[str, Union[T, FetchError]] = {}
        for start in range(0, len(ids), self.batch_size):
            if start and self.inter_batch_delay_s:
                await self._sleep(self.inter_batch_delay_s)
            batch = ids[start:start + self.batch_size]
            outcomes = await asyncio.gather(*(fetch_one(i) for i in batch), return_exceptions=True)
            for instrument_id, outcome in zip(batch, outcomes):
                if isinstance(outcome, FetchError):
                    logger.warning("Fetch failed for %s (%s): %s", instrument_id, outcome.kind, outcome)
                elif isinstance(outcome, Exception):
                    logger.error("Unexpected error fetching %s: %r", instrument_id, outcome)
                    outcome = UnavailableError(instrument_id, repr(outcome))
                elif isinstance(outcome, BaseException):
                    raise outcome
                results[instrument_id] = outcome
        return results


def parse_market_chart(instrument_id: str, payload: Any) -> List[Sample]:
    """Zip ``prices`` and ``total_volumes`` rows into samples ordered by timestamp."""
    if not isinstance(payload, dict) or not isinstance(payload.get('prices'), list):
        raise UnavailableError(instrument_id, "market chart response missing prices")
    volumes = payload.get('total_volumes') or []
    samples: List[Sample] = []
    try:
        for idx, row in enumerate(payload['prices']):
            ts, price = row[0], row[1]
            volume = 0.0
            if idx < len(volumes) and volumes[idx][1] is not None:
                volume = float(volumes[idx][1])
            samples.append(Sample(instrument_id, float(price), volume, int(ts)))
    except (IndexError, TypeError, ValueError, OverflowError) as exc:
        raise UnavailableError(instrument_id, f"malformed market chart row: {exc}") from exc
    samples.sort(key=lambda s: s.timestamp)
    return samples
