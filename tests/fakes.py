from collections import defaultdict
from typing import Any, Dict, List, Optional

from ingest.coingecko_rest import CoinGeckoAPIError


class RecordingSleep:
    """Async stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


class FakeRESTClient:
    """Routes GET requests to per-instrument handlers.

    A handler may be a payload, an exception instance (raised), a list consumed one
    item per call, or a callable taking ``params``.
    """

    def __init__(self):
        self.prices: Dict[str, Any] = {}
        self.charts: Dict[str, Any] = {}
        self.requests: List[Dict[str, Any]] = []
        self.calls = defaultdict(int)
        self.closed = False

    def set_price(self, instrument_id: str, usd: float, vol: float = 1000.0, change: Optional[float] = 1.5):
        self.prices[instrument_id] = {'usd': usd, 'usd_24h_vol': vol, 'usd_24h_change': change}

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        params = dict(params or {})
        self.requests.append({'path': path, 'params': params})
        if path == '/simple/price':
            instrument_id = params['ids']
            handler = self.prices.get(instrument_id, {})
            outcome = self._resolve(instrument_id, handler, params)
            if isinstance(outcome, dict) and 'usd' in outcome:
                return {instrument_id: outcome}
            return outcome
        if path.startswith('/coins/') and path.endswith('/market_chart'):
            instrument_id = path.split('/')[2]
            handler = self.charts.get(instrument_id, CoinGeckoAPIError(404, '{"error":"coin not found"}', 'coin not found'))
            return self._resolve(instrument_id, handler, params)
        raise CoinGeckoAPIError(404, 'not found')

    def _resolve(self, key: str, handler: Any, params: Dict[str, Any]) -> Any:
        self.calls[key] += 1
        if isinstance(handler, list):
            handler = handler.pop(0) if len(handler) > 1 else handler[0]
        if callable(handler):
            handler = handler(params)
        if isinstance(handler, Exception):
            raise handler
        return handler

    async def close(self):
        self.closed = True


def rate_limited() -> CoinGeckoAPIError:
    return CoinGeckoAPIError(429, '{"status":{"error_code":429}}')


def market_chart(prices: List[float], start_ms: int = 0, step_ms: int = 86_400_000, volumes: Optional[List[float]] = None):
    volumes = volumes if volumes is not None else [1_000.0] * len(prices)
    return {
        'prices': [[start_ms + i * step_ms, p] for i, p in enumerate(prices)],
        'total_volumes': [[start_ms + i * step_ms, v] for i, v in enumerate(volumes)],
    }
