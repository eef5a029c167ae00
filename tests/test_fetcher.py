import asyncio
import sys

sys.path.insert(0, '.')

import aiohttp
import pytest

from ingest.coingecko_rest import CoinGeckoAPIError
from ingest.fetcher import (
    MarketDataFetcher,
    RateLimitedError,
    SeriesWindow,
    UnavailableError,
    parse_market_chart,
)
from tests.fakes import FakeRESTClient, RecordingSleep, market_chart, rate_limited


def _fetcher(client, sleep, **kwargs):
    kwargs.setdefault('pacing_delay_ms', 0)
    kwargs.setdefault('inter_batch_delay_ms', 0)
    return MarketDataFetcher(client, sleep=sleep, clock=lambda: 1_700_000_000.0, **kwargs)


def test_fetch_price_builds_snapshot():
    client = FakeRESTClient()
    client.set_price('bitcoin', 65_000.0, vol=3.2e10, change=-2.5)
    sleep = RecordingSleep()
    snap = asyncio.run(_fetcher(client, sleep, pacing_delay_ms=1000).fetch_price('bitcoin'))

    assert snap.price == 65_000.0
    assert snap.volume_24h == 3.2e10
    assert snap.change_24h_pct == -2.5
    assert snap.fetched_at_ms == 1_700_000_000_000
    assert sleep.calls == [1.0]
    params = client.requests[0]['params']
    assert params['vs_currencies'] == 'usd'
    assert params['include_24hr_change'] is True


def test_sustained_rate_limit_backs_off_then_gives_up():
    client = FakeRESTClient()
    client.prices['bitcoin'] = rate_limited()
    sleep = RecordingSleep()

    with pytest.raises(RateLimitedError) as excinfo:
        asyncio.run(_fetcher(client, sleep).fetch_price('bitcoin'))

    assert sleep.calls == [1.0, 2.0, 4.0]
    assert client.calls['bitcoin'] == 4
    assert excinfo.value.kind == 'rate_limited'


def test_rate_limit_recovers_within_retries():
    client = FakeRESTClient()
    client.prices['bitcoin'] = [rate_limited(), rate_limited(), {'usd': 1.0, 'usd_24h_vol': 2.0}]
    sleep = RecordingSleep()
    snap = asyncio.run(_fetcher(client, sleep).fetch_price('bitcoin'))
    assert snap.price == 1.0
    assert snap.change_24h_pct is None
    assert sleep.calls == [1.0, 2.0]


@pytest.mark.parametrize('error', [
    CoinGeckoAPIError(500, 'boom'),
    CoinGeckoAPIError(404, 'missing'),
    aiohttp.ClientConnectionError('reset'),
    asyncio.TimeoutError(),
])
def test_other_failures_are_not_retried(error):
    client = FakeRESTClient()
    client.prices['bitcoin'] = error
    sleep = RecordingSleep()
    with pytest.raises(UnavailableError):
        asyncio.run(_fetcher(client, sleep).fetch_price('bitcoin'))
    assert client.calls['bitcoin'] == 1
    assert sleep.calls == []


def test_missing_instrument_in_response_is_unavailable():
    client = FakeRESTClient()
    with pytest.raises(UnavailableError):
        asyncio.run(_fetcher(client, RecordingSleep()).fetch_price('nope'))


def test_batches_are_paced_and_isolate_failures():
    client = FakeRESTClient()
    ids = ['a', 'b', 'c', 'd', 'e', 'f', 'g']
    for i, instrument in enumerate(ids):
        client.set_price(instrument, float(i + 1))
    client.prices['d'] = CoinGeckoAPIError(503, 'down')
    sleep = RecordingSleep()

    results = asyncio.run(_fetcher(client, sleep, inter_batch_delay_ms=1000).fetch_prices(ids))

    assert list(results) == ids
    assert isinstance(results['d'], UnavailableError)
    assert [results[i].price for i in ids if i != 'd'] == [1.0, 2.0, 3.0, 5.0, 6.0, 7.0]
    # three batches -> two inter-batch pauses
    assert sleep.calls == [1.0, 1.0]


def test_batch_members_run_concurrently():
    in_flight = []
    peak = []

    class SlowClient(FakeRESTClient):
        async def get(self, path, params=None):
            in_flight.append(1)
            peak.append(len(in_flight))
            await asyncio.sleep(0)
            in_flight.pop()
            return {params['ids']: {'usd': 1.0}}

    asyncio.run(_fetcher(SlowClient(), RecordingSleep(), batch_size=3).fetch_prices(['a', 'b', 'c', 'd']))
    assert max(peak) == 3


def test_fetch_daily_series_params_and_parsing():
    client = FakeRESTClient()
    client.charts['bitcoin'] = market_chart([1.0, 2.0, 3.0], volumes=[10.0, 20.0, 30.0])
    samples = asyncio.run(_fetcher(client, RecordingSleep()).fetch_series('bitcoin', SeriesWindow.DAILY))

    assert [s.price for s in samples] == [1.0, 2.0, 3.0]
    assert [s.volume for s in samples] == [10.0, 20.0, 30.0]
    request = client.requests[0]
    assert request['path'] == '/coins/bitcoin/market_chart'
    assert request['params'] == {'vs_currency': 'usd', 'days': 350, 'interval': 'daily'}


def test_fetch_hourly_series_uses_24h_range():
    client = FakeRESTClient()
    client.charts['eth'] = market_chart([5.0, 6.0], step_ms=3_600_000)
    asyncio.run(_fetcher(client, RecordingSleep()).fetch_series('eth', 'hourly'))
    params = client.requests[0]['params']
    assert params['interval'] == 'hourly'
    assert params['to'] - params['from'] == 86_400
    assert params['to'] == 1_700_000_000


def test_series_batch_reports_missing_coin():
    client = FakeRESTClient()
    client.charts['bitcoin'] = market_chart([1.0])
    results = asyncio.run(_fetcher(client, RecordingSleep()).fetch_series_batch(['bitcoin', 'unknown']))
    assert len(results['bitcoin']) == 1
    assert isinstance(results['unknown'], UnavailableError)


def test_parse_market_chart_rejects_bad_payloads():
    with pytest.raises(UnavailableError):
        parse_market_chart('x', {'total_volumes': []})
    with pytest.raises(UnavailableError):
        parse_market_chart('x', {'prices': [[1]]})
    samples = parse_market_chart('x', {'prices': [[2, 2.0], [1, 1.0]]})
    assert [s.timestamp for s in samples] == [1, 2]
    assert samples[0].volume == 0.0


def test_parse_market_chart_rejects_out_of_range_timestamp():
    # json.loads('1e400') yields inf, which int() cannot convert
    with pytest.raises(UnavailableError):
        parse_market_chart('bitcoin', {'prices': [[float('inf'), 1.0]]})
