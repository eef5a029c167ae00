import asyncio
import sys

sys.path.insert(0, '.')

import pytest
from fastapi.testclient import TestClient

import api.fastapi_server as server
from analytics.models import Sample
from ingest.fetcher import MarketDataFetcher
from main import PipelineService
from tests.fakes import FakeRESTClient, RecordingSleep, market_chart


@pytest.fixture
def service(monkeypatch):
    svc = PipelineService()
    fake = FakeRESTClient()
    fake.set_price('bitcoin', 100.0)
    fake.set_price('solana', 95.0)
    fake.charts['bitcoin'] = market_chart([1000.0 - t for t in range(1, 381)])
    fake.charts['solana'] = market_chart([1.0, 2.0], step_ms=3_600_000)
    fetcher = MarketDataFetcher(fake, pacing_delay_ms=0, inter_batch_delay_ms=0, sleep=RecordingSleep())
    svc.fetcher = fetcher
    svc.orchestrator.fetcher = fetcher
    monkeypatch.setattr(server, 'pipeline_service', svc)
    return svc


def test_endpoints_without_pipeline(monkeypatch):
    monkeypatch.setattr(server, 'pipeline_service', None)
    client = TestClient(server.app)
    assert client.get('/').json()['status'] == 'stopped'
    assert client.get('/health').json()['pipeline'] is None
    assert client.get('/api/history/bitcoin').status_code == 503


def test_history_and_alerts_after_tick(service):
    for i in range(3):
        service.history.append('solana', Sample('solana', 100.0, 1000.0, i * 60_000))
    asyncio.run(service.orchestrator.tick(['bitcoin', 'solana']))
    client = TestClient(server.app)

    history = client.get('/api/history/solana').json()
    assert history['capacity'] == 1440
    assert history['samples'][-1]['price'] == 95.0
    assert client.get('/api/history/solana', params={'limit': 1}).json()['count'] == 1
    assert client.get('/api/history/unknown').json()['count'] == 0

    alerts = client.get('/api/alerts').json()
    assert alerts['count'] == 2
    assert {a['coin'] for a in alerts['alerts']} == {'SOLANA'}

    pi = client.get('/api/pi-cycle').json()
    assert pi['reference_instrument'] == 'bitcoin'
    assert pi['indicator']['days_to_top'] == 946


def test_series_passthrough(service):
    client = TestClient(server.app)
    body = client.get('/api/series/solana', params={'window': 'hourly'}).json()
    assert body['count'] == 2
    assert body['window'] == 'hourly'
    missing = client.get('/api/series/unknown')
    assert missing.status_code == 502


def test_status_lists_instruments(service):
    status = service.status()
    assert status['instruments'][0] == 'bitcoin'
    assert status['running'] is False
