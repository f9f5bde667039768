import asyncio
import sys

sys.path.insert(0, '.')

import pytest
from fastapi.testclient import TestClient

import api.fastapi_server as server
from main import SignalBotSystem
from monitoring.signal_auditor import ExecutionAuditor
from orchestration.persistence import InMemoryStore
from strategy.simulators.paper import PaperExchangeGateway
from tests.fakes import FakeSignalFeed, RecordingSink, make_user


@pytest.fixture
def system(tmp_path, monkeypatch):
    feed = FakeSignalFeed(
        [{'token': 'SOL', 'price': 100, 'type': 'BUY', 'riskLevel': 'medium'}],
        risks={'SOL': {'risk': 35}},
    )
    bot = SignalBotSystem(
        store=InMemoryStore(),
        gateway=PaperExchangeGateway(prices={'SOL': 100.0}, initial_equity=1000.0, stablecoins=['USDT']),
        feed=feed,
        sink=RecordingSink(),
    )
    bot.executor.auditor = ExecutionAuditor(str(tmp_path / 'audit.jsonl'))
    asyncio.run(bot.store.save_user(make_user('u1')))
    monkeypatch.setattr(server, 'bot_system', bot)
    return bot


def test_health_reports_not_running(system):
    client = TestClient(server.app)
    body = client.get('/health').json()
    assert body['status'] == 'healthy'
    assert body['system_running'] is False


def test_signal_accept_flow(system):
    client = TestClient(server.app)

    listed = client.get('/api/signals', params={'user_id': 'u1'}).json()
    assert listed['count'] == 1
    signal_id = listed['signals'][0]['id']

    accepted = client.post(f'/api/signals/{signal_id}/accept', json={'user_id': 'u1'}).json()
    assert accepted['success'] is True
    assert accepted['state'] == 'accepted'
    assert accepted['trade']['amount'] == 1.0

    cycles = client.get('/api/cycles/u1').json()
    assert cycles['count'] == 1
    assert cycles['cycles'][0]['accumulation']['buys'] == 1

    portfolio = client.get('/api/portfolio/u1').json()
    assert portfolio['free_capital'] == pytest.approx(900.0)

    sold = client.post(f"/api/cycles/{cycles['cycles'][0]['id']}/sell",
                       json={'user_id': 'u1', 'percentage': 100}).json()
    assert sold['success'] is True
    assert sold['trade']['direction'] == 'SELL'


def test_rejections_and_lookups(system):
    client = TestClient(server.app)
    assert client.get('/api/signals', params={'user_id': 'ghost'}).status_code == 404
    assert client.get('/api/portfolio/u1').status_code == 404

    missing = client.post('/api/signals/nope/skip', json={'user_id': 'u1'}).json()
    assert missing['success'] is False
    assert missing['reason'] == 'signal not found'

    sold = client.post('/api/cycles/none/sell', json={'user_id': 'u1'}).json()
    assert sold['success'] is False
    assert sold['reason'] == 'no holdings'


def test_risks_endpoint(system):
    client = TestClient(server.app)
    assert client.get('/api/risks').json()['risks'] == {'SOL': {'risk': 35}}
    assert client.get('/api/risks', params={'exchange': 'kraken'}).status_code == 400


def test_auto_execute_endpoint_with_nothing_due(system):
    client = TestClient(server.app)
    body = client.post('/api/signals/auto-execute').json()
    assert body == {'results': [], 'executed': 0, 'count': 0}


def test_ingest_once_materializes_and_notifies(system):
    stored = asyncio.run(system.ingest_once())
    assert stored == 1
    assert len(system.store.signals) == 1
    assert [n['user_id'] for n in system.sink.sent] == ['u1']
