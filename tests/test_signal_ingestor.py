import asyncio
import sys
from datetime import datetime, timezone

sys.path.insert(0, '.')

import pytest

from ingest.signal_ingestor import SignalIngestor, parse_timestamp
from orchestration.persistence import InMemoryStore
from strategy.exceptions import UpstreamUnavailable
from strategy.execution_types import Direction, RiskLevel
from tests.fakes import NOW, FakeSignalFeed, FixedClock


def _iso(ts):
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _ingestor(raw_signals):
    clock = FixedClock()
    feed = FakeSignalFeed(raw_signals)
    store = InMemoryStore()
    return SignalIngestor(feed, store, clock=clock, window_minutes=10), feed, store, clock


def test_parse_timestamp_variants():
    assert parse_timestamp(NOW) == NOW
    assert parse_timestamp(NOW * 1000) == pytest.approx(NOW)
    assert parse_timestamp(_iso(NOW).replace('+00:00', 'Z')) == pytest.approx(NOW)
    assert parse_timestamp('') is None
    assert parse_timestamp('not a date') is None


def test_normalize_maps_feed_fields():
    ingestor, _, _, _ = _ingestor([])
    signal = ingestor.normalize({
        'id': 'a1',
        'token': 'sol',
        'price': '100',
        'type': 'buy',
        'riskLevel': 'Medium',
        'createdAt': _iso(NOW - 60),
        'warnings': ['thin liquidity'],
    })
    assert signal.id == 'a1'
    assert signal.token == 'SOL'
    assert signal.direction == Direction.BUY
    assert signal.risk_level == RiskLevel.MEDIUM
    assert signal.price == 100.0
    assert signal.expires_at == pytest.approx(NOW + 540)
    assert signal.warning_count == 1
    assert not signal.is_provisional


def test_normalize_derives_direction_and_level_from_risk():
    ingestor, _, _, _ = _ingestor([])
    buy = ingestor.normalize({'symbol': 'eth', 'price': 10, 'risk': 20})
    sell = ingestor.normalize({'symbol': 'xrp', 'price': 0.5, 'risk': 85})
    assert buy.direction == Direction.BUY
    assert buy.risk_level == RiskLevel.LOW
    assert buy.is_provisional
    assert sell.direction == Direction.SELL
    assert sell.risk_level == RiskLevel.HIGH


def test_malformed_rows_are_dropped():
    ingestor, _, _, _ = _ingestor([
        {'token': 'SOL', 'price': 100, 'type': 'BUY'},
        {'token': 'BAD'},
        {'token': 'NEG', 'price': -1, 'type': 'BUY'},
    ])
    signals = asyncio.run(ingestor.fetch_signals())
    assert [s.token for s in signals] == ['SOL']


def test_fetch_serves_stale_cache_when_feed_fails():
    ingestor, feed, _, clock = _ingestor([{'id': 's1', 'token': 'SOL', 'price': 100, 'type': 'BUY'}])

    async def _run():
        first = await ingestor.fetch_signals()
        feed.fail = True
        clock.advance(400)
        second = await ingestor.fetch_signals()
        return first, second

    first, second = asyncio.run(_run())
    assert [s.id for s in first] == ['s1']
    assert [s.id for s in second] == ['s1']
    assert feed.calls == 2


def test_fetch_raises_without_cache():
    ingestor, feed, _, _ = _ingestor([])
    feed.fail = True
    with pytest.raises(UpstreamUnavailable):
        asyncio.run(ingestor.fetch_signals())


def test_refresh_keeps_countdown_anchor():
    ingestor, _, _, clock = _ingestor([{'id': 's1', 'token': 'SOL', 'price': 100, 'type': 'BUY'}])

    async def _run():
        first = await ingestor.fetch_signals()
        clock.advance(120)
        second = await ingestor.fetch_signals(force_refresh=True)
        return first[0], second[0]

    first, second = asyncio.run(_run())
    assert first.expires_at == pytest.approx(NOW + 600)
    assert second.expires_at == first.expires_at


def test_future_created_at_is_clamped_to_now():
    ingestor, _, _, _ = _ingestor([])
    signal = ingestor.normalize({'id': 'f1', 'token': 'SOL', 'price': 1, 'type': 'BUY',
                                 'createdAt': _iso(NOW + 86400)})
    assert signal.created_at == NOW


def test_materialize_is_idempotent_for_concurrent_actions():
    ingestor, _, store, _ = _ingestor([
        {'token': 'SOL', 'price': 100, 'type': 'BUY', 'createdAt': _iso(NOW)},
    ])

    async def _run():
        provisional = (await ingestor.fetch_signals())[0]
        a, b = await asyncio.gather(ingestor.materialize(provisional), ingestor.materialize(provisional))
        resolved = await ingestor.resolve(provisional.id)
        return provisional, a, b, resolved

    provisional, a, b, resolved = asyncio.run(_run())
    assert provisional.is_provisional
    assert a.id == b.id
    assert not a.is_provisional
    assert len(store.signals) == 1
    assert resolved.id == a.id


def test_refresh_after_materialize_reports_persisted_id():
    ingestor, _, _, _ = _ingestor([
        {'token': 'SOL', 'price': 100, 'type': 'BUY', 'createdAt': _iso(NOW)},
    ])

    async def _run():
        stored = await ingestor.materialize_all(await ingestor.fetch_signals())
        refreshed = await ingestor.fetch_signals(force_refresh=True)
        return stored[0], refreshed[0]

    stored, refreshed = asyncio.run(_run())
    assert refreshed.id == stored.id


def test_fetch_risks_falls_back_to_cache():
    clock = FixedClock()
    feed = FakeSignalFeed(risks={'BTC': 42})
    ingestor = SignalIngestor(feed, InMemoryStore(), clock=clock)

    async def _run():
        fresh = await ingestor.fetch_risks('binance')
        feed.fail = True
        clock.advance(10_000)
        stale = await ingestor.fetch_risks('binance')
        return fresh, stale

    fresh, stale = asyncio.run(_run())
    assert fresh == {'BTC': 42}
    assert stale == {'BTC': 42}


def test_materialize_stores_feed_ids_and_dedupes_copies():
    ingestor, _, store, _ = _ingestor([
        {'id': 'f1', 'token': 'SOL', 'price': 100, 'type': 'BUY', 'createdAt': _iso(NOW)},
        {'id': 'f2', 'token': 'SOL', 'price': 100, 'type': 'BUY', 'createdAt': _iso(NOW)},
    ])

    async def _run():
        first = await ingestor.materialize_all(await ingestor.fetch_signals())
        again = await ingestor.materialize_all(await ingestor.fetch_signals(force_refresh=True))
        resolved = await ingestor.resolve('f2')
        return first, again, resolved

    first, again, resolved = asyncio.run(_run())
    assert [s.id for s in first] == ['f1', 'f1']
    assert [s.id for s in again] == ['f1']
    assert list(store.signals) == ['f1']
    assert resolved.id == 'f1'


def test_resolve_serves_unstored_feed_ids_from_cache():
    ingestor, _, store, _ = _ingestor([{'id': 'f1', 'token': 'SOL', 'price': 100, 'type': 'BUY'}])

    async def _run():
        await ingestor.fetch_signals()
        return await ingestor.resolve('f1')

    resolved = asyncio.run(_run())
    assert resolved.id == 'f1'
    assert store.signals == {}
