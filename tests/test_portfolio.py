import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from orchestration.persistence import InMemoryStore
from orchestration.portfolio import PortfolioReconciler
from strategy.cycle_manager import CycleManager
from strategy.simulators.paper import PaperExchangeGateway
from tests.fakes import FixedClock, make_user


def _reconciler():
    clock = FixedClock()
    store = InMemoryStore()
    gateway = PaperExchangeGateway(prices={'SOL': 100.0, 'ETH': 10.0}, initial_equity=1000.0,
                                   stablecoins=['USDT', 'USDC'])
    cycles = CycleManager(store, clock=clock)
    reconciler = PortfolioReconciler(gateway, store, cycles=cycles, stablecoins=['USDT', 'USDC'], clock=clock)
    return reconciler, gateway, store, cycles, clock


def test_refresh_counts_stablecoins_as_free_capital():
    reconciler, gateway, store, cycles, _ = _reconciler()
    gateway.fund('u1', 'USDC', 50.0)
    gateway.fund('u1', 'SOL', 2.0)

    async def _run():
        await cycles.on_buy('u1', 'SOL', 80.0, 2.0, 't1')
        return await reconciler.refresh(make_user('u1'))

    portfolio = asyncio.run(_run())
    assert portfolio.free_capital == pytest.approx(1050.0)
    assert portfolio.allocated_capital == pytest.approx(200.0)
    assert portfolio.total_value == pytest.approx(1250.0)
    assert [h.token for h in portfolio.holdings] == ['SOL']
    sol = portfolio.holding_for('SOL')
    assert sol.average_price == pytest.approx(80.0)
    assert sol.pnl == pytest.approx(40.0)
    assert sol.pnl_percentage == pytest.approx(25.0)
    assert store.portfolios['u1'].total_value == pytest.approx(1250.0)


def test_refresh_replaces_whole_snapshot():
    reconciler, gateway, store, _, clock = _reconciler()
    gateway.fund('u1', 'ETH', 3.0)

    async def _run():
        await reconciler.refresh(make_user('u1'))
        gateway.fund('u1', 'ETH', -3.0)
        clock.advance(60)
        return await reconciler.refresh(make_user('u1'))

    portfolio = asyncio.run(_run())
    assert portfolio.holdings == []
    assert store.portfolios['u1'].holdings == []


def test_failed_refresh_keeps_previous_snapshot():
    reconciler, gateway, store, _, clock = _reconciler()

    async def _run():
        first = await reconciler.refresh(make_user('u1'))
        clock.advance(300)
        gateway.fail_next('portfolio')
        second = await reconciler.refresh(make_user('u1'))
        return first, second

    first, second = asyncio.run(_run())
    assert second.updated_at == first.updated_at
    assert store.portfolios['u1'].updated_at == first.updated_at


def test_refresh_all_covers_connected_users():
    reconciler, _, store, _, _ = _reconciler()

    async def _run():
        await store.save_user(make_user('u1'))
        await store.save_user(make_user('u2', connected=False))
        return await reconciler.refresh_all()

    assert asyncio.run(_run()) == 1
    assert list(store.portfolios) == ['u1']
