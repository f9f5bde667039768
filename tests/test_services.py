import asyncio
import sys
from datetime import datetime, timezone

sys.path.insert(0, '.')

from ingest.signal_ingestor import SignalIngestor
from orchestration.persistence import InMemoryStore
from orchestration.portfolio import PortfolioReconciler
from orchestration.services import AutoExecutionService, SignalActionService, SignalNotifier
from orchestration.trade_executor import TradeExecutionOrchestrator
from risk.position_sizer import PositionSizer
from strategy.cycle_manager import CycleManager
from strategy.eligibility import EligibilityFilter
from strategy.exceptions import DuplicateSignal
from strategy.execution_types import RiskLevel, TradeStatus
from strategy.signal_manager import ExecutionWindow, SignalManager, WindowState
from strategy.simulators.paper import PaperExchangeGateway
from tests.fakes import NOW, FakeSignalFeed, FixedClock, RecordingSink, make_signal, make_user


class Stack:
    def __init__(self, raw_signals=None):
        self.clock = FixedClock()
        self.store = InMemoryStore()
        self.feed = FakeSignalFeed(raw_signals or [])
        self.gateway = PaperExchangeGateway(prices={'SOL': 100.0}, initial_equity=1000.0,
                                            stablecoins=['USDT'])
        self.sink = RecordingSink()
        self.ingestor = SignalIngestor(self.feed, self.store, clock=self.clock, window_minutes=10)
        self.manager = SignalManager(self.store, clock=self.clock, dedupe_hours=24)
        self.eligibility = EligibilityFilter(self.store, clock=self.clock, dedupe_hours=24)
        self.cycles = CycleManager(self.store, clock=self.clock, buy_fraction=0.10)
        self.reconciler = PortfolioReconciler(self.gateway, self.store, cycles=self.cycles,
                                              stablecoins=['USDT'], clock=self.clock)
        self.executor = TradeExecutionOrchestrator(
            self.gateway, self.store, self.cycles, reconciler=self.reconciler, sink=self.sink,
            sizer=PositionSizer(buy_fraction=0.10), clock=self.clock,
        )
        self.actions = SignalActionService(self.store, self.ingestor, self.manager, self.executor,
                                           eligibility=self.eligibility)
        self.auto = AutoExecutionService(self.store, self.manager, self.eligibility, self.executor,
                                         sink=self.sink, clock=self.clock)
        self.notifier = SignalNotifier(self.store, self.eligibility, self.sink, manager=self.manager,
                                       clock=self.clock, recent_minutes=15)

    async def add_users(self, *users):
        for user in users:
            await self.store.save_user(user)


def _raw_sol():
    return {
        'token': 'SOL',
        'price': 100,
        'type': 'BUY',
        'riskLevel': 'medium',
        'createdAt': datetime.fromtimestamp(NOW, tz=timezone.utc).isoformat(),
    }


def test_listing_then_accepting_a_provisional_signal():
    stack = Stack([_raw_sol()])

    async def _run():
        await stack.add_users(make_user('u1'))
        user = await stack.store.get_user('u1')
        listed = await stack.actions.eligible_signals(user)
        result = await stack.actions.handle_action(listed[0]['id'], 'u1', 'accept')
        again = await stack.actions.handle_action(listed[0]['id'], 'u1', 'skip')
        return listed, result, again

    listed, result, again = asyncio.run(_run())
    assert len(listed) == 1
    assert listed[0]['id'].startswith('tmp_')
    assert listed[0]['remaining_seconds'] == 600
    assert listed[0]['state'] == 'pending'

    assert result.success
    assert not result.signal_id.startswith('tmp_')
    assert result.window.state == WindowState.ACCEPTED
    assert result.trade.amount == 1.0
    assert stack.store.actions[(result.signal_id, 'u1')].trade_id == result.trade.id

    assert not again.success
    assert again.reason == 'already handled'


def test_accept_after_window_is_rejected():
    stack = Stack([_raw_sol()])

    async def _run():
        await stack.add_users(make_user('u1'))
        signals = await stack.ingestor.fetch_signals()
        stack.clock.advance(601)
        return await stack.actions.handle_action(signals[0].id, 'u1', 'accept')

    result = asyncio.run(_run())
    assert not result.success
    assert result.reason == 'expired'
    assert stack.store.trades == {}


def test_failed_accept_releases_claim():
    stack = Stack([_raw_sol()])
    stack.gateway.fail_next('order')

    async def _run():
        await stack.add_users(make_user('u1'))
        signals = await stack.ingestor.fetch_signals()
        return await stack.actions.handle_action(signals[0].id, 'u1', 'accept')

    result = asyncio.run(_run())
    assert not result.success
    assert result.reason == 'trade execution failed'
    assert stack.store.actions == {}
    assert [t.status for t in stack.store.trades.values()] == [TradeStatus.FAILED]


def test_action_validation():
    stack = Stack([_raw_sol()])

    async def _run():
        await stack.add_users(make_user('u1'))
        signals = await stack.ingestor.fetch_signals()
        unknown = await stack.actions.handle_action(signals[0].id, 'u1', 'hold')
        partial = await stack.actions.handle_action(signals[0].id, 'u1', 'accept-partial')
        missing_user = await stack.actions.handle_action(signals[0].id, 'nobody', 'accept')
        missing_signal = await stack.actions.handle_action('nope', 'u1', 'accept')
        return unknown, partial, missing_user, missing_signal

    unknown, partial, missing_user, missing_signal = asyncio.run(_run())
    assert unknown.reason == 'unknown action hold'
    assert partial.reason == 'invalid order size'
    assert missing_user.reason == 'user not found'
    assert missing_signal.reason == 'signal not found'


def test_partial_accept_sizes_down():
    stack = Stack([_raw_sol()])

    async def _run():
        await stack.add_users(make_user('u1'))
        signals = await stack.ingestor.fetch_signals()
        return await stack.actions.handle_action(signals[0].id, 'u1', 'accept-partial', 50)

    result = asyncio.run(_run())
    assert result.success
    assert result.window.state == WindowState.PARTIALLY_ACCEPTED
    assert result.trade.amount == 0.5


async def _expired_signal(stack):
    signal = make_signal('sig-old', token='SOL', created_at=NOW - 700)
    await stack.store.insert_signal(signal)
    return signal


def test_sweep_executes_expired_signal_once_per_user():
    stack = Stack()

    async def _run():
        await stack.add_users(make_user('u1'), make_user('u2'), make_user('u3', risk_level=RiskLevel.HIGH))
        await _expired_signal(stack)
        first = await stack.auto.run_sweep()
        second = await stack.auto.run_sweep()
        return first, second

    first, second = asyncio.run(_run())
    assert sorted(r.user_id for r in first if r.success) == ['u1', 'u2']
    assert all(r.trade.auto_executed for r in first)
    assert second == []
    assert stack.store.signals['sig-old'].auto_executed
    assert stack.store.actions[('sig-old', 'u1')].state == WindowState.AUTO_EXECUTED


def test_concurrent_sweeps_execute_at_most_once():
    stack = Stack()

    async def _run():
        await stack.add_users(make_user('u1'), make_user('u2'))
        await _expired_signal(stack)
        return await asyncio.gather(stack.auto.run_sweep(), stack.auto.run_sweep())

    a, b = asyncio.run(_run())
    assert len([r for r in a + b if r.success]) == 2
    assert len(stack.store.trades) == 2


def test_sweep_respects_manual_decision_and_isolates_failures():
    stack = Stack()

    async def _run():
        await stack.add_users(make_user('u1'), make_user('u2'), make_user('u3'))
        signal = await _expired_signal(stack)
        await stack.store.claim_action(ExecutionWindow(signal.id, 'u1', signal.expires_at,
                                                       state=WindowState.SKIPPED, decided_at=NOW - 300))
        stack.gateway.fail_next('order')
        return await stack.auto.run_sweep()

    results = {r.user_id: r for r in asyncio.run(_run())}
    assert results['u1'].reason == 'already handled'
    assert results['u2'].reason == 'trade execution failed'
    assert results['u3'].success
    assert stack.store.actions[('sig-old', 'u1')].state == WindowState.SKIPPED
    assert stack.store.actions[('sig-old', 'u2')].reason == 'trade execution failed'


def test_sweep_skips_deduped_buyers():
    stack = Stack()

    async def _run():
        await stack.add_users(make_user('u1', recent_tokens=[('SOL', NOW - 60)]), make_user('u2'))
        await _expired_signal(stack)
        return await stack.auto.run_sweep()

    results = asyncio.run(_run())
    assert [r.user_id for r in results] == ['u2']


def test_notifier_sends_once_per_user_and_signal():
    stack = Stack()

    async def _run():
        await stack.add_users(make_user('u1', connected=False), make_user('u2', risk_level=RiskLevel.HIGH))
        await stack.store.insert_signal(make_signal('fresh', token='SOL'))
        first = await stack.notifier.notify_recent()
        second = await stack.notifier.notify_recent()
        return first, second

    first, second = asyncio.run(_run())
    assert first == 1
    assert second == 0
    assert [(n['user_id'], n['related_id']) for n in stack.sink.sent] == [('u1', 'fresh')]
    assert ('fresh', 'u1') in stack.manager.windows


def test_feed_signal_with_its_own_id_is_stored_and_swept():
    stack = Stack([dict(_raw_sol(), id='feed-42')])

    async def _run():
        await stack.add_users(make_user('u1'), make_user('u2'))
        user = await stack.store.get_user('u1')
        listed = await stack.actions.eligible_signals(user)
        accepted = await stack.actions.handle_action('feed-42', 'u1', 'accept')
        stack.clock.advance(3600)
        swept = await stack.auto.run_sweep()
        return listed, accepted, swept

    listed, accepted, swept = asyncio.run(_run())
    assert [s['id'] for s in listed] == ['feed-42']
    assert accepted.success
    assert accepted.signal_id == 'feed-42'
    assert list(stack.store.signals) == ['feed-42']
    assert [(r.user_id, r.success) for r in swept] == [('u2', True)]
    assert stack.store.signals['feed-42'].auto_executed


def test_overlapping_sweeps_buy_a_token_once_per_day():
    stack = Stack()

    async def _run():
        await stack.add_users(make_user('u1'))
        await stack.store.insert_signal(make_signal('a', token='SOL', created_at=NOW - 700))
        await stack.store.insert_signal(make_signal('b', token='SOL', price=101.0, created_at=NOW - 650))
        return await asyncio.gather(stack.auto.run_sweep(), stack.auto.run_sweep())

    a, b = asyncio.run(_run())
    completed = [t for t in stack.store.trades.values() if t.status == TradeStatus.COMPLETED]
    assert len(completed) == 1
    assert [m.token for m in stack.store.users['u1'].last_signal_tokens] == ['SOL']
    assert all(r.success or r.reason == DuplicateSignal.reason for r in a + b)
    assert [s for s in stack.sink.sent if s['kind'] == 'system'] == []


def test_failed_unattended_execution_notifies_user():
    stack = Stack()

    async def _run():
        await stack.add_users(make_user('u1'))
        await _expired_signal(stack)
        stack.gateway.fail_next('order')
        return await stack.auto.run_sweep()

    results = asyncio.run(_run())
    assert results[0].reason == 'trade execution failed'
    failures = [s for s in stack.sink.sent if s['kind'] == 'system']
    assert [(s['user_id'], s['related_id']) for s in failures] == [('u1', 'sig-old')]
    assert failures[0]['message'].startswith('Failed to auto-execute BUY SOL')
