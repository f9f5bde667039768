import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from api.metrics import metrics
from config import config
from risk.position_sizer import Sizing
from strategy.exceptions import DuplicateSignal, InvalidSizing, SignalBotError
from strategy.execution_types import Trade, User
from strategy.signal_manager import ExecutionWindow, Signal


logger = logging.getLogger(__name__)

ACTIONS = ('accept', 'accept-partial', 'skip')


@dataclass
class ActionResult:
    success: bool
    action: str
    signal_id: str
    user_id: str
    reason: Optional[str] = None
    trade: Optional[Trade] = None
    window: Optional[ExecutionWindow] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'action': self.action,
            'signal_id': self.signal_id,
            'user_id': self.user_id,
            'reason': self.reason,
            'trade': self.trade.to_dict() if self.trade else None,
            'state': self.window.state.value if self.window else None,
        }


class SignalActionService:
    """Manual accept / accept-partial / skip of a signal by one user."""

    def __init__(self, store, ingestor, manager, executor, eligibility=None):
        self.store = store
        self.ingestor = ingestor
        self.manager = manager
        self.executor = executor
        self.eligibility = eligibility

    async def handle_action(self, signal_id: str, user_id: str, action: str,
                            percentage: Optional[float] = None) -> ActionResult:
        result = ActionResult(success=False, action=action, signal_id=signal_id, user_id=user_id)
        if action not in ACTIONS:
            result.reason = f"unknown action {action}"
            return result

        user = await self.store.get_user(user_id)
        if user is None:
            result.reason = 'user not found'
            return result
        signal = await self.ingestor.resolve(signal_id)
        if signal is None:
            result.reason = 'signal not found'
            return result

        try:
            signal = await self.ingestor.materialize(signal)
            result.signal_id = signal.id
            if action == 'skip':
                result.window = await self.manager.skip(signal, user)
            else:
                result.window, result.trade = await self._accept(signal, user, action, percentage)
        except SignalBotError as exc:
            logger.info("Action %s on signal %s by user %s rejected: %s", action, signal_id, user_id, exc.message)
            result.reason = exc.reason
            return result

        metrics.record_window(result.window.state.value)
        result.success = True
        return result

    async def _accept(self, signal: Signal, user: User, action: str, percentage: Optional[float]):
        if action == 'accept-partial' and percentage is None:
            raise InvalidSizing("accept-partial requires a percentage")
        partial = percentage if action == 'accept-partial' else None
        window = await self.manager.claim_accept(signal, user, partial)
        sizing = Sizing.full() if partial is None else Sizing.partial(partial)
        try:
            trade = await self.executor.execute(user, signal, sizing, auto_executed=False)
        except SignalBotError:
            await self.manager.release(window)
            raise
        await self.manager.record_outcome(window, trade_id=trade.id)
        return window, trade

    async def eligible_signals(self, user: User) -> List[Dict[str, Any]]:
        """Signals to show a user, with countdown and any decision already taken."""
        signals = await self.ingestor.fetch_signals()
        portfolio = await self.store.get_portfolio(user.id)
        now = self.manager.clock()
        listed = []
        for signal in self.eligibility.filter_for_user(signals, user, portfolio, now):
            remaining = self.manager.remaining_seconds(signal, now)
            decided = None
            if not signal.is_provisional:
                decided = await self.store.get_action(signal.id, user.id)
            if remaining > 0 and decided is None:
                self.manager.open_window(signal, user)
            entry = signal.to_dict()
            entry['remaining_seconds'] = remaining
            entry['state'] = decided.state.value if decided else ('pending' if remaining > 0 else 'expired')
            listed.append(entry)
        metrics.update_pending_windows(len(self.manager.windows))
        return listed


class AutoExecutionService:
    """Unattended execution of signals whose window has passed.

    A signal is claimed once through the store's conditional update; each
    eligible user is then claimed separately so a manual decision taken
    earlier is respected. Results are collected per user and never abort the
    sweep.
    """

    def __init__(self, store, manager, eligibility, executor, sink=None,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.manager = manager
        self.eligibility = eligibility
        self.executor = executor
        self.sink = sink
        self.clock = clock

    async def run_sweep(self, now: Optional[float] = None) -> List[ActionResult]:
        now = self.clock() if now is None else now
        results: List[ActionResult] = []
        for signal in await self.store.find_unclaimed_expired_signals(now):
            try:
                if not await self.store.claim_signal_for_auto_execution(signal.id):
                    logger.debug("Signal %s already claimed by another sweep", signal.id)
                    continue
                signal.auto_executed = True
                metrics.record_auto_claim()
                users = await self.eligibility.eligible_users_for_signal(signal, now)
            except SignalBotError as exc:
                logger.error("Auto-execution of signal %s aborted: %s", signal.id, exc)
                results.append(ActionResult(False, 'auto-execute', signal.id, '', reason=exc.reason))
                continue

            logger.info("Auto-executing %s %s signal %s for %s users",
                        signal.direction.value, signal.token, signal.id, len(users))
            for user in users:
                results.append(await self._execute_for_user(signal, user))
        return results

    async def _execute_for_user(self, signal: Signal, user: User) -> ActionResult:
        result = ActionResult(False, 'auto-execute', signal.id, user.id)
        try:
            window = await self.manager.claim_auto(signal, user)
            if window is None:
                result.reason = 'already handled'
                metrics.record_auto_result('already_handled')
                return result
            result.window = window
            try:
                result.trade = await self.executor.execute(user, signal, Sizing.full(), auto_executed=True)
            except SignalBotError as exc:
                await self.manager.record_outcome(window, reason=exc.reason)
                raise
            await self.manager.record_outcome(window, trade_id=result.trade.id)
        except DuplicateSignal as exc:
            logger.info("Auto-execution of signal %s for user %s skipped: %s", signal.id, user.id, exc.message)
            result.reason = exc.reason
            metrics.record_auto_result('deduped')
            return result
        except SignalBotError as exc:
            logger.error("Auto-execution of signal %s for user %s failed: %s", signal.id, user.id, exc.message)
            result.reason = exc.reason
            metrics.record_auto_result('failed')
            await self._notify_failure(signal, user, exc.reason)
            return result
        except Exception as exc:
            logger.exception("Unexpected error auto-executing signal %s for user %s", signal.id, user.id)
            result.reason = str(exc)
            metrics.record_auto_result('error')
            await self._notify_failure(signal, user, result.reason)
            return result

        result.success = True
        metrics.record_window(window.state.value)
        metrics.record_auto_result('executed')
        return result

    async def _notify_failure(self, signal: Signal, user: User, reason: Optional[str]) -> None:
        if self.sink is None:
            return
        message = f"Failed to auto-execute {signal.direction.value} {signal.token} signal: {reason}"
        try:
            await self.sink.notify(user.id, message, 'system', signal.id)
        except Exception as exc:
            logger.error("Failure notification for user %s failed: %s", user.id, exc)


class SignalNotifier:
    """Notifies eligible users about fresh signals, once per (user, signal)."""

    def __init__(self, store, eligibility, sink, manager=None, clock: Callable[[], float] = time.time,
                 recent_minutes: Optional[float] = None):
        self.store = store
        self.eligibility = eligibility
        self.sink = sink
        self.manager = manager
        self.clock = clock
        if recent_minutes is None:
            recent_minutes = config.section('signals').get('notify_recent_minutes', 15)
        self.recent_s = float(recent_minutes) * 60.0

    async def notify_recent(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        sent = 0
        for signal in await self.store.list_signals(active_at=now, created_since=now - self.recent_s):
            try:
                users = await self.eligibility.notification_targets(signal, now)
            except SignalBotError as exc:
                logger.error("Could not resolve recipients for signal %s: %s", signal.id, exc)
                continue
            for user in users:
                try:
                    if await self._notify_user(signal, user):
                        sent += 1
                except SignalBotError as exc:
                    logger.error("Notification of signal %s to user %s failed: %s", signal.id, user.id, exc)
        if sent:
            logger.info("Sent %s signal notifications", sent)
        return sent

    async def _notify_user(self, signal: Signal, user: User) -> bool:
        if await self.store.has_notification(user.id, signal.id, 'signal'):
            return False
        message = f"New {signal.direction.value} signal for {signal.token} at {signal.price}"
        await self.store.insert_notification(user.id, message, 'signal', signal.id)
        if self.manager is not None:
            self.manager.open_window(signal, user)
        await self.sink.notify(user.id, message, 'signal', signal.id)
        return True
