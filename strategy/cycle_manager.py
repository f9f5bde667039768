import logging
import time
from typing import Callable, Dict, Iterable, List, Optional

from api.metrics import metrics
from config import config
from monitoring.async_utils import KeyedLock
from strategy.exceptions import DuplicateOpenCycle
from strategy.execution_types import Cycle, CycleState, PartialExit

logger = logging.getLogger(__name__)


class CycleManager:
    """Entry/hold/exit lifecycle of one position per (user, token).

    Every mutation runs under a per-(user, token) lock, and stores that enforce
    the single-open-cycle constraint signal a lost creation race with
    ``DuplicateOpenCycle``, after which the winner's cycle is accumulated into.
    """

    def __init__(self, store, clock: Callable[[], float] = time.time,
                 locks: Optional[KeyedLock] = None,
                 hold_after_minutes: Optional[float] = None,
                 buy_fraction: Optional[float] = None):
        settings = config.section('cycles')
        self.store = store
        self.clock = clock
        self.locks = locks or KeyedLock()
        if hold_after_minutes is None:
            hold_after_minutes = settings.get('hold_after_minutes', 60)
        self.hold_after_s = float(hold_after_minutes) * 60.0
        if buy_fraction is None:
            buy_fraction = config.section('execution').get('buy_fraction', 0.10)
        self.buy_fraction = float(buy_fraction)
        self.entry_guidance = settings.get('entry_guidance', 'Hold until exit signal or 10% profit')
        self.hold_guidance = settings.get('hold_guidance', 'Position accumulated; hold until exit signal')
        self.exit_guidance = settings.get('exit_guidance', 'Cycle completed')

    async def on_buy(self, user_id: str, token: str, price: float, amount: float,
                     trade_id: Optional[str]) -> Cycle:
        async with self.locks.acquire((user_id, token)):
            cycle = await self.store.find_open_cycle(user_id, token)
            if cycle is None:
                now = self.clock()
                cycle = Cycle(
                    user_id=user_id,
                    token=token,
                    entry_price=price,
                    entry_trade_id=trade_id,
                    entry_trade_ids=[trade_id] if trade_id else [],
                    entry_amount=amount,
                    state=CycleState.ENTRY,
                    guidance=self.entry_guidance,
                    created_at=now,
                    updated_at=now,
                )
                try:
                    await self.store.insert_cycle(cycle)
                except DuplicateOpenCycle:
                    logger.info("Open %s cycle for user %s appeared concurrently; accumulating", token, user_id)
                    cycle = await self.store.find_open_cycle(user_id, token)
                    if cycle is None:
                        raise
                else:
                    metrics.record_cycle_opened()
                    logger.info("Cycle %s opened: user=%s token=%s entry=%.8f amount=%.8f",
                                cycle.id, user_id, token, price, amount)
                    return cycle

            self._accumulate(cycle, price, amount, trade_id)
            await self.store.save_cycle(cycle)
            return cycle

    def _accumulate(self, cycle: Cycle, price: float, amount: float, trade_id: Optional[str]) -> None:
        held = cycle.remaining_amount
        total = held + amount
        if total > 0:
            cycle.entry_price = (cycle.entry_price * held + price * amount) / total
        cycle.entry_amount += amount
        if trade_id:
            cycle.entry_trade_ids.append(trade_id)
        cycle.state = CycleState.HOLD
        cycle.guidance = self.hold_guidance
        cycle.updated_at = self.clock()
        logger.info("Cycle %s accumulated %.8f %s at %.8f; entry now %.8f",
                    cycle.id, amount, cycle.token, price, cycle.entry_price)

    async def on_sell(self, user_id: str, token: str, price: float, amount: float,
                      trade_id: Optional[str], percentage: Optional[float] = None) -> Optional[Cycle]:
        async with self.locks.acquire((user_id, token)):
            cycle = await self.store.find_open_cycle(user_id, token)
            if cycle is None:
                logger.info("SELL of %s for user %s has no open cycle; trade recorded only", token, user_id)
                return None
            if percentage is None or percentage >= 100:
                self._close(cycle, price, amount, trade_id)
            else:
                self._partial_exit(cycle, price, amount, trade_id, percentage)
            await self.store.save_cycle(cycle)
            return cycle

    async def on_sell_cycle(self, cycle_id: str, price: float, amount: float,
                            trade_id: Optional[str], percentage: Optional[float] = None) -> Optional[Cycle]:
        cycle = await self.store.get_cycle(cycle_id)
        if cycle is None:
            return None
        return await self.on_sell(cycle.user_id, cycle.token, price, amount, trade_id, percentage)

    def _close(self, cycle: Cycle, price: float, amount: float, trade_id: Optional[str]) -> None:
        realized = cycle.pnl or 0.0
        final_leg = (price - cycle.entry_price) * amount
        total_sold = cycle.amount_sold + amount
        cycle.pnl = realized + final_leg
        cost = cycle.entry_price * total_sold
        cycle.pnl_percentage = cycle.pnl / cost * 100.0 if cost > 0 else 0.0
        cycle.amount_sold = total_sold
        cycle.exit_price = price
        cycle.exit_trade_id = trade_id
        cycle.state = CycleState.EXIT
        cycle.guidance = self.exit_guidance
        cycle.updated_at = self.clock()
        metrics.record_cycle_closed()
        metrics.record_pnl(final_leg)
        logger.info("Cycle %s exited at %.8f: pnl=%.8f (%.2f%%)",
                    cycle.id, price, cycle.pnl, cycle.pnl_percentage)

    def _partial_exit(self, cycle: Cycle, price: float, amount: float, trade_id: Optional[str],
                      percentage: float) -> None:
        leg = (price - cycle.entry_price) * amount
        now = self.clock()
        cycle.partial_exits.append(
            PartialExit(percentage=percentage, price=price, amount=amount, timestamp=now, trade_id=trade_id)
        )
        cycle.amount_sold += amount
        cycle.pnl = (cycle.pnl or 0.0) + leg
        cost = cycle.entry_price * cycle.amount_sold
        cycle.pnl_percentage = cycle.pnl / cost * 100.0 if cost > 0 else 0.0
        cycle.updated_at = now
        metrics.record_partial_exit()
        metrics.record_pnl(leg)
        logger.info("Cycle %s partial exit %.1f%% (%.8f at %.8f); running pnl=%.8f",
                    cycle.id, percentage, amount, price, cycle.pnl)

    async def promote_to_hold(self, now: Optional[float] = None) -> List[Cycle]:
        now = self.clock() if now is None else now
        promoted: List[Cycle] = []
        for stale in await self.store.list_cycles(states=[CycleState.ENTRY]):
            if now - stale.created_at < self.hold_after_s:
                continue
            async with self.locks.acquire((stale.user_id, stale.token)):
                cycle = await self.store.get_cycle(stale.id)
                if cycle is None or cycle.state != CycleState.ENTRY:
                    continue
                cycle.state = CycleState.HOLD
                cycle.guidance = self.hold_guidance
                cycle.updated_at = now
                await self.store.save_cycle(cycle)
                promoted.append(cycle)
                logger.info("Cycle %s moved to hold", cycle.id)
        return promoted

    async def complete_exited(self, user_id: str, held_tokens: Iterable[str]) -> List[Cycle]:
        held = set(held_tokens)
        completed: List[Cycle] = []
        for exited in await self.store.list_cycles(user_id=user_id, states=[CycleState.EXIT]):
            if exited.token in held:
                continue
            async with self.locks.acquire((user_id, exited.token)):
                cycle = await self.store.get_cycle(exited.id)
                if cycle is None or cycle.state != CycleState.EXIT:
                    continue
                cycle.state = CycleState.COMPLETED
                cycle.updated_at = self.clock()
                await self.store.save_cycle(cycle)
                completed.append(cycle)
                logger.info("Cycle %s completed", cycle.id)
        return completed

    async def accumulation(self, user_id: str, token: str) -> Dict[str, float]:
        """Read model of how much of the position has been built and unwound."""
        cycle = await self.store.find_open_cycle(user_id, token)
        if cycle is None:
            return {'buys': 0, 'allocated_percentage': 0.0, 'remaining_percentage': 0.0}
        buys = len(cycle.entry_trade_ids) or 1
        remaining = cycle.remaining_amount / cycle.entry_amount * 100.0 if cycle.entry_amount > 0 else 0.0
        return {
            'buys': buys,
            'allocated_percentage': buys * self.buy_fraction * 100.0,
            'remaining_percentage': remaining,
        }

    async def list_for_user(self, user_id: str, open_only: bool = False) -> List[Cycle]:
        states = [CycleState.ENTRY, CycleState.HOLD] if open_only else None
        return await self.store.list_cycles(user_id=user_id, states=states)
