import asyncio
import logging
import time
from typing import Callable, Iterable, List, Optional

from api.metrics import metrics
from config import config
from monitoring.async_utils import with_timeout
from strategy.exceptions import ExchangeGatewayError, SignalBotError
from strategy.execution_types import OPEN_CYCLE_STATES, Holding, Portfolio, User


logger = logging.getLogger(__name__)


class PortfolioReconciler:
    """Rebuilds the cached portfolio snapshot from the exchange.

    A refresh always replaces the whole snapshot. When the exchange call fails
    the previous snapshot stays in place and is returned unchanged.
    """

    def __init__(self, gateway, store, cycles=None, timeout_s: Optional[float] = None,
                 stablecoins: Optional[Iterable[str]] = None,
                 clock: Callable[[], float] = time.time):
        self.gateway = gateway
        self.store = store
        self.cycles = cycles
        self.clock = clock
        self.timeout_s = float(timeout_s or config.section('execution').get('gateway_timeout_s', 10))
        stable = stablecoins or config.section('portfolio').get('stablecoins') or ['USDT', 'USDC', 'BUSD', 'DAI']
        self.stablecoins = {s.upper() for s in stable}
        self.running = False

    async def refresh(self, user: User) -> Optional[Portfolio]:
        try:
            fresh = await with_timeout(self.gateway.get_portfolio(user.id), self.timeout_s, 'get_portfolio')
        except ExchangeGatewayError as exc:
            metrics.record_reconciliation(False)
            logger.warning("Portfolio refresh for user %s failed, keeping previous snapshot: %s", user.id, exc)
            return await self.store.get_portfolio(user.id)

        portfolio = await self._rebuild(user.id, fresh)
        await self.store.replace_portfolio(portfolio)
        metrics.record_reconciliation(True)
        logger.debug("Portfolio for user %s: total=%.2f free=%.2f holdings=%s",
                     user.id, portfolio.total_value, portfolio.free_capital, len(portfolio.holdings))

        if self.cycles is not None:
            await self.cycles.complete_exited(user.id, portfolio.held_tokens())
        return portfolio

    async def _rebuild(self, user_id: str, fresh: Portfolio) -> Portfolio:
        entries = {}
        for cycle in await self.store.list_cycles(user_id=user_id, states=OPEN_CYCLE_STATES):
            entries[cycle.token] = cycle.entry_price

        free_capital = fresh.free_capital
        holdings: List[Holding] = []
        for raw in fresh.holdings:
            token = raw.token.upper()
            if token in self.stablecoins:
                free_capital += raw.amount
                continue
            if raw.amount <= 0:
                continue
            current = raw.current_price or (raw.value / raw.amount if raw.value else 0.0)
            holding = Holding(token=token, amount=raw.amount, current_price=current,
                              value=raw.value or raw.amount * current)
            entry = entries.get(token)
            if entry:
                holding.average_price = entry
                holding.pnl = (current - entry) * raw.amount
                holding.pnl_percentage = (current - entry) / entry * 100.0
            holdings.append(holding)

        allocated = sum(h.value for h in holdings)
        return Portfolio(
            user_id=user_id,
            total_value=free_capital + allocated,
            free_capital=free_capital,
            allocated_capital=allocated,
            holdings=holdings,
            updated_at=self.clock(),
        )

    async def refresh_all(self) -> int:
        refreshed = 0
        for user in await self.store.find_users(exchange_connected=True):
            try:
                if await self.refresh(user) is not None:
                    refreshed += 1
            except SignalBotError as exc:
                logger.error("Portfolio refresh for user %s aborted: %s", user.id, exc)
        return refreshed

    async def poll(self, interval_s: Optional[float] = None):
        interval_s = float(interval_s or config.section('portfolio').get('refresh_interval_s', 300))
        self.running = True
        try:
            while self.running:
                count = await self.refresh_all()
                logger.info("Portfolio poll refreshed %s users", count)
                try:
                    await asyncio.sleep(interval_s)
                except asyncio.CancelledError:
                    break
        finally:
            self.running = False

    def stop(self):
        self.running = False
