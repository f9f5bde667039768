import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from api.metrics import metrics
from config import config
from monitoring.async_utils import RetryPolicy, with_timeout
from risk.position_sizer import PositionSizer, Sizing
from strategy.exceptions import (
    DuplicateSignal,
    ExchangeGatewayError,
    ExchangeNotConnected,
    InvalidSizing,
    NoHoldings,
    SignalBotError,
    TradeExecutionFailed,
)
from strategy.execution_types import (
    Direction,
    Portfolio,
    SignalTokenMark,
    Trade,
    TradeStatus,
    User,
    symbol_for,
)
from strategy.signal_manager import Signal


logger = logging.getLogger(__name__)


class TradeExecutionOrchestrator:
    """Turns an accepted signal into an exchange order and its bookkeeping.

    Steps run in a fixed order: resolve holdings, size, submit, record the
    trade and cycle, mark the BUY token, reconcile, notify. Sizing and state
    failures raise typed ``SignalStateError`` subclasses; exchange rejections
    raise ``TradeExecutionFailed`` after a failed Trade has been recorded.
    """

    def __init__(self, gateway, store, cycles, reconciler=None, sink=None,
                 sizer: Optional[PositionSizer] = None, auditor=None,
                 sell_retry: Optional[RetryPolicy] = None,
                 timeout_s: Optional[float] = None,
                 dedupe_hours: Optional[float] = None,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        execution = config.section('execution')
        self.gateway = gateway
        self.store = store
        self.cycles = cycles
        self.reconciler = reconciler
        self.sink = sink
        self.sizer = sizer or PositionSizer()
        self.auditor = auditor
        self.clock = clock
        self.sleep = sleep
        self.timeout_s = float(timeout_s or execution.get('gateway_timeout_s', 10))
        self.quote_asset = config.section('exchange').get('quote_asset', 'USDT')
        self.dedupe_window_s = float(dedupe_hours or config.section('signals').get('dedupe_hours', 24)) * 3600.0
        self.sell_retry = sell_retry or RetryPolicy.fixed(
            execution.get('sell_retry_attempts', 3),
            execution.get('sell_retry_backoff_s', 1.0),
            retry_on=(ExchangeGatewayError,),
        )

    async def execute(self, user: User, signal: Signal, sizing: Sizing,
                      auto_executed: bool = False) -> Trade:
        started = time.monotonic()
        quantity = None
        mark = None
        trade = None
        try:
            portfolio = await self._resolve_portfolio(user)
            quantity = self.sizer.quantity(signal.direction, signal.token, signal.price, portfolio, sizing)
            if signal.direction == Direction.BUY:
                mark = await self._claim_token(user, signal.token)
            trade = await self._submit(
                user,
                signal.direction,
                signal.token,
                quantity,
                reference_price=signal.price,
                signal_id=signal.id,
                auto_executed=auto_executed,
                retry=RetryPolicy.none(),
            )

            if signal.direction == Direction.BUY:
                cycle = await self.cycles.on_buy(user.id, signal.token, trade.price, trade.amount, trade.id)
            else:
                cycle = await self.cycles.on_sell(
                    user.id, signal.token, trade.price, trade.amount, trade.id, sizing.percentage
                )
            if cycle is not None:
                trade.cycle_id = cycle.id
                await self.store.update_trade(trade)
        except SignalBotError as exc:
            if mark is not None and trade is None:
                await self.store.release_signal_token(user.id, mark)
            self._audit(user, signal, signal.direction, signal.token, quantity, exc, started)
            raise

        latency = time.monotonic() - started
        metrics.record_trade(signal.direction.value, auto_executed, True, latency)
        await self._reconcile(user)
        await self._notify(user, trade)
        if self.auditor:
            self.auditor.record_execution(user, signal, signal.direction.value, signal.token, quantity,
                                          'completed', latency_s=latency, trade=trade)
        logger.info("Executed %s %.8f %s for user %s at %.8f (signal=%s auto=%s)",
                    signal.direction.value, trade.amount, signal.token, user.id, trade.price,
                    signal.id, auto_executed)
        return trade

    async def sell_position(self, user: User, cycle_id: str, percentage: float = 100.0) -> Trade:
        """Sell part or all of the holding behind an open cycle, retrying submission."""
        started = time.monotonic()
        if not 0 < percentage <= 100:
            raise InvalidSizing(f"percentage must be within (0, 100], got {percentage}")
        if not user.exchange_connected:
            raise ExchangeNotConnected()

        cycle = await self.store.get_cycle(cycle_id)
        if cycle is None or cycle.user_id != user.id or not cycle.is_open:
            raise NoHoldings(f"no open cycle {cycle_id}")

        quantity = None
        try:
            portfolio = await self._resolve_portfolio(user)
            holding = portfolio.holding_for(cycle.token)
            reference_price = holding.current_price if holding and holding.current_price else cycle.entry_price
            sizing = Sizing.full() if percentage >= 100 else Sizing.partial(percentage)
            quantity = self.sizer.quantity(Direction.SELL, cycle.token, reference_price, portfolio, sizing)
            trade = await self._submit(
                user,
                Direction.SELL,
                cycle.token,
                quantity,
                reference_price=reference_price,
                cycle_id=cycle.id,
                retry=self.sell_retry,
            )
            await self.cycles.on_sell(user.id, cycle.token, trade.price, trade.amount, trade.id,
                                      None if percentage >= 100 else percentage)
        except SignalBotError as exc:
            self._audit(user, None, Direction.SELL, cycle.token, quantity, exc, started)
            raise

        latency = time.monotonic() - started
        metrics.record_trade(Direction.SELL.value, False, True, latency)
        await self._reconcile(user)
        await self._notify(user, trade)
        if self.auditor:
            self.auditor.record_execution(user, None, Direction.SELL.value, cycle.token, quantity,
                                          'completed', latency_s=latency, trade=trade)
        return trade

    async def _resolve_portfolio(self, user: User) -> Portfolio:
        try:
            return await with_timeout(self.gateway.get_portfolio(user.id), self.timeout_s, 'get_portfolio')
        except ExchangeGatewayError as exc:
            cached = await self.store.get_portfolio(user.id)
            if cached is None:
                raise TradeExecutionFailed(f"portfolio unavailable: {exc}") from exc
            metrics.record_degraded_execution()
            logger.warning("Exchange portfolio unavailable for user %s (%s); sizing from cached snapshot", user.id, exc)
            return cached

    async def _submit(self, user: User, direction: Direction, token: str, quantity: float,
                      reference_price: float, signal_id: Optional[str] = None,
                      cycle_id: Optional[str] = None, auto_executed: bool = False,
                      retry: Optional[RetryPolicy] = None) -> Trade:
        symbol = symbol_for(token, self.quote_asset)
        retry = retry or RetryPolicy.none()
        try:
            ticket = await retry.run(
                lambda: with_timeout(
                    self.gateway.execute_trade(user.id, symbol, direction.value, quantity),
                    self.timeout_s,
                    'execute_trade',
                ),
                action=f"{direction.value} {symbol}",
                sleep=self.sleep,
            )
        except ExchangeGatewayError as exc:
            trade = Trade(
                user_id=user.id,
                direction=direction,
                token=token,
                price=reference_price,
                amount=quantity,
                status=TradeStatus.FAILED,
                signal_id=signal_id,
                cycle_id=cycle_id,
                auto_executed=auto_executed,
                error=exc.message,
                created_at=self.clock(),
            )
            await self.store.insert_trade(trade)
            metrics.record_trade(direction.value, auto_executed, False)
            logger.error("Order %s %.8f %s for user %s failed: %s", direction.value, quantity, symbol, user.id, exc)
            raise TradeExecutionFailed(exc.message, trade=trade) from exc

        trade = Trade(
            user_id=user.id,
            direction=direction,
            token=token,
            price=ticket.price or reference_price,
            amount=ticket.quantity or quantity,
            status=TradeStatus.COMPLETED,
            signal_id=signal_id,
            cycle_id=cycle_id,
            auto_executed=auto_executed,
            order_id=ticket.id,
            created_at=self.clock(),
        )
        await self.store.insert_trade(trade)
        return trade

    async def _reconcile(self, user: User) -> None:
        if self.reconciler is None:
            return
        try:
            await self.reconciler.refresh(user)
        except SignalBotError as exc:
            logger.warning("Post-trade reconciliation for user %s failed: %s", user.id, exc)

    async def _claim_token(self, user: User, token: str) -> SignalTokenMark:
        """Mark the BUY token before the order so overlapping BUYs cannot both pass the dedupe."""
        mark = SignalTokenMark(token=token, timestamp=self.clock())
        if not await self.store.claim_signal_token(user.id, mark, self.dedupe_window_s):
            raise DuplicateSignal()
        return mark

    async def _notify(self, user: User, trade: Trade) -> None:
        if self.sink is None:
            return
        prefix = 'Auto-executed' if trade.auto_executed else 'Executed'
        message = f"{prefix} {trade.direction.value} {trade.amount:.6f} {trade.token} at {trade.price}"
        try:
            await self.sink.notify(user.id, message, 'trade', trade.id)
        except Exception as exc:
            logger.error("Trade notification for user %s failed: %s", user.id, exc)

    def _audit(self, user: User, signal: Optional[Signal], direction: Direction, token: str,
               quantity: Optional[float], exc: SignalBotError, started: float) -> None:
        if self.auditor is None:
            return
        trade = exc.trade if isinstance(exc, TradeExecutionFailed) else None
        self.auditor.record_execution(
            user, signal, direction.value, token, quantity, exc.reason,
            latency_s=time.monotonic() - started, trade=trade, details={'message': exc.message},
        )
