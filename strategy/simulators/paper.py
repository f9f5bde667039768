import uuid
from collections import defaultdict
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from config import config
from strategy.exceptions import ExchangeGatewayError
from strategy.execution_types import Holding, OrderTicket, Portfolio
from strategy.transports.gateway import ExchangeGateway


class PaperExchangeGateway(ExchangeGateway):
    """In-memory exchange: per-user balances, settable prices, injectable failures."""

    def __init__(self, prices: Optional[Dict[str, float]] = None, initial_equity: Optional[float] = None,
                 quote_asset: str = 'USDT', stablecoins: Optional[Iterable[str]] = None) -> None:
        if initial_equity is None:
            initial_equity = config.section('exchange').get('paper_equity', 1000.0)
        self.initial_equity = float(initial_equity)
        self.quote_asset = quote_asset
        stable = stablecoins or config.section('portfolio').get('stablecoins') or ['USDT', 'USDC', 'BUSD', 'DAI']
        self.stablecoins = {s.upper() for s in stable}
        self._prices: Dict[str, float] = {k.upper(): float(v) for k, v in (prices or {}).items()}
        self._balances: Dict[str, Dict[str, float]] = {}
        self._orders: List[OrderTicket] = []
        self._failures: Dict[str, List[Exception]] = defaultdict(list)

    @property
    def orders(self) -> List[OrderTicket]:
        return list(self._orders)

    def balances(self, user_id: str) -> Mapping[str, float]:
        return MappingProxyType(self._account(user_id))

    def set_price(self, token: str, price: float) -> None:
        self._prices[token.upper()] = float(price)

    def fund(self, user_id: str, asset: str, amount: float) -> None:
        account = self._account(user_id)
        account[asset.upper()] = account.get(asset.upper(), 0.0) + float(amount)

    def fail_next(self, operation: str, error: Optional[Exception] = None, times: int = 1) -> None:
        """Queue failures for ``operation`` (portfolio, price, order, validate)."""
        for _ in range(times):
            self._failures[operation].append(error or ExchangeGatewayError(f"simulated {operation} failure"))

    def _maybe_fail(self, operation: str) -> None:
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)

    def _account(self, user_id: str) -> Dict[str, float]:
        account = self._balances.get(user_id)
        if account is None:
            account = {self.quote_asset: self.initial_equity}
            self._balances[user_id] = account
        return account

    def _token(self, symbol: str) -> str:
        symbol = symbol.upper()
        if not symbol.endswith(self.quote_asset):
            raise ExchangeGatewayError(f"unsupported symbol {symbol}")
        return symbol[: -len(self.quote_asset)]

    async def get_price(self, user_id: str, symbol: str) -> float:
        self._maybe_fail('price')
        token = self._token(symbol)
        price = self._prices.get(token)
        if price is None:
            raise ExchangeGatewayError(f"no price for {symbol}")
        return price

    async def validate_symbol(self, user_id: str, symbol: str) -> bool:
        self._maybe_fail('validate')
        try:
            return self._token(symbol) in self._prices
        except ExchangeGatewayError:
            return False

    async def get_portfolio(self, user_id: str) -> Portfolio:
        self._maybe_fail('portfolio')
        free_capital = 0.0
        holdings = []
        for asset, amount in self._account(user_id).items():
            if amount <= 0:
                continue
            if asset in self.stablecoins:
                free_capital += amount
                continue
            price = self._prices.get(asset, 0.0)
            holdings.append(Holding(token=asset, amount=amount, current_price=price, value=amount * price))
        allocated = sum(h.value for h in holdings)
        return Portfolio(
            user_id=user_id,
            total_value=free_capital + allocated,
            free_capital=free_capital,
            allocated_capital=allocated,
            holdings=holdings,
        )

    async def execute_trade(self, user_id: str, symbol: str, side: str, quantity: float) -> OrderTicket:
        self._maybe_fail('order')
        if quantity <= 0:
            raise ExchangeGatewayError("quantity must be positive")
        token = self._token(symbol)
        price = await self.get_price(user_id, symbol)
        account = self._account(user_id)
        side = side.upper()
        if side == 'BUY':
            cost = quantity * price
            if account.get(self.quote_asset, 0.0) + 1e-9 < cost:
                raise ExchangeGatewayError("insufficient balance")
            account[self.quote_asset] = account.get(self.quote_asset, 0.0) - cost
            account[token] = account.get(token, 0.0) + quantity
        elif side == 'SELL':
            held = account.get(token, 0.0)
            if held + 1e-12 < quantity:
                raise ExchangeGatewayError("insufficient balance")
            account[token] = max(held - quantity, 0.0)
            account[self.quote_asset] = account.get(self.quote_asset, 0.0) + quantity * price
        else:
            raise ExchangeGatewayError(f"unsupported side {side}")

        ticket = OrderTicket(
            symbol=symbol.upper(),
            side=side,
            quantity=quantity,
            price=price,
            status='FILLED',
            client_order_id=f"paper-{uuid.uuid4().hex[:8]}",
            raw={'user_id': user_id},
        )
        self._orders.append(ticket)
        return ticket

