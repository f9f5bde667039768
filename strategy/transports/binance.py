import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from ingest.binance_rest import BinanceAPIError, BinanceRESTClient

from config import config
from strategy.exceptions import ExchangeGatewayError
from strategy.execution_types import Holding, OrderTicket, Portfolio
from strategy.transports.gateway import ExchangeGateway


__all__ = ["BinanceGateway", "BinanceAPIError"]

logger = logging.getLogger(__name__)

CredentialsProvider = Callable[[str], Tuple[str, str]]


class BinanceGateway(ExchangeGateway):
    """Spot account adapter: balances, tickers, symbol checks and MARKET orders."""

    def __init__(self, credentials: Optional[CredentialsProvider] = None,
                 stablecoins: Optional[Iterable[str]] = None,
                 quote_asset: Optional[str] = None) -> None:
        self._credentials = credentials
        self._clients: Dict[str, BinanceRESTClient] = {}
        self._lock = asyncio.Lock()
        self.quote_asset = quote_asset or config.section('exchange').get('quote_asset', 'USDT')
        stable = stablecoins or config.section('portfolio').get('stablecoins') or ['USDT', 'USDC', 'BUSD', 'DAI']
        self.stablecoins = {s.upper() for s in stable}

    async def _client(self, user_id: str) -> BinanceRESTClient:
        async with self._lock:
            client = self._clients.get(user_id)
            if client is None:
                if self._credentials is not None:
                    api_key, api_secret = self._credentials(user_id)
                    client = BinanceRESTClient(api_key=api_key, api_secret=api_secret)
                else:
                    client = BinanceRESTClient()
                self._clients[user_id] = client
            return client

    async def get_price(self, user_id: str, symbol: str) -> float:
        rest = await self._client(user_id)
        data = await rest.get("/api/v3/ticker/price", params={"symbol": symbol})
        price = self._as_float(data.get("price")) if isinstance(data, dict) else None
        if price is None or price <= 0:
            raise ExchangeGatewayError(f"no price for {symbol}")
        return price

    async def validate_symbol(self, user_id: str, symbol: str) -> bool:
        rest = await self._client(user_id)
        try:
            data = await rest.get("/api/v3/exchangeInfo", params={"symbol": symbol})
        except BinanceAPIError as exc:
            if exc.code == -1121:
                return False
            raise
        symbols = data.get("symbols") if isinstance(data, dict) else None
        if not symbols:
            return False
        return symbols[0].get("status") == "TRADING"

    async def get_portfolio(self, user_id: str) -> Portfolio:
        rest = await self._client(user_id)
        data = await rest.get("/api/v3/account", signed=True)
        if not isinstance(data, dict):
            raise ExchangeGatewayError("unexpected account payload")

        free_capital = 0.0
        holdings = []
        for balance in data.get("balances") or []:
            asset = (balance.get("asset") or "").upper()
            amount = (self._as_float(balance.get("free")) or 0.0) + (self._as_float(balance.get("locked")) or 0.0)
            if amount <= 0:
                continue
            if asset in self.stablecoins:
                free_capital += amount
                continue
            try:
                price = await self.get_price(user_id, f"{asset}{self.quote_asset}")
            except ExchangeGatewayError as exc:
                # dust and delisted assets have no quote market
                logger.debug("Skipping %s balance without %s market: %s", asset, self.quote_asset, exc)
                continue
            holdings.append(Holding(token=asset, amount=amount, current_price=price, value=amount * price))

        allocated = sum(h.value for h in holdings)
        return Portfolio(
            user_id=user_id,
            total_value=free_capital + allocated,
            free_capital=free_capital,
            allocated_capital=allocated,
            holdings=holdings,
            updated_at=time.time(),
        )

    async def execute_trade(self, user_id: str, symbol: str, side: str, quantity: float) -> OrderTicket:
        rest = await self._client(user_id)
        params = {
            "symbol": symbol,
            "side": side.upper(),
            "type": "MARKET",
            "quantity": self._format_qty(quantity),
            "newOrderRespType": "FULL",
        }
        data = await rest.post("/api/v3/order", params=params, signed=True)
        ticket = self._parse_order_ack(data)
        if ticket is None:
            raise ExchangeGatewayError("order acknowledgement missing")
        if ticket.rejected:
            raise ExchangeGatewayError(f"order {ticket.id} {ticket.status}")
        return ticket

    async def close(self) -> None:
        async with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            await client.close()

    def _parse_order_ack(self, payload: Any) -> Optional[OrderTicket]:
        if not isinstance(payload, dict):
            return None
        executed = self._as_float(payload.get("executedQty")) or 0.0
        quote = self._as_float(payload.get("cummulativeQuoteQty"))
        price = quote / executed if quote and executed else self._as_float(payload.get("price"))
        if not price:
            fills = payload.get("fills") or []
            if fills:
                price = self._as_float(fills[0].get("price"))
        quantity = executed or self._as_float(payload.get("origQty")) or 0.0
        return OrderTicket(
            symbol=payload.get("symbol", ""),
            side=(payload.get("side") or "").upper(),
            quantity=quantity,
            status=payload.get("status"),
            price=price,
            client_order_id=payload.get("clientOrderId"),
            exchange_order_id=self._as_int(payload.get("orderId")),
            raw=payload,
        )

    @staticmethod
    def _format_qty(qty: float) -> str:
        return f"{qty:.8f}".rstrip("0").rstrip(".")

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _as_int(value: Any) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None
