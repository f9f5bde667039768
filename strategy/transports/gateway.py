from abc import ABC, abstractmethod

from strategy.execution_types import OrderTicket, Portfolio


class ExchangeGateway(ABC):
    """Authenticated view of one user's exchange account.

    Implementations raise ``ExchangeGatewayError`` for any failed call. Callers
    bound every call with a timeout; gateways do not retry on their own.
    """

    @abstractmethod
    async def get_portfolio(self, user_id: str) -> Portfolio:
        pass

    @abstractmethod
    async def get_price(self, user_id: str, symbol: str) -> float:
        pass

    @abstractmethod
    async def execute_trade(self, user_id: str, symbol: str, side: str, quantity: float) -> OrderTicket:
        pass

    @abstractmethod
    async def validate_symbol(self, user_id: str, symbol: str) -> bool:
        pass

    async def close(self) -> None:
        return None
