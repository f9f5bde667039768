from dataclasses import dataclass
from typing import Optional
import logging

from config import config
from strategy.exceptions import InsufficientCapital, InvalidSizing, NoHoldings
from strategy.execution_types import Direction, Portfolio


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Sizing:
    """Sizing rule for one execution; ``percentage`` None means the full rule."""

    percentage: Optional[float] = None

    @classmethod
    def full(cls) -> 'Sizing':
        return cls()

    @classmethod
    def partial(cls, percentage: float) -> 'Sizing':
        return cls(percentage=percentage)

    @property
    def fraction(self) -> float:
        return 1.0 if self.percentage is None else float(self.percentage) / 100.0


class PositionSizer:
    def __init__(self, buy_fraction: Optional[float] = None):
        if buy_fraction is None:
            buy_fraction = config.section('execution').get('buy_fraction', 0.10)
        self.buy_fraction = float(buy_fraction)

    def trade_value(self, portfolio: Portfolio, sizing: Sizing) -> float:
        return portfolio.total_value * self.buy_fraction * sizing.fraction

    def quantity(self, direction: Direction, token: str, price: float,
                 portfolio: Portfolio, sizing: Sizing) -> float:
        if sizing.percentage is not None and not 0 < sizing.percentage <= 100:
            raise InvalidSizing(f"percentage must be within (0, 100], got {sizing.percentage}")

        if direction == Direction.BUY:
            trade_value = self.trade_value(portfolio, sizing)
            if trade_value <= 0:
                raise InsufficientCapital()
            if price <= 0:
                raise InvalidSizing(f"invalid price {price}")
            qty = trade_value / price
        else:
            held = portfolio.amount_of(token)
            if held <= 0:
                raise NoHoldings(f"no {token} holdings")
            qty = held * sizing.fraction

        if qty <= 0:
            raise InvalidSizing()
        logger.debug("Sized %s %s: qty=%.8f (fraction=%.2f)", direction.value, token, qty, sizing.fraction)
        return qty
