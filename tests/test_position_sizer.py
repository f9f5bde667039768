import sys

sys.path.insert(0, '.')

import pytest

from risk.position_sizer import PositionSizer, Sizing
from strategy.exceptions import InsufficientCapital, InvalidSizing, NoHoldings
from strategy.execution_types import Direction, Holding, Portfolio


def _portfolio(total=1000.0, **amounts):
    return Portfolio(
        user_id='u1',
        total_value=total,
        free_capital=total,
        holdings=[Holding(token=t, amount=a) for t, a in amounts.items()],
    )


def test_buy_uses_fraction_of_total_value():
    sizer = PositionSizer(buy_fraction=0.10)
    assert sizer.quantity(Direction.BUY, 'SOL', 50.0, _portfolio(), Sizing.full()) == pytest.approx(2.0)
    assert sizer.quantity(Direction.BUY, 'SOL', 50.0, _portfolio(), Sizing.partial(50)) == pytest.approx(1.0)


def test_sell_uses_fraction_of_holding():
    sizer = PositionSizer(buy_fraction=0.10)
    portfolio = _portfolio(SOL=10.0)
    assert sizer.quantity(Direction.SELL, 'SOL', 120.0, portfolio, Sizing.full()) == pytest.approx(10.0)
    assert sizer.quantity(Direction.SELL, 'SOL', 120.0, portfolio, Sizing.partial(50)) == pytest.approx(5.0)


def test_sizing_failures():
    sizer = PositionSizer(buy_fraction=0.10)
    with pytest.raises(NoHoldings):
        sizer.quantity(Direction.SELL, 'XRP', 1.0, _portfolio(SOL=1.0), Sizing.full())
    with pytest.raises(InsufficientCapital):
        sizer.quantity(Direction.BUY, 'SOL', 1.0, _portfolio(total=0.0), Sizing.full())
    with pytest.raises(InvalidSizing):
        sizer.quantity(Direction.BUY, 'SOL', 1.0, _portfolio(), Sizing.partial(0))
    with pytest.raises(InvalidSizing):
        sizer.quantity(Direction.BUY, 'SOL', 0.0, _portfolio(), Sizing.full())
