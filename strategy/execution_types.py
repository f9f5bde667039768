import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


def new_id() -> str:
    return uuid.uuid4().hex


def symbol_for(token: str, quote: str = 'USDT') -> str:
    return f"{token.upper()}{quote}"


class Direction(Enum):
    BUY = "BUY"
    SELL = "SELL"


class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def from_score(cls, risk: float) -> 'RiskLevel':
        if risk < 30:
            return cls.LOW
        if risk < 70:
            return cls.MEDIUM
        return cls.HIGH


class TradeStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class CycleState(Enum):
    ENTRY = "entry"
    HOLD = "hold"
    EXIT = "exit"
    COMPLETED = "completed"


OPEN_CYCLE_STATES = (CycleState.ENTRY, CycleState.HOLD)


@dataclass
class OrderTicket:
    """Normalized view of an order acknowledgement across live and paper flows."""

    symbol: str
    side: str
    quantity: float
    price: Optional[float] = None
    status: Optional[str] = None
    client_order_id: Optional[str] = None
    exchange_order_id: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        if self.client_order_id:
            return self.client_order_id
        if self.exchange_order_id is not None:
            return str(self.exchange_order_id)
        fallback = self.raw.get("id")
        if fallback is not None:
            return str(fallback)
        return "order"

    @property
    def rejected(self) -> bool:
        return (self.status or '').upper() in ('REJECTED', 'EXPIRED', 'CANCELED')

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side,
            "status": self.status,
            "quantity": self.quantity,
            "price": self.price,
            "client_order_id": self.client_order_id,
            "exchange_order_id": self.exchange_order_id,
        }


@dataclass
class Holding:
    token: str
    amount: float
    average_price: float = 0.0
    current_price: float = 0.0
    value: float = 0.0
    pnl: float = 0.0
    pnl_percentage: float = 0.0


@dataclass
class Portfolio:
    user_id: str
    total_value: float = 0.0
    free_capital: float = 0.0
    allocated_capital: float = 0.0
    holdings: List[Holding] = field(default_factory=list)
    updated_at: float = field(default_factory=time.time)

    def holding_for(self, token: str) -> Optional[Holding]:
        for holding in self.holdings:
            if holding.token == token:
                return holding
        return None

    def amount_of(self, token: str) -> float:
        holding = self.holding_for(token)
        return holding.amount if holding else 0.0

    def held_tokens(self) -> List[str]:
        return [h.token for h in self.holdings if h.amount > 0]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['updated_at'] = int(self.updated_at * 1000)
        return data


@dataclass
class SignalTokenMark:
    token: str
    timestamp: float


@dataclass
class User:
    id: str
    risk_level: RiskLevel = RiskLevel.MEDIUM
    exchange_connected: bool = False
    exchange: Optional[str] = None
    credentials_ref: Optional[str] = None
    auto_trade_enabled: bool = True
    last_signal_tokens: List[SignalTokenMark] = field(default_factory=list)

    def has_recent_signal(self, token: str, now: float, window_s: float) -> bool:
        return any(
            mark.token == token and now - mark.timestamp < window_s
            for mark in self.last_signal_tokens
        )


@dataclass
class Trade:
    user_id: str
    direction: Direction
    token: str
    price: float
    amount: float
    status: TradeStatus = TradeStatus.PENDING
    signal_id: Optional[str] = None
    cycle_id: Optional[str] = None
    auto_executed: bool = False
    order_id: Optional[str] = None
    error: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'signal_id': self.signal_id,
            'cycle_id': self.cycle_id,
            'direction': self.direction.value,
            'token': self.token,
            'price': self.price,
            'amount': self.amount,
            'status': self.status.value,
            'auto_executed': self.auto_executed,
            'order_id': self.order_id,
            'error': self.error,
            'timestamp': int(self.created_at * 1000),
        }


@dataclass
class PartialExit:
    percentage: float
    price: float
    amount: float
    timestamp: float
    trade_id: Optional[str] = None


@dataclass
class Cycle:
    user_id: str
    token: str
    entry_price: float
    entry_trade_id: Optional[str] = None
    entry_trade_ids: List[str] = field(default_factory=list)
    entry_amount: float = 0.0
    amount_sold: float = 0.0
    state: CycleState = CycleState.ENTRY
    exit_trade_id: Optional[str] = None
    exit_price: Optional[float] = None
    pnl: Optional[float] = None
    pnl_percentage: Optional[float] = None
    partial_exits: List[PartialExit] = field(default_factory=list)
    guidance: str = ''
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def is_open(self) -> bool:
        return self.state in OPEN_CYCLE_STATES

    @property
    def remaining_amount(self) -> float:
        return max(self.entry_amount - self.amount_sold, 0.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'token': self.token,
            'state': self.state.value,
            'entry_trade_id': self.entry_trade_id,
            'entry_trade_ids': list(self.entry_trade_ids),
            'exit_trade_id': self.exit_trade_id,
            'entry_price': self.entry_price,
            'entry_amount': self.entry_amount,
            'amount_sold': self.amount_sold,
            'exit_price': self.exit_price,
            'pnl': self.pnl,
            'pnl_percentage': self.pnl_percentage,
            'partial_exits': [asdict(p) for p in self.partial_exits],
            'guidance': self.guidance,
            'created_at': int(self.created_at * 1000),
            'updated_at': int(self.updated_at * 1000),
        }
