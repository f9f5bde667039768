import copy
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple

from strategy.exceptions import DuplicateOpenCycle
from strategy.execution_types import (
    Cycle,
    CycleState,
    Direction,
    Portfolio,
    RiskLevel,
    SignalTokenMark,
    Trade,
    User,
)
from strategy.signal_manager import ExecutionWindow, Signal


logger = logging.getLogger(__name__)


class DocumentStore(ABC):
    """Persistence boundary of the core.

    The claim methods are the only writes that must be atomic: each returns
    True for exactly one caller per key.
    """

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # signals
    @abstractmethod
    async def get_signal(self, signal_id: str) -> Optional[Signal]: ...

    @abstractmethod
    async def find_active_signal(self, direction: Direction, token: str, price: float,
                                 now: float) -> Optional[Signal]: ...

    @abstractmethod
    async def insert_signal(self, signal: Signal) -> None: ...

    @abstractmethod
    async def list_signals(self, active_at: Optional[float] = None,
                           created_since: Optional[float] = None) -> List[Signal]: ...

    @abstractmethod
    async def find_unclaimed_expired_signals(self, now: float) -> List[Signal]: ...

    @abstractmethod
    async def claim_signal_for_auto_execution(self, signal_id: str) -> bool: ...

    # execution windows
    @abstractmethod
    async def claim_action(self, window: ExecutionWindow) -> bool: ...

    @abstractmethod
    async def get_action(self, signal_id: str, user_id: str) -> Optional[ExecutionWindow]: ...

    @abstractmethod
    async def update_action(self, window: ExecutionWindow) -> None: ...

    @abstractmethod
    async def release_action(self, signal_id: str, user_id: str) -> None: ...

    # users
    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    async def save_user(self, user: User) -> None: ...

    @abstractmethod
    async def find_users(self, risk_level: Optional[RiskLevel] = None,
                         exchange_connected: Optional[bool] = None) -> List[User]: ...

    @abstractmethod
    async def claim_signal_token(self, user_id: str, mark: SignalTokenMark, window_s: float) -> bool:
        """Append ``mark`` unless the user already has one for the token within ``window_s``."""

    @abstractmethod
    async def release_signal_token(self, user_id: str, mark: SignalTokenMark) -> None: ...

    # trades
    @abstractmethod
    async def insert_trade(self, trade: Trade) -> None: ...

    @abstractmethod
    async def update_trade(self, trade: Trade) -> None: ...

    @abstractmethod
    async def list_trades(self, user_id: Optional[str] = None,
                          signal_id: Optional[str] = None) -> List[Trade]: ...

    # cycles
    @abstractmethod
    async def find_open_cycle(self, user_id: str, token: str) -> Optional[Cycle]: ...

    @abstractmethod
    async def insert_cycle(self, cycle: Cycle) -> None: ...

    @abstractmethod
    async def save_cycle(self, cycle: Cycle) -> None: ...

    @abstractmethod
    async def get_cycle(self, cycle_id: str) -> Optional[Cycle]: ...

    @abstractmethod
    async def list_cycles(self, user_id: Optional[str] = None,
                          states: Optional[Iterable[CycleState]] = None) -> List[Cycle]: ...

    # portfolios
    @abstractmethod
    async def get_portfolio(self, user_id: str) -> Optional[Portfolio]: ...

    @abstractmethod
    async def replace_portfolio(self, portfolio: Portfolio) -> None: ...

    # notifications
    @abstractmethod
    async def has_notification(self, user_id: str, related_id: str, kind: str = 'signal') -> bool: ...

    @abstractmethod
    async def insert_notification(self, user_id: str, message: str, kind: str,
                                  related_id: Optional[str]) -> None: ...


class InMemoryStore(DocumentStore):
    """Process-local store with document semantics.

    Reads and writes copy, so callers never share mutable state with the
    store. Claims check and set without awaiting in between, which makes them
    atomic on a single event loop.
    """

    def __init__(self):
        self.signals: Dict[str, Signal] = {}
        self.actions: Dict[Tuple[str, str], ExecutionWindow] = {}
        self.users: Dict[str, User] = {}
        self.trades: Dict[str, Trade] = {}
        self.cycles: Dict[str, Cycle] = {}
        self.portfolios: Dict[str, Portfolio] = {}
        self.notifications: List[Dict[str, Any]] = []

    @staticmethod
    def _copy(value):
        return copy.deepcopy(value)

    async def get_signal(self, signal_id: str) -> Optional[Signal]:
        return self._copy(self.signals.get(signal_id))

    async def find_active_signal(self, direction: Direction, token: str, price: float,
                                 now: float) -> Optional[Signal]:
        for signal in self.signals.values():
            if signal.identity() == (direction, token, price) and signal.expires_at > now:
                return self._copy(signal)
        return None

    async def insert_signal(self, signal: Signal) -> None:
        if signal.id in self.signals:
            raise KeyError(f"signal {signal.id} already stored")
        self.signals[signal.id] = self._copy(signal)

    async def list_signals(self, active_at: Optional[float] = None,
                           created_since: Optional[float] = None) -> List[Signal]:
        selected = []
        for signal in self.signals.values():
            if active_at is not None and signal.expires_at <= active_at:
                continue
            if created_since is not None and signal.created_at < created_since:
                continue
            selected.append(self._copy(signal))
        return sorted(selected, key=lambda s: s.created_at, reverse=True)

    async def find_unclaimed_expired_signals(self, now: float) -> List[Signal]:
        return [
            self._copy(signal)
            for signal in self.signals.values()
            if signal.expires_at < now and not signal.auto_executed
        ]

    async def claim_signal_for_auto_execution(self, signal_id: str) -> bool:
        signal = self.signals.get(signal_id)
        if signal is None or signal.auto_executed:
            return False
        signal.auto_executed = True
        return True

    async def claim_action(self, window: ExecutionWindow) -> bool:
        if window.key in self.actions:
            return False
        self.actions[window.key] = self._copy(window)
        return True

    async def get_action(self, signal_id: str, user_id: str) -> Optional[ExecutionWindow]:
        return self._copy(self.actions.get((signal_id, user_id)))

    async def update_action(self, window: ExecutionWindow) -> None:
        if window.key in self.actions:
            self.actions[window.key] = self._copy(window)

    async def release_action(self, signal_id: str, user_id: str) -> None:
        self.actions.pop((signal_id, user_id), None)

    async def get_user(self, user_id: str) -> Optional[User]:
        return self._copy(self.users.get(user_id))

    async def save_user(self, user: User) -> None:
        self.users[user.id] = self._copy(user)

    async def find_users(self, risk_level: Optional[RiskLevel] = None,
                         exchange_connected: Optional[bool] = None) -> List[User]:
        selected = []
        for user in self.users.values():
            if risk_level is not None and user.risk_level != risk_level:
                continue
            if exchange_connected is not None and user.exchange_connected != exchange_connected:
                continue
            selected.append(self._copy(user))
        return selected

    async def claim_signal_token(self, user_id: str, mark: SignalTokenMark, window_s: float) -> bool:
        user = self.users.get(user_id)
        if user is None:
            logger.warning("claim_signal_token: unknown user %s", user_id)
            return True
        if user.has_recent_signal(mark.token, mark.timestamp, window_s):
            return False
        user.last_signal_tokens.append(self._copy(mark))
        return True

    async def release_signal_token(self, user_id: str, mark: SignalTokenMark) -> None:
        user = self.users.get(user_id)
        if user is not None:
            user.last_signal_tokens = [m for m in user.last_signal_tokens if m != mark]

    async def insert_trade(self, trade: Trade) -> None:
        self.trades[trade.id] = self._copy(trade)

    async def update_trade(self, trade: Trade) -> None:
        self.trades[trade.id] = self._copy(trade)

    async def list_trades(self, user_id: Optional[str] = None,
                          signal_id: Optional[str] = None) -> List[Trade]:
        selected = [
            self._copy(trade)
            for trade in self.trades.values()
            if (user_id is None or trade.user_id == user_id)
            and (signal_id is None or trade.signal_id == signal_id)
        ]
        return sorted(selected, key=lambda t: t.created_at)

    async def find_open_cycle(self, user_id: str, token: str) -> Optional[Cycle]:
        for cycle in self.cycles.values():
            if cycle.user_id == user_id and cycle.token == token and cycle.is_open:
                return self._copy(cycle)
        return None

    async def insert_cycle(self, cycle: Cycle) -> None:
        if cycle.is_open:
            for existing in self.cycles.values():
                if existing.user_id == cycle.user_id and existing.token == cycle.token and existing.is_open:
                    raise DuplicateOpenCycle(f"open cycle {existing.id} exists for {cycle.user_id}/{cycle.token}")
        self.cycles[cycle.id] = self._copy(cycle)

    async def save_cycle(self, cycle: Cycle) -> None:
        self.cycles[cycle.id] = self._copy(cycle)

    async def get_cycle(self, cycle_id: str) -> Optional[Cycle]:
        return self._copy(self.cycles.get(cycle_id))

    async def list_cycles(self, user_id: Optional[str] = None,
                          states: Optional[Iterable[CycleState]] = None) -> List[Cycle]:
        wanted = set(states) if states is not None else None
        selected = [
            self._copy(cycle)
            for cycle in self.cycles.values()
            if (user_id is None or cycle.user_id == user_id)
            and (wanted is None or cycle.state in wanted)
        ]
        return sorted(selected, key=lambda c: c.created_at)

    async def get_portfolio(self, user_id: str) -> Optional[Portfolio]:
        return self._copy(self.portfolios.get(user_id))

    async def replace_portfolio(self, portfolio: Portfolio) -> None:
        self.portfolios[portfolio.user_id] = self._copy(portfolio)

    async def has_notification(self, user_id: str, related_id: str, kind: str = 'signal') -> bool:
        return any(
            n['user_id'] == user_id and n['related_id'] == related_id and n['kind'] == kind
            for n in self.notifications
        )

    async def insert_notification(self, user_id: str, message: str, kind: str,
                                  related_id: Optional[str]) -> None:
        self.notifications.append({
            'user_id': user_id,
            'message': message,
            'kind': kind,
            'related_id': related_id,
            'created_at': time.time(),
        })
