from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional
import logging
import time

from strategy.exceptions import (
    DuplicateSignal,
    ExchangeNotConnected,
    InvalidSizing,
    SignalAlreadyHandled,
    SignalExpired,
    SignalNotMaterialized,
)
from strategy.execution_types import Direction, RiskLevel, User

logger = logging.getLogger(__name__)

PROVISIONAL_PREFIX = 'tmp_'


class WindowState(Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PARTIALLY_ACCEPTED = "partially-accepted"
    SKIPPED = "skipped"
    AUTO_EXECUTED = "auto-executed"
    EXPIRED = "expired"


@dataclass
class Signal:
    id: str
    direction: Direction
    token: str
    price: float
    risk_level: RiskLevel
    created_at: float
    expires_at: float
    risk_score: Optional[float] = None
    auto_executed: bool = False
    link: Optional[str] = None
    positives: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    warning_count: int = 0

    @property
    def is_provisional(self) -> bool:
        return self.id.startswith(PROVISIONAL_PREFIX)

    def identity(self):
        return (self.direction, self.token, self.price)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'direction': self.direction.value,
            'token': self.token,
            'price': self.price,
            'risk_level': self.risk_level.value,
            'risk_score': self.risk_score,
            'created_at': int(self.created_at * 1000),
            'expires_at': int(self.expires_at * 1000),
            'auto_executed': self.auto_executed,
            'link': self.link,
            'positives': list(self.positives),
            'warnings': list(self.warnings),
            'warning_count': self.warning_count,
        }


@dataclass
class ExecutionWindow:
    """Decision record for one (signal, user) pair."""

    signal_id: str
    user_id: str
    expires_at: float
    state: WindowState = WindowState.PENDING
    percentage: Optional[float] = None
    trade_id: Optional[str] = None
    decided_at: Optional[float] = None
    reason: Optional[str] = None

    @property
    def key(self):
        return (self.signal_id, self.user_id)

    def to_dict(self) -> Dict:
        return {
            'signal_id': self.signal_id,
            'user_id': self.user_id,
            'state': self.state.value,
            'expires_at': int(self.expires_at * 1000),
            'percentage': self.percentage,
            'trade_id': self.trade_id,
            'decided_at': int(self.decided_at * 1000) if self.decided_at else None,
            'reason': self.reason,
        }


@dataclass
class Transition:
    signal_id: str
    user_id: str
    from_state: str
    to_state: str
    action: str
    window: Optional[ExecutionWindow] = None


from .signal_states import PendingWindowState


class SignalManager:
    """Owns the time-boxed execution window of every (signal, user) pair.

    Deadlines are wall-clock: a window is open while ``expires_at`` lies in the
    future, and every decision is claimed through the store so a manual action
    and the unattended sweep can never both decide the same pair.
    """

    def __init__(self, store, clock: Callable[[], float] = time.time,
                 dedupe_hours: float = 24.0):
        self.store = store
        self.clock = clock
        self.dedupe_window_s = dedupe_hours * 3600.0
        self.windows: Dict[tuple, ExecutionWindow] = {}

        self.state_map = {
            WindowState.PENDING: PendingWindowState,
        }

    def remaining_seconds(self, signal: Signal, now: Optional[float] = None) -> float:
        now = self.clock() if now is None else now
        return max(signal.expires_at - now, 0.0)

    def is_open(self, signal: Signal, now: Optional[float] = None) -> bool:
        return self.remaining_seconds(signal, now) > 0

    def open_window(self, signal: Signal, user: User) -> ExecutionWindow:
        key = (signal.id, user.id)
        window = self.windows.get(key)
        if window is None:
            window = ExecutionWindow(signal_id=signal.id, user_id=user.id, expires_at=signal.expires_at)
            self.windows[key] = window
        return window

    def _check_actionable(self, signal: Signal, now: float) -> None:
        if signal.is_provisional:
            raise SignalNotMaterialized()
        if not self.is_open(signal, now):
            raise SignalExpired()

    async def _claim(self, signal: Signal, user: User, state: WindowState, now: float,
                     percentage: Optional[float] = None) -> Optional[ExecutionWindow]:
        window = ExecutionWindow(
            signal_id=signal.id,
            user_id=user.id,
            expires_at=signal.expires_at,
            state=state,
            percentage=percentage,
            decided_at=now,
        )
        if not await self.store.claim_action(window):
            return None
        self.windows.pop(window.key, None)
        logger.info("Window %s/%s: pending -> %s", signal.id, user.id, state.value)
        return window

    async def skip(self, signal: Signal, user: User) -> ExecutionWindow:
        now = self.clock()
        self._check_actionable(signal, now)
        window = await self._claim(signal, user, WindowState.SKIPPED, now)
        if window is None:
            raise SignalAlreadyHandled()
        return window

    async def claim_accept(self, signal: Signal, user: User,
                           percentage: Optional[float] = None) -> ExecutionWindow:
        now = self.clock()
        self._check_actionable(signal, now)
        if not user.exchange_connected:
            raise ExchangeNotConnected()
        if percentage is not None and not 0 < percentage <= 100:
            raise InvalidSizing(f"percentage must be within (0, 100], got {percentage}")
        if signal.direction == Direction.BUY and user.has_recent_signal(signal.token, now, self.dedupe_window_s):
            raise DuplicateSignal()
        state = WindowState.ACCEPTED if percentage is None else WindowState.PARTIALLY_ACCEPTED
        window = await self._claim(signal, user, state, now, percentage)
        if window is None:
            raise SignalAlreadyHandled()
        return window

    async def claim_auto(self, signal: Signal, user: User) -> Optional[ExecutionWindow]:
        """Claim an expired signal for the unattended path; None when already decided."""
        return await self._claim(signal, user, WindowState.AUTO_EXECUTED, self.clock())

    async def release(self, window: ExecutionWindow) -> None:
        await self.store.release_action(window.signal_id, window.user_id)
        logger.info("Window %s/%s released after failed %s", window.signal_id, window.user_id, window.state.value)

    async def record_outcome(self, window: ExecutionWindow, trade_id: Optional[str] = None,
                             reason: Optional[str] = None) -> None:
        window.trade_id = trade_id
        window.reason = reason
        await self.store.update_action(window)

    def update_windows(self, now: Optional[float] = None) -> List[Transition]:
        now = self.clock() if now is None else now
        transitions: List[Transition] = []
        to_remove: List[tuple] = []

        for key, window in list(self.windows.items()):
            if window.state in self.state_map:
                processor = self.state_map[window.state](window, self)
                transitions.extend(processor.process(now, to_remove))

        for key in to_remove:
            self.windows.pop(key, None)

        return transitions

    def _emit_transition(self, transitions: List[Transition], window: ExecutionWindow,
                         from_state: str, to_state: str, action: str) -> None:
        transitions.append(
            Transition(
                signal_id=window.signal_id,
                user_id=window.user_id,
                from_state=from_state,
                to_state=to_state,
                action=action,
                window=window,
            )
        )
