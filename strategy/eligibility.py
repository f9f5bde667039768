import logging
import time
from typing import Callable, Dict, List, Optional

from config import config
from strategy.execution_types import Direction, Portfolio, User
from strategy.signal_manager import Signal

logger = logging.getLogger(__name__)

DEFAULT_RISK_TARGETS = {'low': 20.0, 'medium': 50.0, 'high': 80.0}


class EligibilityFilter:
    """Decides which signals a user may see and act on.

    BUY signals follow the user's risk level and are suppressed for tokens the
    user received within the dedupe window. SELL signals only reach connected
    users holding a positive amount of the token.
    """

    def __init__(self, store=None, clock: Callable[[], float] = time.time,
                 dedupe_hours: Optional[float] = None,
                 risk_targets: Optional[Dict[str, float]] = None):
        settings = config.section('signals')
        self.store = store
        self.clock = clock
        self.dedupe_window_s = float(dedupe_hours or settings.get('dedupe_hours', 24)) * 3600.0
        targets = risk_targets or settings.get('risk_targets') or DEFAULT_RISK_TARGETS
        self.risk_targets = {str(k): float(v) for k, v in dict(targets).items()}

    def is_deduped(self, signal: Signal, user: User, now: float) -> bool:
        return signal.direction == Direction.BUY and user.has_recent_signal(
            signal.token, now, self.dedupe_window_s
        )

    def is_eligible(self, signal: Signal, user: User, holdings: Optional[Portfolio], now: float) -> bool:
        if signal.direction == Direction.BUY:
            return signal.risk_level == user.risk_level and not self.is_deduped(signal, user, now)
        if not user.exchange_connected or holdings is None:
            return False
        return holdings.amount_of(signal.token) > 0

    def filter_for_user(self, signals: List[Signal], user: User, holdings: Optional[Portfolio],
                        now: Optional[float] = None) -> List[Signal]:
        now = self.clock() if now is None else now
        eligible = [signal for signal in signals if self.is_eligible(signal, user, holdings, now)]
        if eligible:
            return eligible

        closest = self.closest_buy(signals, user, now)
        if closest is None:
            return []
        logger.info("No exact matches for user %s; offering closest BUY signal for %s", user.id, closest.token)
        return [closest]

    def closest_buy(self, signals: List[Signal], user: User, now: float) -> Optional[Signal]:
        target = self.risk_targets.get(user.risk_level.value, DEFAULT_RISK_TARGETS['medium'])
        best: Optional[Signal] = None
        best_distance = None
        for signal in signals:
            if signal.direction != Direction.BUY or self.is_deduped(signal, user, now):
                continue
            distance = abs(self._score(signal) - target)
            # strict comparison keeps the first occurrence on ties
            if best_distance is None or distance < best_distance:
                best, best_distance = signal, distance
        return best

    def _score(self, signal: Signal) -> float:
        if signal.risk_score is not None:
            return signal.risk_score
        return self.risk_targets.get(signal.risk_level.value, DEFAULT_RISK_TARGETS[signal.risk_level.value])

    async def eligible_users_for_signal(self, signal: Signal, now: Optional[float] = None) -> List[User]:
        """Users the unattended path acts for: auto-trading users, BUY by risk match, SELL by ownership."""
        now = self.clock() if now is None else now
        if signal.direction == Direction.SELL:
            return [user for user in await self._holders(signal) if user.auto_trade_enabled]
        users = await self.store.find_users(exchange_connected=True)
        return [
            user for user in users
            if user.auto_trade_enabled
            and user.risk_level == signal.risk_level
            and not self.is_deduped(signal, user, now)
        ]

    async def _holders(self, signal: Signal) -> List[User]:
        selected: List[User] = []
        for user in await self.store.find_users(exchange_connected=True):
            portfolio = await self.store.get_portfolio(user.id)
            if portfolio is not None and portfolio.amount_of(signal.token) > 0:
                selected.append(user)
        return selected

    async def notification_targets(self, signal: Signal, now: Optional[float] = None) -> List[User]:
        """Users to notify about a fresh signal; BUYs do not require a connection."""
        now = self.clock() if now is None else now
        if signal.direction == Direction.SELL:
            return await self._holders(signal)
        users = await self.store.find_users(risk_level=signal.risk_level)
        return [user for user in users if not self.is_deduped(signal, user, now)]
