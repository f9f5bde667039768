from typing import Any, Dict, List, Optional

from strategy.exceptions import UpstreamUnavailable
from strategy.execution_types import Direction, RiskLevel, SignalTokenMark, User
from strategy.signal_manager import Signal


NOW = 1_700_000_000.0


class FixedClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSignalFeed:
    """Stands in for the signal API; flip ``fail`` to simulate an outage."""

    def __init__(self, signals: Optional[List[Dict[str, Any]]] = None,
                 risks: Optional[Dict[str, Any]] = None):
        self.signals = signals or []
        self.risks = risks or {}
        self.fail = False
        self.calls = 0
        self.closed = False

    async def get_signals(self) -> List[Dict[str, Any]]:
        self.calls += 1
        if self.fail:
            raise UpstreamUnavailable("feed down")
        return [dict(s) for s in self.signals]

    async def get_risks(self, exchange: str = 'binance') -> Dict[str, Any]:
        if exchange not in ('binance', 'btcc'):
            raise ValueError(f"unsupported risk exchange: {exchange}")
        if self.fail:
            raise UpstreamUnavailable("feed down")
        return dict(self.risks)

    async def close(self):
        self.closed = True


class RecordingSink:
    def __init__(self):
        self.sent = []

    async def notify(self, user_id, message, kind, related_id=None):
        self.sent.append({'user_id': user_id, 'message': message, 'kind': kind, 'related_id': related_id})


def make_user(user_id='u1', risk_level=RiskLevel.MEDIUM, connected=True, auto_trade=True,
              recent_tokens=None) -> User:
    return User(
        id=user_id,
        risk_level=risk_level,
        exchange_connected=connected,
        exchange='binance' if connected else None,
        auto_trade_enabled=auto_trade,
        last_signal_tokens=[SignalTokenMark(token=t, timestamp=ts) for t, ts in (recent_tokens or [])],
    )


def make_signal(signal_id='sig-1', direction=Direction.BUY, token='SOL', price=100.0,
                risk_level=RiskLevel.MEDIUM, created_at=NOW, window_s=600.0, risk_score=None) -> Signal:
    return Signal(
        id=signal_id,
        direction=direction,
        token=token,
        price=price,
        risk_level=risk_level,
        created_at=created_at,
        expires_at=created_at + window_s,
        risk_score=risk_score,
    )
