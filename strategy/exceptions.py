"""Exception taxonomy for the signal-following core.

Every error carries a short ``reason`` suitable for returning to a user.
Service boundaries catch ``SignalBotError`` and turn it into a result entry,
so one failing signal or user never aborts a batch.
"""

from typing import Any, Optional


class SignalBotError(Exception):
    reason = 'error'

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.reason)
        self.message = message or self.reason


class UpstreamUnavailable(SignalBotError):
    """Signal feed could not be reached and no cached signals exist."""

    reason = 'signal feed unavailable'


class ExchangeGatewayError(SignalBotError):
    reason = 'exchange request failed'


class SignalStateError(SignalBotError):
    """User-actionable rejection of a signal action."""


class SignalExpired(SignalStateError):
    reason = 'expired'


class ExchangeNotConnected(SignalStateError):
    reason = 'exchange not connected'


class NoHoldings(SignalStateError):
    reason = 'no holdings'


class InvalidSizing(SignalStateError):
    reason = 'invalid order size'


class InsufficientCapital(SignalStateError):
    reason = 'insufficient capital'


class SignalAlreadyHandled(SignalStateError):
    reason = 'already handled'


class DuplicateSignal(SignalStateError):
    reason = 'already traded this token in the last 24 hours'


class SignalNotMaterialized(SignalStateError):
    reason = 'signal not stored yet'


class TradeExecutionFailed(SignalBotError):
    reason = 'trade execution failed'

    def __init__(self, message: Optional[str] = None, trade: Any = None):
        super().__init__(message)
        self.trade = trade


class DuplicateOpenCycle(SignalBotError):
    """An open cycle already exists for the (user, token) pair."""

    reason = 'open cycle already exists'
