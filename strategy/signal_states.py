from __future__ import annotations
from typing import TYPE_CHECKING, List
from abc import ABC, abstractmethod

if TYPE_CHECKING:
    from .signal_manager import ExecutionWindow, SignalManager, Transition


class WindowStateProcessor(ABC):
    def __init__(self, window: ExecutionWindow, manager: SignalManager):
        self.window = window
        self.manager = manager

    @abstractmethod
    def process(self, now: float, to_remove: List[tuple]) -> List[Transition]:
        pass


class PendingWindowState(WindowStateProcessor):
    def process(self, now: float, to_remove: List[tuple]) -> List[Transition]:
        from .signal_manager import WindowState

        transitions = []
        if now < self.window.expires_at:
            return transitions

        self.window.state = WindowState.EXPIRED
        self.window.decided_at = now
        to_remove.append(self.window.key)
        self.manager._emit_transition(transitions, self.window, 'pending', 'expired', 'hand_off_unattended')
        return transitions
