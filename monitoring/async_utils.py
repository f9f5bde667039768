import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Hashable, Iterable, List, Optional, Tuple, Type, TypeVar

from strategy.exceptions import ExchangeGatewayError


logger = logging.getLogger(__name__)

T = TypeVar('T')


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()


async def with_timeout(awaitable: Awaitable[T], timeout_s: float, action: str) -> T:
    """Bound an exchange call; a timeout surfaces as ExchangeGatewayError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_s)
    except asyncio.TimeoutError as exc:
        raise ExchangeGatewayError(f"{action} timed out after {timeout_s:.0f}s") from exc


@dataclass
class RetryPolicy:
    max_attempts: int = 1
    backoff: Callable[[int], float] = lambda attempt: 0.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    @classmethod
    def fixed(cls, max_attempts: int, delay_s: float,
              retry_on: Tuple[Type[BaseException], ...] = (Exception,)) -> 'RetryPolicy':
        return cls(max_attempts=max(1, int(max_attempts)), backoff=lambda attempt: delay_s, retry_on=retry_on)

    @classmethod
    def none(cls) -> 'RetryPolicy':
        return cls(max_attempts=1)

    async def run(self, factory: Callable[[], Awaitable[T]], action: str = 'call',
                  sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> T:
        attempt = 1
        while True:
            try:
                return await factory()
            except self.retry_on as exc:
                if attempt >= self.max_attempts:
                    raise
                delay = max(0.0, float(self.backoff(attempt)))
                logger.warning(
                    "%s failed (attempt %s/%s): %s; retrying in %.1fs",
                    action,
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                await sleep(delay)
                attempt += 1


class KeyedLock:
    """asyncio locks created on demand per key and dropped once idle."""

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = defaultdict(int)

    @asynccontextmanager
    async def acquire(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] <= 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)
