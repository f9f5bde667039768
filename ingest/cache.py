import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple


class TTLCache:
    """Keyed cache with an injected clock.

    ``get`` honours the TTL; ``peek`` returns whatever was stored last, however
    old, so callers can fall back to stale data when the upstream is down.
    """

    def __init__(self, ttl_s: float, clock: Callable[[], float] = time.time):
        self.ttl_s = float(ttl_s)
        self.clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}

    def set(self, key: Hashable, value: Any) -> None:
        self._entries[key] = (self.clock(), value)

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self.clock() - stored_at >= self.ttl_s:
            return None
        return value

    def peek(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        return entry[1] if entry else None

    def age(self, key: Hashable) -> Optional[float]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return self.clock() - entry[0]

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)
