"""Time-bounded cached values."""
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional
import time


@dataclass(frozen=True)
class CachedValue:
    """A value together with when it was fetched and how long it stays valid."""
    value: Any
    fetched_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.fetched_at >= self.ttl


class TtlCache:
    """Per-key cache that refreshes entries through the caller's fetch function.

    None results are not cached, so a failed lookup is retried on the next read.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Hashable, CachedValue] = {}

    async def get(self, key: Hashable, fetch: Callable[[], Awaitable[Any]]) -> Optional[Any]:
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None and not entry.expired(now):
            return entry.value

        value = await fetch()
        if value is None:
            self._entries.pop(key, None)
        else:
            self._entries[key] = CachedValue(value=value, fetched_at=now, ttl=self.ttl)
        return value

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)
