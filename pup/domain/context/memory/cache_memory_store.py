from typing import Dict, Callable, List, NamedTuple, Optional, Union
import asyncio
import fnmatch
import time

from .substrate import CacheSubstrate


class _Slot(NamedTuple):
    value: Union[str, List[str]]
    expires_at: float


class CacheMemoryStore(CacheSubstrate):
    """
    Single-process substrate used when no Redis URL is configured, and in
    tests with an injected clock. Plain values and capped lists share one
    keyspace; a key holding the other kind reads as absent.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._slots: Dict[str, _Slot] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[_Slot]:
        slot = self._slots.get(key)
        if slot is not None and self._clock() >= slot.expires_at:
            del self._slots[key]
            return None
        return slot

    def _put(self, key: str, value: Union[str, List[str]], ttl: int) -> None:
        self._slots[key] = _Slot(value, self._clock() + ttl)

    def _items(self, key: str) -> List[str]:
        slot = self._live(key)
        return slot.value if slot is not None and isinstance(slot.value, list) else []

    async def set(self, key: str, value: str, ttl: int = 3600) -> None:
        async with self._lock:
            self._put(key, value, ttl)

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            slot = self._live(key)
            if slot is None or not isinstance(slot.value, str):
                return None
            return slot.value

    async def add_if_absent(self, key: str, value: str, ttl: int) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._put(key, value, ttl)
            return True

    async def delete_pattern(self, pattern: str) -> int:
        async with self._lock:
            doomed = [key for key in self._slots if fnmatch.fnmatchcase(key, pattern)]
            for key in doomed:
                self._slots.pop(key)
            return len(doomed)

    async def push_capped(self, key: str, value: str, capacity: int, ttl: int) -> int:
        """Prepend, trim to capacity and restart the idle expiry"""

        async with self._lock:
            items = [value] + self._items(key)
            self._put(key, items[:capacity], ttl)
            return min(len(items), capacity)

    async def incr(self, key: str, ttl: int) -> int:
        async with self._lock:
            slot = self._live(key)
            value = int(slot.value) + 1 if slot is not None and isinstance(slot.value, str) else 1
            self._put(key, str(value), ttl)
            return value

    async def list_head(self, key: str, count: int) -> List[str]:
        async with self._lock:
            return self._items(key)[:max(count, 0)]

    async def list_length(self, key: str) -> int:
        async with self._lock:
            return len(self._items(key))

    async def ping(self) -> bool:
        return True

    async def sweep(self) -> int:
        """Evict expired keys; returns how many were dropped"""

        async with self._lock:
            now = self._clock()
            stale = [key for key, slot in self._slots.items() if now >= slot.expires_at]
            for key in stale:
                self._slots.pop(key)
            return len(stale)
