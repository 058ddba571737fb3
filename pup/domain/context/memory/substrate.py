from abc import ABC, abstractmethod
from typing import List, Optional


class CacheSubstrate(ABC):
    """
    Shared key-value store behind the message buffer, entity cache and TTL set.

    Implementations raise StorageError when the backing service is unreachable;
    callers decide how to degrade.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the value, or None when missing or expired"""

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int) -> None:
        """Store a value that expires after ttl seconds"""

    @abstractmethod
    async def add_if_absent(self, key: str, value: str, ttl: int) -> bool:
        """Store only if the key does not exist; True when stored"""

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern; returns the count removed"""

    @abstractmethod
    async def push_capped(self, key: str, value: str, capacity: int, ttl: int) -> int:
        """Atomically prepend, trim to capacity and reset the key's expiry"""

    @abstractmethod
    async def incr(self, key: str, ttl: int) -> int:
        """Atomically add one to a counter and reset its expiry; returns the new value"""

    @abstractmethod
    async def list_head(self, key: str, count: int) -> List[str]:
        """First count items of a list, newest first"""

    @abstractmethod
    async def list_length(self, key: str) -> int:
        pass

    @abstractmethod
    async def ping(self) -> bool:
        pass

    async def sweep(self) -> int:
        """Evict expired keys; a no-op for stores that expire keys natively"""
        return 0

    async def close(self) -> None:
        pass
