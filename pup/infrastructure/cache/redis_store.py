"""
Redis-backed cache substrate shared by every process of the service.
"""

from contextlib import asynccontextmanager
from typing import List, Optional

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from domain.context.memory.substrate import CacheSubstrate
from domain.errors import StorageError

logger = structlog.get_logger(__name__)


class RedisCacheStore(CacheSubstrate):
    """
    Async Redis substrate.

    Usage:
        store = RedisCacheStore("redis://localhost:6379/0", key_prefix="pup:")
        await store.connect()
        await store.push_capped("buffer:channel:C1", payload, capacity=100, ttl=86400)
    """

    def __init__(self, redis_url: str, key_prefix: str = "pup:"):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self._redis: Optional[redis.Redis] = None

    async def connect(self) -> None:
        """Connect to Redis; an unreachable server leaves the store degraded, not failed"""

        self._redis = redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
        try:
            await self._redis.ping()
            logger.info("Connected to Redis", redis_url=self.redis_url)
        except (RedisError, OSError) as e:
            logger.error("Failed to connect to Redis, cache degraded", error=str(e))

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Closed Redis connection")

    def _make_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    @asynccontextmanager
    async def _client(self, operation: str):
        """Yield the client, translating transport failures into StorageError"""

        if self._redis is None:
            raise StorageError("Redis not connected", operation=operation)
        try:
            yield self._redis
        except (RedisError, OSError) as e:
            raise StorageError(f"Redis {operation} failed: {e}", operation=operation) from e

    async def get(self, key: str) -> Optional[str]:
        async with self._client("get") as client:
            return await client.get(self._make_key(key))

    async def set(self, key: str, value: str, ttl: int) -> None:
        async with self._client("set") as client:
            await client.set(self._make_key(key), value, ex=ttl)

    async def add_if_absent(self, key: str, value: str, ttl: int) -> bool:
        async with self._client("add_if_absent") as client:
            stored = await client.set(self._make_key(key), value, ex=ttl, nx=True)
            return bool(stored)

    async def delete_pattern(self, pattern: str) -> int:
        async with self._client("delete_pattern") as client:
            keys = [key async for key in client.scan_iter(match=self._make_key(pattern))]
            if not keys:
                return 0
            return await client.delete(*keys)

    async def push_capped(self, key: str, value: str, capacity: int, ttl: int) -> int:
        full_key = self._make_key(key)
        async with self._client("push_capped") as client:
            async with client.pipeline(transaction=True) as pipe:
                pipe.lpush(full_key, value)
                pipe.ltrim(full_key, 0, capacity - 1)
                pipe.expire(full_key, ttl)
                pushed_length, _, _ = await pipe.execute()
            return min(pushed_length, capacity)

    async def incr(self, key: str, ttl: int) -> int:
        full_key = self._make_key(key)
        async with self._client("incr") as client:
            async with client.pipeline(transaction=True) as pipe:
                pipe.incr(full_key)
                pipe.expire(full_key, ttl)
                value, _ = await pipe.execute()
            return value

    async def list_head(self, key: str, count: int) -> List[str]:
        if count <= 0:
            return []
        async with self._client("list_head") as client:
            return await client.lrange(self._make_key(key), 0, count - 1)

    async def list_length(self, key: str) -> int:
        async with self._client("list_length") as client:
            return await client.llen(self._make_key(key))

    async def ping(self) -> bool:
        try:
            async with self._client("ping") as client:
                return bool(await client.ping())
        except StorageError:
            return False
