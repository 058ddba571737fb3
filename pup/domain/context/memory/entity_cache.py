from typing import Awaitable, Callable, Dict, Optional, Type, TypeVar
import structlog
from pydantic import BaseModel

from domain.errors import StorageError
from infrastructure.observability.logging import MetricsCollector
from .substrate import CacheSubstrate

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


class EntityCache:
    """
    Read-through cache for small persisted entities (user profiles, channel vibes).

    Keys live in a per-entity namespace, entity:{type}:{id}:*, so invalidate()
    drops every cached projection of one entity. Writers must call invalidate()
    after their persistence write is durable.
    """

    def __init__(
        self,
        substrate: CacheSubstrate,
        models: Dict[str, Type[BaseModel]],
        ttl: int = 3600,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.substrate = substrate
        self.models = dict(models)
        self.ttl = ttl
        self.metrics = metrics or MetricsCollector()

    @staticmethod
    def _namespace(entity_type: str, entity_id: str) -> str:
        return f"entity:{entity_type}:{entity_id}"

    def _key(self, entity_type: str, entity_id: str) -> str:
        return f"{self._namespace(entity_type, entity_id)}:value"

    def _model(self, entity_type: str) -> Type[BaseModel]:
        if entity_type not in self.models:
            raise KeyError(f"No model registered for entity type '{entity_type}'")
        return self.models[entity_type]

    async def get(
        self,
        entity_type: str,
        entity_id: str,
        loader: Callable[[], Awaitable[M]],
        ttl: Optional[int] = None,
    ) -> M:
        """Return the cached entity, loading and caching it on a miss"""

        model = self._model(entity_type)
        key = self._key(entity_type, entity_id)

        cached = None
        try:
            cached = await self.substrate.get(key)
        except StorageError as e:
            logger.warning("Cache unavailable, loading from datastore", entity_type=entity_type, error=str(e))

        if cached is not None:
            try:
                value = model.model_validate_json(cached)
                self.metrics.increment_counter("entity_cache.hit", tags={"entity_type": entity_type})
                logger.debug("Entity served from cache", entity_type=entity_type, entity_id=entity_id)
                return value
            except ValueError as e:
                logger.warning("Discarding unreadable cache entry", entity_type=entity_type, error=str(e))

        self.metrics.increment_counter("entity_cache.miss", tags={"entity_type": entity_type})
        value = await loader()

        ttl = self.ttl if ttl is None else ttl
        if ttl <= 0:
            # Non-positive TTL: read through without caching
            return value

        try:
            await self.substrate.set(key, value.model_dump_json(), ttl=ttl)
        except StorageError as e:
            logger.warning("Cache unavailable, entity not cached", entity_type=entity_type, error=str(e))

        return value

    async def invalidate(self, entity_type: str, entity_id: str) -> int:
        """Remove all cached keys of one entity"""

        pattern = f"{self._namespace(entity_type, entity_id)}:*"
        try:
            removed = await self.substrate.delete_pattern(pattern)
        except StorageError as e:
            logger.error("Cache invalidation failed", entity_type=entity_type, entity_id=entity_id, error=str(e))
            return 0

        logger.debug("Cache invalidated", entity_type=entity_type, entity_id=entity_id, keys_deleted=removed)
        return removed
