from typing import Awaitable, Callable, List, Optional
import asyncio
import uuid
from datetime import datetime, timedelta

import pydantic
import structlog

from domain.errors import PupError, StorageError, ValidationError
from domain.models import EMBEDDING_DIMENSION, Err, Memory, MemoryCandidate, Ok, Result, utc_now
from infrastructure.observability.logging import MetricsCollector
from infrastructure.persistence.repository import MemoryRepository
from .substrate import CacheSubstrate

logger = structlog.get_logger(__name__)

QueryEmbedder = Callable[[str], Awaitable[List[float]]]


def _usable_vector(embedding: Optional[List[float]]) -> bool:
    return embedding is not None and len(embedding) == EMBEDDING_DIMENSION


class MemoryStore:
    """
    Durable memories with expiry and reference counting.

    Reads return Ok/Err so callers degrade explicitly; only malformed
    input raises.
    """

    def __init__(
        self,
        repository: MemoryRepository,
        embed_query: Optional[QueryEmbedder] = None,
        retention_days: int = 180,
        now: Callable[[], datetime] = utc_now,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.repository = repository
        self.embed_query = embed_query
        self.retention = timedelta(days=retention_days)
        self._now = now
        self.metrics = metrics or MetricsCollector()

    async def create(self, candidate: MemoryCandidate) -> Result[Memory]:
        """Persist a candidate; Err(StorageError) means the memory was not saved"""

        if not 0.0 <= candidate.significance <= 1.0:
            raise ValidationError(f"significance must be within [0, 1], got {candidate.significance}")

        embedding = candidate.embedding
        if embedding is not None and not _usable_vector(embedding):
            logger.warning(
                "Dropping embedding of unexpected dimension",
                dimension=len(embedding),
                expected=EMBEDDING_DIMENSION
            )
            embedding = None

        now = self._now()
        try:
            memory = Memory(
                id=str(uuid.uuid4()),
                content=candidate.content,
                kind=candidate.kind,
                channel_id=candidate.channel_id,
                user_id=candidate.user_id,
                embedding=embedding,
                metadata=candidate.metadata,
                significance=candidate.significance,
                created_at=now,
                expires_at=now + self.retention,
                searchable_text=candidate.searchable_text or candidate.content.lower(),
                tags=candidate.tags,
                context=candidate.context,
                participants=candidate.participants,
            )
        except pydantic.ValidationError as e:
            raise ValidationError(str(e)) from e

        try:
            await self.repository.insert_memory(memory)
        except StorageError as e:
            logger.error("Memory not saved", channel_id=memory.channel_id, kind=memory.kind.value, error=str(e))
            self.metrics.increment_counter("memory.create.failed")
            return Err(e)

        logger.info(
            "Memory created",
            memory_id=memory.id,
            channel_id=memory.channel_id,
            kind=memory.kind.value,
            indexed=embedding is not None
        )
        self.metrics.increment_counter("memory.created")
        return Ok(memory)

    async def _query_vector(self, query: str, query_embedding: Optional[List[float]]) -> Optional[List[float]]:
        if _usable_vector(query_embedding):
            return query_embedding
        if self.embed_query is None:
            return None

        try:
            vector = await self.embed_query(query)
        except PupError as e:
            logger.warning("Query embedding unavailable, using keyword search", error=str(e))
            return None

        return vector if _usable_vector(vector) else None

    async def search(
        self,
        query: str,
        limit: int = 5,
        channel_id: Optional[str] = None,
        query_embedding: Optional[List[float]] = None,
    ) -> Result[List[Memory]]:
        """
        Vector search when the scope holds live vectors, keyword search
        otherwise; each hit is referenced once.

        Memories stored without an embedding never appear in vector results,
        so a short vector result is topped up with their keyword matches.
        """

        now = self._now()
        try:
            vector = None
            if await self.repository.count_vectors(channel_id, now) > 0:
                vector = await self._query_vector(query, query_embedding)

            if vector is not None:
                memories = await self.repository.vector_search(vector, limit, channel_id, now)
                if len(memories) < limit:
                    memories += await self.repository.keyword_search(
                        query, limit - len(memories), channel_id, now, without_vector=True
                    )
            else:
                memories = await self.repository.keyword_search(query, limit, channel_id, now)
        except StorageError as e:
            logger.error("Memory search failed", channel_id=channel_id, error=str(e))
            return Err(e)

        if memories:
            try:
                await self.repository.increment_references([memory.id for memory in memories])
            except StorageError as e:
                logger.warning("Failed to increment reference counts", count=len(memories), error=str(e))
            else:
                for memory in memories:
                    memory.reference_count += 1

        logger.debug(
            "Memory search complete",
            mode="vector" if vector is not None else "keyword",
            channel_id=channel_id,
            results=len(memories)
        )
        return Ok(memories)

    async def get_recent(self, channel_id: str, limit: int = 10) -> Result[List[Memory]]:
        try:
            return Ok(await self.repository.recent_memories(channel_id, limit, self._now()))
        except StorageError as e:
            logger.error("Failed to load recent memories", channel_id=channel_id, error=str(e))
            return Err(e)

    async def cleanup_expired(self) -> int:
        """Delete every memory whose expiry has passed; raises StorageError"""

        deleted = await self.repository.delete_expired(self._now())
        self.metrics.set_gauge("memory.cleanup.last_deleted", deleted)
        if deleted:
            logger.info("Expired memories removed", count=deleted)
        return deleted

    async def delete_user_memories(self, user_id: str) -> int:
        deleted = await self.repository.delete_user_memories(user_id)
        logger.info("User memories removed", user_id=user_id, count=deleted)
        return deleted

    async def run_cleanup_loop(self, interval: float, substrate: Optional[CacheSubstrate] = None) -> None:
        """Periodic expiry sweep; runs until cancelled"""

        while True:
            await asyncio.sleep(interval)
            try:
                await self.cleanup_expired()
                if substrate is not None:
                    await substrate.sweep()
            except StorageError as e:
                logger.error("Cleanup sweep failed", error=str(e))
