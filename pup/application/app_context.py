"""
Application context: every shared client and component, built once at startup
and passed by reference to whoever needs it.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from domain.accounting.cost_ledger import CostLedger
from domain.context.context_manager import ContextManager
from domain.context.embedder import Embedder
from domain.context.memory.cache_memory_store import CacheMemoryStore
from domain.context.memory.entity_cache import EntityCache
from domain.context.memory.recent_keys import RecentKeySet
from domain.context.memory.runtime_memory import MessageBuffer
from domain.context.memory.substrate import CacheSubstrate
from domain.context.memory.vector_memory_store import MemoryStore
from domain.entities import channel_vibes, user_profiles
from domain.entities.channel_vibes import ChannelVibeService
from domain.entities.user_profiles import UserProfileService
from domain.models import ChannelVibe, OperationType, UserProfile
from domain.orchestration.core.pipeline import MessagePipeline
from domain.orchestration.stages.ingestion import IngestionStage
from domain.orchestration.stages.memory_formation import MemoryFormationStage
from domain.orchestration.stages.response_generation import ResponseGenerationStage
from domain.resilience.circuit_breaker import ResilientCaller
from infrastructure.cache.redis_store import RedisCacheStore
from infrastructure.config.settings import Settings
from infrastructure.llm.base import LanguageModel
from infrastructure.llm.openai_client import OpenAILanguageModel
from infrastructure.observability.logging import MetricsCollector
from infrastructure.persistence.in_memory import InMemoryRepository
from infrastructure.persistence.postgres import PostgresRepository
from infrastructure.persistence.repository import Repository

logger = structlog.get_logger(__name__)


@dataclass
class AppContext:
    settings: Settings
    substrate: CacheSubstrate
    repository: Repository
    llm: LanguageModel
    metrics: MetricsCollector
    callers: Dict[str, ResilientCaller]
    ledger: CostLedger
    memory_store: MemoryStore
    buffer: MessageBuffer
    cache: EntityCache
    profiles: UserProfileService
    vibes: ChannelVibeService
    pipeline: MessagePipeline

    async def health(self) -> Dict[str, Any]:
        return {
            "cache": await self.substrate.ping(),
            "metrics": self.metrics.snapshot(),
            "breakers": {name: caller.breaker.get_metrics() for name, caller in self.callers.items()},
            "stages": [
                self.pipeline.ingestion.get_info(),
                self.pipeline.memory_formation.get_info(),
                self.pipeline.response_generation.get_info(),
            ],
        }

    async def close(self) -> None:
        await self.pipeline.close()
        await self.llm.close()
        await self.substrate.close()
        await self.repository.close()
        logger.info("Application context closed")


def build_callers(settings: Settings, metrics: MetricsCollector) -> Dict[str, ResilientCaller]:
    """One wrapper, and so one breaker, per remote call family"""

    return {
        operation.value: ResilientCaller(
            name=operation.value,
            max_retries=settings.max_retries,
            backoff_base_ms=settings.backoff_base_ms,
            backoff_cap_ms=settings.backoff_cap_ms,
            failure_threshold=settings.breaker_failure_threshold,
            reset_timeout=settings.breaker_reset_seconds,
            metrics=metrics,
        )
        for operation in OperationType
    }


def assemble(
    settings: Settings,
    substrate: CacheSubstrate,
    repository: Repository,
    llm: LanguageModel,
    callers: Optional[Dict[str, ResilientCaller]] = None,
    metrics: Optional[MetricsCollector] = None,
) -> AppContext:
    """Wire components around already-connected clients"""

    metrics = metrics or MetricsCollector()
    callers = callers or build_callers(settings, metrics)

    ledger = CostLedger(repository)
    embedder = Embedder(llm, callers[OperationType.EMBEDDING.value], ledger)
    memory_store = MemoryStore(
        repository,
        embed_query=embedder.embed,
        retention_days=settings.memory_retention_days,
        metrics=metrics,
    )
    buffer = MessageBuffer(substrate, capacity=settings.buffer_capacity, idle_ttl=settings.buffer_ttl_seconds)
    cache = EntityCache(
        substrate,
        models={user_profiles.ENTITY_TYPE: UserProfile, channel_vibes.ENTITY_TYPE: ChannelVibe},
        ttl=settings.cache_ttl_seconds,
        metrics=metrics,
    )
    profiles = UserProfileService(repository, cache, memory_store)
    vibes = ChannelVibeService(repository, cache, llm, callers[OperationType.VIBE_ANALYSIS.value], ledger)
    context_manager = ContextManager(buffer, memory_store, profiles, vibes)

    pipeline = MessagePipeline(
        buffer=buffer,
        recent_keys=RecentKeySet(substrate, ttl=settings.dedup_ttl_seconds),
        memory_store=memory_store,
        profiles=profiles,
        vibes=vibes,
        ledger=ledger,
        ingestion=IngestionStage(llm, callers[OperationType.CLASSIFICATION.value], ledger),
        memory_formation=MemoryFormationStage(memory_store, embedder),
        response_generation=ResponseGenerationStage(
            context_manager, llm, callers[OperationType.RESPONSE.value], ledger, settings.bot_user_id
        ),
    )

    return AppContext(
        settings=settings,
        substrate=substrate,
        repository=repository,
        llm=llm,
        metrics=metrics,
        callers=callers,
        ledger=ledger,
        memory_store=memory_store,
        buffer=buffer,
        cache=cache,
        profiles=profiles,
        vibes=vibes,
        pipeline=pipeline,
    )


async def build_app_context(settings: Settings) -> AppContext:
    """Connect external clients; unset URLs select in-process implementations"""

    if settings.redis_url:
        substrate = RedisCacheStore(settings.redis_url)
        await substrate.connect()
    else:
        substrate = CacheMemoryStore()

    if settings.database_url:
        repository = PostgresRepository(settings.database_url, embedding_dimension=settings.embedding_dimension)
    else:
        repository = InMemoryRepository()
    await repository.init()

    llm = OpenAILanguageModel(
        api_key=settings.openai_api_key,
        chat_model=settings.chat_model,
        response_model=settings.response_model,
        embedding_model=settings.embedding_model,
        embedding_dimension=settings.embedding_dimension,
        response_max_tokens=settings.response_max_tokens,
    )

    logger.info(
        "Application context ready",
        cache=type(substrate).__name__,
        repository=type(repository).__name__
    )
    return assemble(settings, substrate, repository, llm)
