from typing import Any, Dict, Optional
import uuid

import structlog

from domain.context.memory.entity_cache import EntityCache
from domain.context.memory.vector_memory_store import MemoryStore
from domain.models import UserProfile, utc_now
from infrastructure.persistence.repository import ProfileRepository

logger = structlog.get_logger(__name__)

ENTITY_TYPE = "user"


class UserProfileService:
    """Cache-backed access to user profiles; every write invalidates the cached copy"""

    def __init__(self, repository: ProfileRepository, cache: EntityCache, memory_store: MemoryStore):
        self.repository = repository
        self.cache = cache
        self.memory_store = memory_store

    async def get_or_create(self, user_id: str, display_name: Optional[str] = None) -> UserProfile:
        """Load the profile, creating it on first sight; raises StorageError"""

        async def load() -> UserProfile:
            profile = await self.repository.get_profile(user_id)
            if profile is not None:
                return profile

            profile = await self.repository.insert_profile(
                UserProfile(id=str(uuid.uuid4()), slack_id=user_id, display_name=display_name or user_id)
            )
            logger.info("Created user profile", user_id=user_id, profile_id=profile.id)
            return profile

        return await self.cache.get(ENTITY_TYPE, user_id, load)

    async def _write(self, user_id: str, changes: Dict[str, Any]) -> Optional[UserProfile]:
        profile = await self.repository.update_profile(user_id, changes)
        await self.cache.invalidate(ENTITY_TYPE, user_id)
        return profile

    async def touch(self, user_id: str) -> Optional[UserProfile]:
        """Record activity now"""
        return await self._write(user_id, {"last_seen": utc_now()})

    async def update_personality(self, user_id: str, traits: Dict[str, Any]) -> Optional[UserProfile]:
        """Merge observed personality traits into the profile"""

        profile = await self.get_or_create(user_id)
        updated = await self._write(user_id, {"personality_traits": {**profile.personality_traits, **traits}})

        logger.info("Updated user personality", user_id=user_id, traits=sorted(traits))
        return updated

    async def update_speech_patterns(self, user_id: str, patterns: Dict[str, Any]) -> Optional[UserProfile]:
        profile = await self.get_or_create(user_id)
        updated = await self._write(user_id, {"speech_patterns": {**profile.speech_patterns, **patterns}})

        logger.debug("Updated user speech patterns", user_id=user_id)
        return updated

    async def delete_user_data(self, user_id: str) -> Dict[str, Any]:
        """
        Remove every memory the user authored, then the profile. The cached
        profile is dropped even when erasure fails part way.
        """

        try:
            memories_deleted = await self.memory_store.delete_user_memories(user_id)
            profile_deleted = await self.repository.delete_profile(user_id)
        finally:
            await self.cache.invalidate(ENTITY_TYPE, user_id)

        logger.info(
            "Deleted all user data",
            user_id=user_id,
            profile_deleted=profile_deleted,
            memories_deleted=memories_deleted
        )
        return {"profile_deleted": profile_deleted, "memories_deleted": memories_deleted}
