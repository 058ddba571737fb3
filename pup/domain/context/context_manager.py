from typing import List, Optional
import asyncio
import structlog
from pydantic import BaseModel, Field

from domain.errors import StorageError
from domain.models import BufferedMessage, ChannelVibe, InboundMessage, Memory, UserProfile
from domain.entities.channel_vibes import ChannelVibeService
from domain.entities.user_profiles import UserProfileService
from .memory.runtime_memory import MessageBuffer
from .memory.vector_memory_store import MemoryStore

logger = structlog.get_logger(__name__)


class ResponseContext(BaseModel):
    """Everything the response prompt is assembled from"""
    message: InboundMessage
    history: List[BufferedMessage] = Field(default_factory=list, description="Newest first")
    memories: List[Memory] = Field(default_factory=list)
    vibe: ChannelVibe
    participants: List[UserProfile] = Field(default_factory=list)


class ContextManager:
    """Assembles response context from the buffer, memory store and entity services"""

    def __init__(
        self,
        buffer: MessageBuffer,
        memory_store: MemoryStore,
        profiles: UserProfileService,
        vibes: ChannelVibeService,
        history_limit: int = 20,
        memory_limit: int = 3,
        max_participants: int = 5,
    ):
        self.buffer = buffer
        self.memory_store = memory_store
        self.profiles = profiles
        self.vibes = vibes
        self.history_limit = history_limit
        self.memory_limit = memory_limit
        self.max_participants = max_participants

    async def build_response_context(self, message: InboundMessage) -> ResponseContext:
        """Gather context for one message; every source degrades independently"""

        logger.info("Building context", channel_id=message.channel)

        history, memories, vibe = await asyncio.gather(
            self.get_conversation_context(message.channel),
            self._retrieve_relevant_memories(message.text),
            self.vibes.get_or_create(message.channel),
        )
        participants = await self.get_participant_profiles(message, history)

        return ResponseContext(
            message=message,
            history=history,
            memories=memories,
            vibe=vibe,
            participants=participants
        )

    async def get_conversation_context(self, channel_id: str) -> List[BufferedMessage]:
        return await self.buffer.recent(channel_id, self.history_limit)

    async def _retrieve_relevant_memories(self, query: str, channel_id: Optional[str] = None) -> List[Memory]:
        result = await self.memory_store.search(query, self.memory_limit, channel_id)
        return result.unwrap_or([])

    async def get_participant_profiles(
        self,
        message: InboundMessage,
        history: List[BufferedMessage],
    ) -> List[UserProfile]:
        """Profiles of the author and recent speakers, skipping any that cannot be loaded"""

        user_ids = list(dict.fromkeys([message.user] + [m.user for m in history]))[:self.max_participants]

        profiles = []
        for user_id in user_ids:
            try:
                profiles.append(await self.profiles.get_or_create(user_id))
            except StorageError as e:
                logger.warning("Participant profile unavailable", user_id=user_id, error=str(e))
        return profiles
