"""
Persistent repository contracts.

Every method raises StorageError when the datastore fails; callers decide
whether that is fatal or degrades to an empty or default result.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from domain.models import ChannelVibe, Interaction, Memory, UserProfile


class MemoryRepository(ABC):
    """Memory records keyed by id, indexed by channel/user, expiry and vector"""

    @abstractmethod
    async def insert_memory(self, memory: Memory) -> None:
        pass

    @abstractmethod
    async def vector_search(
        self,
        embedding: List[float],
        limit: int,
        channel_id: Optional[str],
        now: datetime,
    ) -> List[Memory]:
        """Non-expired vector-indexed memories by cosine distance ascending"""

    @abstractmethod
    async def keyword_search(
        self,
        query: str,
        limit: int,
        channel_id: Optional[str],
        now: datetime,
        without_vector: bool = False,
    ) -> List[Memory]:
        """
        Non-expired substring matches by significance desc, then recency desc.
        without_vector restricts the match to records stored keyword-only.
        """

    @abstractmethod
    async def recent_memories(self, channel_id: str, limit: int, now: datetime) -> List[Memory]:
        """Non-expired channel memories by creation desc, then significance desc"""

    @abstractmethod
    async def count_vectors(self, channel_id: Optional[str] = None, now: Optional[datetime] = None) -> int:
        """Vector-indexed memories, limited to live ones in the channel when given"""

    @abstractmethod
    async def increment_references(self, memory_ids: List[str]) -> None:
        """Add one to the reference count of every listed memory in a single update"""

    @abstractmethod
    async def delete_expired(self, now: datetime) -> int:
        pass

    @abstractmethod
    async def delete_user_memories(self, user_id: str) -> int:
        pass


class ProfileRepository(ABC):
    """User profiles keyed by Slack ID"""

    @abstractmethod
    async def get_profile(self, slack_id: str) -> Optional[UserProfile]:
        pass

    @abstractmethod
    async def insert_profile(self, profile: UserProfile) -> UserProfile:
        """Insert, or return the existing row when the Slack ID is taken"""

    @abstractmethod
    async def update_profile(self, slack_id: str, changes: Dict[str, Any]) -> Optional[UserProfile]:
        pass

    @abstractmethod
    async def delete_profile(self, slack_id: str) -> bool:
        pass


class ChannelVibeRepository(ABC):
    """Channel vibes keyed by channel ID"""

    @abstractmethod
    async def get_vibe(self, channel_id: str) -> Optional[ChannelVibe]:
        pass

    @abstractmethod
    async def insert_vibe(self, vibe: ChannelVibe) -> ChannelVibe:
        """Insert, or return the existing row when the channel is known"""

    @abstractmethod
    async def update_vibe(self, channel_id: str, changes: Dict[str, Any]) -> Optional[ChannelVibe]:
        pass


class InteractionRepository(ABC):
    """Append-only cost records"""

    @abstractmethod
    async def append_interaction(self, interaction: Interaction) -> None:
        pass

    @abstractmethod
    async def list_interactions(self, since: Optional[datetime] = None) -> List[Interaction]:
        pass


class Repository(MemoryRepository, ProfileRepository, ChannelVibeRepository, InteractionRepository):
    """Single datastore serving every record type"""

    async def init(self) -> None:
        """Create schema or connections"""

    async def close(self) -> None:
        pass
