from typing import Dict, List, Any, Optional
import asyncio
from datetime import datetime

import numpy as np

from domain.models import ChannelVibe, Interaction, Memory, UserProfile, utc_now
from .repository import Repository


def cosine_distances(query: List[float], vectors: List[List[float]]) -> np.ndarray:
    """1 - cosine similarity between query and each row of vectors"""

    matrix = np.asarray(vectors, dtype=np.float64)
    target = np.asarray(query, dtype=np.float64)

    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(target)
    norms = np.where(norms == 0, np.finfo(np.float64).eps, norms)

    return 1.0 - (matrix @ target) / norms


class InMemoryRepository(Repository):
    """Process-local datastore for development and tests"""

    def __init__(self):
        self.memories: Dict[str, Memory] = {}
        self.profiles: Dict[str, UserProfile] = {}
        self.vibes: Dict[str, ChannelVibe] = {}
        self.interactions: List[Interaction] = []
        self._lock = asyncio.Lock()

    def _live(self, channel_id: Optional[str], now: datetime) -> List[Memory]:
        return [
            memory for memory in self.memories.values()
            if not memory.is_expired(now)
            and (channel_id is None or memory.channel_id == channel_id)
        ]

    # Memories

    async def insert_memory(self, memory: Memory) -> None:
        async with self._lock:
            self.memories[memory.id] = memory.model_copy(deep=True)

    async def vector_search(
        self,
        embedding: List[float],
        limit: int,
        channel_id: Optional[str],
        now: datetime,
    ) -> List[Memory]:
        async with self._lock:
            candidates = [memory for memory in self._live(channel_id, now) if memory.has_vector]
            if not candidates or limit <= 0:
                return []

            distances = cosine_distances(embedding, [memory.embedding for memory in candidates])
            order = np.argsort(distances, kind="stable")[:limit]

            return [candidates[i].model_copy(deep=True) for i in order]

    async def keyword_search(
        self,
        query: str,
        limit: int,
        channel_id: Optional[str],
        now: datetime,
        without_vector: bool = False,
    ) -> List[Memory]:
        needle = query.lower()

        async with self._lock:
            matches = [
                memory for memory in self._live(channel_id, now)
                if (needle in memory.searchable_text.lower() or needle in memory.content.lower())
                and not (without_vector and memory.has_vector)
            ]
            matches.sort(key=lambda m: (m.significance, m.created_at), reverse=True)

            return [memory.model_copy(deep=True) for memory in matches[:max(limit, 0)]]

    async def recent_memories(self, channel_id: str, limit: int, now: datetime) -> List[Memory]:
        async with self._lock:
            memories = self._live(channel_id, now)
            memories.sort(key=lambda m: (m.created_at, m.significance), reverse=True)

            return [memory.model_copy(deep=True) for memory in memories[:max(limit, 0)]]

    async def count_vectors(self, channel_id: Optional[str] = None, now: Optional[datetime] = None) -> int:
        async with self._lock:
            return sum(
                1 for memory in self.memories.values()
                if memory.has_vector
                and (channel_id is None or memory.channel_id == channel_id)
                and (now is None or not memory.is_expired(now))
            )

    async def increment_references(self, memory_ids: List[str]) -> None:
        async with self._lock:
            for memory_id in set(memory_ids):
                memory = self.memories.get(memory_id)
                if memory is not None:
                    memory.reference_count += 1

    async def delete_expired(self, now: datetime) -> int:
        async with self._lock:
            expired = [memory_id for memory_id, memory in self.memories.items() if memory.is_expired(now)]
            for memory_id in expired:
                del self.memories[memory_id]
            return len(expired)

    async def delete_user_memories(self, user_id: str) -> int:
        async with self._lock:
            owned = [memory_id for memory_id, memory in self.memories.items() if memory.user_id == user_id]
            for memory_id in owned:
                del self.memories[memory_id]
            return len(owned)

    # Profiles

    async def get_profile(self, slack_id: str) -> Optional[UserProfile]:
        async with self._lock:
            profile = self.profiles.get(slack_id)
            return profile.model_copy(deep=True) if profile else None

    async def insert_profile(self, profile: UserProfile) -> UserProfile:
        async with self._lock:
            existing = self.profiles.setdefault(profile.slack_id, profile.model_copy(deep=True))
            return existing.model_copy(deep=True)

    async def update_profile(self, slack_id: str, changes: Dict[str, Any]) -> Optional[UserProfile]:
        async with self._lock:
            profile = self.profiles.get(slack_id)
            if profile is None:
                return None

            updated = UserProfile.model_validate({**profile.model_dump(), **changes, "updated_at": utc_now()})
            self.profiles[slack_id] = updated
            return updated.model_copy(deep=True)

    async def delete_profile(self, slack_id: str) -> bool:
        async with self._lock:
            return self.profiles.pop(slack_id, None) is not None

    # Channel vibes

    async def get_vibe(self, channel_id: str) -> Optional[ChannelVibe]:
        async with self._lock:
            vibe = self.vibes.get(channel_id)
            return vibe.model_copy(deep=True) if vibe else None

    async def insert_vibe(self, vibe: ChannelVibe) -> ChannelVibe:
        async with self._lock:
            existing = self.vibes.setdefault(vibe.channel_id, vibe.model_copy(deep=True))
            return existing.model_copy(deep=True)

    async def update_vibe(self, channel_id: str, changes: Dict[str, Any]) -> Optional[ChannelVibe]:
        async with self._lock:
            vibe = self.vibes.get(channel_id)
            if vibe is None:
                return None

            updated = ChannelVibe.model_validate({**vibe.model_dump(), **changes, "updated_at": utc_now()})
            self.vibes[channel_id] = updated
            return updated.model_copy(deep=True)

    # Interactions

    async def append_interaction(self, interaction: Interaction) -> None:
        async with self._lock:
            self.interactions.append(interaction)

    async def list_interactions(self, since: Optional[datetime] = None) -> List[Interaction]:
        async with self._lock:
            return [
                interaction for interaction in self.interactions
                if since is None or interaction.timestamp >= since
            ]
