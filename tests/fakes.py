"""
Fakes shared by pup tests.
"""

import json
from typing import Dict, List, Optional, Sequence, Set

from langchain_core.messages import BaseMessage

from domain.context.memory.substrate import CacheSubstrate
from domain.errors import StorageError
from domain.models import EMBEDDING_DIMENSION, OperationType
from domain.resilience.circuit_breaker import ResilientCaller
from infrastructure.llm.base import Completion, Embedding, LanguageModel
from infrastructure.persistence.in_memory import InMemoryRepository

BOT_USER_ID = "UBOT"


class FakeClock:
    """Monotonic clock advanced by hand"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingSleep:
    """Sleep replacement that records requested delays without waiting"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)


class UnavailableSubstrate(CacheSubstrate):
    """Cache substrate whose backing service is down"""

    def _down(self, operation: str):
        raise StorageError("cache unreachable", operation=operation)

    async def get(self, key):
        self._down("get")

    async def set(self, key, value, ttl):
        self._down("set")

    async def add_if_absent(self, key, value, ttl):
        self._down("add_if_absent")

    async def delete_pattern(self, pattern):
        self._down("delete_pattern")

    async def push_capped(self, key, value, capacity, ttl):
        self._down("push_capped")

    async def incr(self, key, ttl):
        self._down("incr")

    async def list_head(self, key, count):
        self._down("list_head")

    async def list_length(self, key):
        self._down("list_length")

    async def ping(self):
        return False


class FlakyRepository(InMemoryRepository):
    """In-memory repository whose listed operations raise StorageError"""

    def __init__(self):
        super().__init__()
        self.failing: Set[str] = set()

    def _check(self, operation: str):
        if operation in self.failing:
            raise StorageError(f"{operation} unavailable", operation=operation)

    async def insert_memory(self, memory):
        self._check("insert_memory")
        await super().insert_memory(memory)

    async def vector_search(self, embedding, limit, channel_id, now):
        self._check("vector_search")
        return await super().vector_search(embedding, limit, channel_id, now)

    async def keyword_search(self, query, limit, channel_id, now, without_vector=False):
        self._check("keyword_search")
        return await super().keyword_search(query, limit, channel_id, now, without_vector)

    async def recent_memories(self, channel_id, limit, now):
        self._check("recent_memories")
        return await super().recent_memories(channel_id, limit, now)

    async def increment_references(self, memory_ids):
        self._check("increment_references")
        await super().increment_references(memory_ids)

    async def delete_user_memories(self, user_id):
        self._check("delete_user_memories")
        return await super().delete_user_memories(user_id)

    async def get_profile(self, slack_id):
        self._check("get_profile")
        return await super().get_profile(slack_id)

    async def get_vibe(self, channel_id):
        self._check("get_vibe")
        return await super().get_vibe(channel_id)

    async def update_vibe(self, channel_id, changes):
        self._check("update_vibe")
        return await super().update_vibe(channel_id, changes)

    async def append_interaction(self, interaction):
        self._check("append_interaction")
        await super().append_interaction(interaction)


def basis_vector(index: int) -> List[float]:
    vector = [0.0] * EMBEDDING_DIMENSION
    vector[index] = 1.0
    return vector


def decision_json(
    should_form_memory: bool = False,
    should_respond: bool = False,
    memory_type: Optional[str] = None,
    significance: float = 0.0,
    entities: Sequence[str] = (),
) -> str:
    return json.dumps({
        "shouldFormMemory": should_form_memory,
        "shouldRespond": should_respond,
        "memoryType": memory_type,
        "significance": significance,
        "extractedEntities": list(entities),
    })


class FakeLanguageModel(LanguageModel):
    """Scriptable model; set *_error to make a call family fail"""

    chat_model = "gpt-4o-mini"
    response_model = "gpt-4o"
    embedding_model = "text-embedding-3-small"

    def __init__(self):
        self.classification = decision_json()
        self.response = "Sure thing."
        self.vectors: Dict[str, List[float]] = {}
        self.classify_error: Optional[Exception] = None
        self.complete_error: Optional[Exception] = None
        self.embed_error: Optional[Exception] = None
        self.calls: Dict[str, int] = {"classify": 0, "complete": 0, "embed": 0}
        self.prompts: List[List[BaseMessage]] = []

    async def classify(self, messages: Sequence[BaseMessage]) -> Completion:
        self.calls["classify"] += 1
        self.prompts.append(list(messages))
        if self.classify_error:
            raise self.classify_error
        return Completion(text=self.classification, tokens_used=120, model=self.chat_model)

    async def complete(self, messages: Sequence[BaseMessage]) -> Completion:
        self.calls["complete"] += 1
        self.prompts.append(list(messages))
        if self.complete_error:
            raise self.complete_error
        return Completion(text=self.response, tokens_used=300, model=self.response_model)

    async def embed(self, text: str) -> Embedding:
        self.calls["embed"] += 1
        if self.embed_error:
            raise self.embed_error
        return Embedding(vector=self.vectors.get(text, basis_vector(0)), tokens_used=8, model=self.embedding_model)


class StatusError(Exception):
    """Remote error carrying an HTTP status, like the OpenAI SDK's"""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code



def build_test_callers(clock, sleep) -> Dict[str, ResilientCaller]:
    """One caller per call family sharing the fake clock and sleep"""
    return {
        operation.value: ResilientCaller(operation.value, clock=clock, sleep=sleep)
        for operation in OperationType
    }
