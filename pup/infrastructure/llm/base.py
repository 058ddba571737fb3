from abc import ABC, abstractmethod
from typing import List, Sequence

from langchain_core.messages import BaseMessage
from pydantic import BaseModel, Field


class Completion(BaseModel):
    """Text returned by a chat model together with its token usage"""
    text: str
    tokens_used: int = Field(0, ge=0)
    model: str


class Embedding(BaseModel):
    """Vector returned by the embedding model"""
    vector: List[float] = Field(repr=False)
    tokens_used: int = Field(0, ge=0)
    model: str


class LanguageModel(ABC):
    """
    Raw remote model calls.

    Implementations do not retry; failures surface as exceptions so the
    caller's ResilientCaller can classify and retry them.
    """

    chat_model: str
    response_model: str
    embedding_model: str

    @abstractmethod
    async def classify(self, messages: Sequence[BaseMessage]) -> Completion:
        """Low-temperature call that must answer with a JSON object"""

    @abstractmethod
    async def complete(self, messages: Sequence[BaseMessage]) -> Completion:
        """Conversational reply"""

    @abstractmethod
    async def embed(self, text: str) -> Embedding:
        pass

    async def close(self) -> None:
        pass
