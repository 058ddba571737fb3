from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, model_validator
from datetime import datetime, timezone
from enum import Enum


EMBEDDING_DIMENSION = 1536


def utc_now() -> datetime:
    """Timezone-aware current time used for every persisted timestamp"""
    return datetime.now(timezone.utc)


class MemoryKind(str, Enum):
    """Closed set of memory kinds"""
    JOKE = "joke"
    FACT = "fact"
    MOMENT = "moment"
    PREFERENCE = "preference"
    RELATIONSHIP = "relationship"
    QUOTE = "quote"


class MemoryCandidate(BaseModel):
    """Unsaved memory produced by memory formation"""
    content: str = Field(description="Remembered text")
    kind: MemoryKind = Field(description="Memory kind")
    channel_id: str = Field(description="Channel the memory was formed in")
    user_id: Optional[str] = Field(None, description="Author of the originating message")
    embedding: Optional[List[float]] = Field(None, repr=False, description="Vector for similarity search")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    significance: float = Field(description="How memorable the event is, 0-1")
    searchable_text: str = Field("", description="Lowercased text used for keyword matching")
    tags: List[str] = Field(default_factory=list)
    context: str = Field("", description="Conversation snippet around the message")
    participants: List[str] = Field(default_factory=list)


class Memory(BaseModel):
    """Durable, searchable record of something worth recalling"""
    id: str = Field(description="Unique memory identifier")
    content: str
    kind: MemoryKind
    channel_id: str
    user_id: Optional[str] = None
    embedding: Optional[List[float]] = Field(None, repr=False)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    significance: float = Field(ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: Optional[datetime] = None
    reference_count: int = Field(default=0, ge=0)
    searchable_text: str = ""
    tags: List[str] = Field(default_factory=list)
    context: str = ""
    participants: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_expiry(self) -> "Memory":
        if self.expires_at is not None and self.expires_at < self.created_at:
            raise ValueError("expires_at must not precede created_at")
        return self

    @property
    def has_vector(self) -> bool:
        return self.embedding is not None and len(self.embedding) == EMBEDDING_DIMENSION

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now
