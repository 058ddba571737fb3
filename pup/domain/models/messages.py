from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .memory import MemoryKind


class InboundMessage(BaseModel):
    """Normalized Slack message handed to the pipeline"""
    text: str = Field(description="Message text")
    user: str = Field(description="Author Slack ID")
    channel: str = Field(description="Channel ID, D-prefixed for direct messages")
    timestamp: str = Field(description="Slack message ts")
    thread_ts: Optional[str] = Field(None, description="Parent thread ts")
    event_id: Optional[str] = Field(None, description="Slack event ID used for redelivery detection")

    @property
    def is_direct_message(self) -> bool:
        return self.channel.startswith("D")


class BufferedMessage(BaseModel):
    """Ephemeral conversational context kept per channel"""
    text: str
    user: str
    timestamp: str
    thread_ts: Optional[str] = None

    @classmethod
    def from_inbound(cls, message: InboundMessage) -> "BufferedMessage":
        return cls(
            text=message.text,
            user=message.user,
            timestamp=message.timestamp,
            thread_ts=message.thread_ts
        )


class IngestionDecision(BaseModel):
    """Classifier verdict for one inbound message"""
    model_config = ConfigDict(populate_by_name=True)

    should_form_memory: bool = Field(alias="shouldFormMemory")
    should_respond: bool = Field(alias="shouldRespond")
    memory_type: Optional[MemoryKind] = Field(None, alias="memoryType")
    significance: float = Field(0.0, ge=0.0, le=1.0)
    extracted_entities: List[str] = Field(default_factory=list, alias="extractedEntities")

    @model_validator(mode="after")
    def _require_kind(self) -> "IngestionDecision":
        if self.should_form_memory and self.memory_type is None:
            raise ValueError("memoryType is required when shouldFormMemory is true")
        return self

    @classmethod
    def declined(cls) -> "IngestionDecision":
        """Decision used when classification is unavailable"""
        return cls(should_form_memory=False, should_respond=False, significance=0.0)


class PipelineResult(BaseModel):
    """Outcome of processing one inbound message"""
    model_config = ConfigDict(populate_by_name=True)

    response: Optional[str] = None
    memory_formed: bool = Field(False, alias="memoryFormed")
    should_track_cost: bool = Field(True, alias="shouldTrackCost")
    duplicate: bool = False
