from typing import Dict, Any, List
from pydantic import BaseModel, Field
from datetime import datetime

from .memory import utc_now


class UserProfile(BaseModel):
    """Persisted view of a Slack user"""
    id: str = Field(description="Internal profile identifier")
    slack_id: str = Field(description="External Slack user ID")
    display_name: str
    personality_traits: Dict[str, Any] = Field(default_factory=dict, description="Humor style, interests, quirks")
    speech_patterns: Dict[str, Any] = Field(default_factory=dict, description="Common phrases, emoji usage")
    activity_patterns: Dict[str, Any] = Field(default_factory=dict, description="Active hours, channel preferences")
    relationship_summary: str = "New member"
    last_seen: datetime = Field(default_factory=utc_now)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ChannelVibe(BaseModel):
    """Persisted culture of a channel, used to tune responses"""
    id: str
    channel_id: str
    channel_name: str
    vibe_description: str = "casual and friendly"
    typical_topics: List[str] = Field(default_factory=list)
    formality_level: float = Field(0.3, ge=0.0, le=1.0, description="0 casual, 1 formal")
    humor_tolerance: float = Field(0.8, ge=0.0, le=1.0)
    response_frequency: float = Field(0.5, ge=0.0, le=1.0, description="How often to respond organically")
    custom_rules: Dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def default(cls, channel_id: str, channel_name: str = None) -> "ChannelVibe":
        """Vibe used for unknown channels and when the datastore is unavailable"""
        return cls(id="default", channel_id=channel_id, channel_name=channel_name or channel_id)
