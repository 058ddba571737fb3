from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from enum import Enum

from .memory import utc_now


class OperationType(str, Enum):
    """Remote call families recorded in the cost ledger"""
    CLASSIFICATION = "classification"
    EMBEDDING = "embedding"
    RESPONSE = "response"
    VIBE_ANALYSIS = "vibe_analysis"


class Attribution(BaseModel):
    """Who a remote call was made on behalf of"""
    model_config = ConfigDict(frozen=True)

    channel_id: Optional[str] = None
    user_id: Optional[str] = None


class Interaction(BaseModel):
    """Append-only record of one remote call outcome"""
    model_config = ConfigDict(frozen=True)

    id: str
    operation_type: str
    tokens_used: int = Field(0, ge=0)
    cost_usd: float = Field(0.0, ge=0.0)
    model_id: str
    success: bool = True
    error_message: Optional[str] = None
    channel_id: Optional[str] = None
    user_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class UsageSummary(BaseModel):
    """Aggregated ledger totals for one operation type"""
    operation_type: str
    calls: int = 0
    failures: int = 0
    tokens_used: int = 0
    cost_usd: float = 0.0
