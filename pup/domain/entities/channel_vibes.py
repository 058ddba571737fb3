from typing import Any, Dict, List, Optional, Sequence
import uuid

import structlog
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from domain.accounting.cost_ledger import CostLedger
from domain.context.memory.entity_cache import EntityCache
from domain.errors import ParseError, PupError, StorageError
from domain.models import Attribution, BufferedMessage, ChannelVibe, OperationType
from domain.resilience.circuit_breaker import ResilientCaller
from infrastructure.llm.base import LanguageModel
from infrastructure.persistence.repository import ChannelVibeRepository

logger = structlog.get_logger(__name__)

ENTITY_TYPE = "channel_vibe"

MIN_MESSAGES_FOR_ANALYSIS = 10
MAX_MESSAGES_FOR_ANALYSIS = 50

VIBE_ANALYSIS_PROMPT = """Analyze these Slack messages to determine the channel's vibe and culture.
Return JSON with:
- vibe_description: brief description, e.g. "casual banter" or "technical discussions"
- typical_topics: array of common topics (max 5)
- formality_level: 0-1 (0 very casual, 1 very formal)
- humor_tolerance: 0-1 (0 serious only, 1 jokes welcome)
- response_frequency: 0-1 (suggested bot activity level)"""


class VibeAnalysis(BaseModel):
    """Structured vibe analysis returned by the model; absent fields keep current values"""
    vibe_description: Optional[str] = None
    typical_topics: Optional[List[str]] = Field(None, max_length=5)
    formality_level: Optional[float] = Field(None, ge=0.0, le=1.0)
    humor_tolerance: Optional[float] = Field(None, ge=0.0, le=1.0)
    response_frequency: Optional[float] = Field(None, ge=0.0, le=1.0)


def parse_vibe_analysis(raw: str) -> VibeAnalysis:
    try:
        return VibeAnalysis.model_validate_json(raw)
    except ValueError as e:
        raise ParseError(f"Invalid vibe analysis: {e}", raw=raw) from e


class ChannelVibeService:
    """Cache-backed channel vibes with LLM-driven re-analysis"""

    def __init__(
        self,
        repository: ChannelVibeRepository,
        cache: EntityCache,
        llm: LanguageModel,
        caller: ResilientCaller,
        ledger: CostLedger,
    ):
        self.repository = repository
        self.cache = cache
        self.llm = llm
        self.caller = caller
        self.ledger = ledger

    async def get_or_create(self, channel_id: str, channel_name: Optional[str] = None) -> ChannelVibe:
        """Load the vibe, creating defaults on first sight; falls back to defaults when storage fails"""

        async def load() -> ChannelVibe:
            vibe = await self.repository.get_vibe(channel_id)
            if vibe is not None:
                return vibe

            vibe = ChannelVibe.default(channel_id, channel_name).model_copy(update={"id": str(uuid.uuid4())})
            vibe = await self.repository.insert_vibe(vibe)
            logger.info("Created channel vibe with defaults", channel_id=channel_id, vibe_id=vibe.id)
            return vibe

        try:
            return await self.cache.get(ENTITY_TYPE, channel_id, load)
        except StorageError as e:
            logger.error("Failed to load channel vibe, using defaults", channel_id=channel_id, error=str(e))
            return ChannelVibe.default(channel_id, channel_name)

    async def update(self, channel_id: str, **changes: Any) -> Optional[ChannelVibe]:
        """Manually override vibe settings"""

        if not changes:
            return None

        await self.get_or_create(channel_id)
        vibe = await self.repository.update_vibe(channel_id, changes)
        await self.cache.invalidate(ENTITY_TYPE, channel_id)

        logger.info("Manually updated channel vibe", channel_id=channel_id, fields=sorted(changes))
        return vibe

    async def analyze_and_update(
        self,
        channel_id: str,
        messages: Sequence[BufferedMessage],
    ) -> Optional[ChannelVibe]:
        """Re-derive the vibe from recent messages; None when skipped or failed"""

        if len(messages) < MIN_MESSAGES_FOR_ANALYSIS:
            logger.debug("Not enough messages to analyze channel vibe", channel_id=channel_id, count=len(messages))
            return None

        transcript = "\n---\n".join(message.text for message in messages[:MAX_MESSAGES_FOR_ANALYSIS])
        prompt = [
            SystemMessage(content=VIBE_ANALYSIS_PROMPT),
            HumanMessage(content=f"Channel messages:\n\n{transcript}"),
        ]
        attribution = Attribution(channel_id=channel_id)

        try:
            completion = await self.caller.execute(lambda: self.llm.classify(prompt), "analyze_channel_vibe")
        except PupError as e:
            await self.ledger.record(
                OperationType.VIBE_ANALYSIS.value, 0, self.llm.chat_model, False, attribution, error=str(e)
            )
            logger.error("Failed to analyze channel vibe", channel_id=channel_id, error=str(e))
            return None

        await self.ledger.record(
            OperationType.VIBE_ANALYSIS.value, completion.tokens_used, completion.model, True, attribution
        )

        try:
            analysis = parse_vibe_analysis(completion.text)
        except ParseError as e:
            logger.error("Discarding unreadable vibe analysis", channel_id=channel_id, error=str(e))
            return None

        changes: Dict[str, Any] = analysis.model_dump(exclude_none=True)
        if not changes:
            return None

        try:
            vibe = await self.update(channel_id, **changes)
        except StorageError as e:
            logger.error("Failed to persist channel vibe", channel_id=channel_id, error=str(e))
            return None

        logger.info(
            "Updated channel vibe",
            channel_id=channel_id,
            vibe=analysis.vibe_description,
            formality=analysis.formality_level,
            humor=analysis.humor_tolerance
        )
        return vibe
