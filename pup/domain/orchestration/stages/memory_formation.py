from typing import Dict, Any, List, Optional
import structlog

from domain.context.embedder import Embedder
from domain.context.memory.vector_memory_store import MemoryStore
from domain.errors import PupError, ValidationError
from domain.models import (
    Attribution, BufferedMessage, Err, InboundMessage, IngestionDecision, Memory, MemoryCandidate
)
from .base_stage import BasePipelineStage

logger = structlog.get_logger(__name__)

CONTEXT_MESSAGES = 3


def build_candidate(
    message: InboundMessage,
    decision: IngestionDecision,
    history: List[BufferedMessage],
    embedding: Optional[List[float]] = None,
) -> MemoryCandidate:
    """Shape a classified message into an unsaved memory"""

    # history is newest first and may already contain this message
    earlier = [m for m in history if m.timestamp != message.timestamp][:CONTEXT_MESSAGES]
    context = "\n".join(f"<@{m.user}>: {m.text}" for m in reversed(earlier))
    participants = list(dict.fromkeys([message.user] + [m.user for m in earlier]))

    return MemoryCandidate(
        content=message.text,
        kind=decision.memory_type,
        channel_id=message.channel,
        user_id=message.user,
        embedding=embedding,
        metadata={"timestamp": message.timestamp, "thread_ts": message.thread_ts},
        significance=decision.significance,
        searchable_text=" ".join([message.text] + decision.extracted_entities).lower(),
        tags=decision.extracted_entities,
        context=context,
        participants=participants,
    )


class MemoryFormationStage(BasePipelineStage):
    """Turns significant messages into stored memories"""

    def __init__(self, memory_store: MemoryStore, embedder: Embedder):
        super().__init__("memory_formation", "Persist memories for significant messages")
        self.memory_store = memory_store
        self.embedder = embedder

    async def form_memory(
        self,
        message: InboundMessage,
        decision: IngestionDecision,
        history: Optional[List[BufferedMessage]] = None,
    ) -> Optional[Memory]:
        """Stored memory, or None when not warranted or not saved"""

        if not decision.should_form_memory or decision.memory_type is None:
            logger.debug("Message does not warrant memory formation")
            return None

        attribution = Attribution(channel_id=message.channel, user_id=message.user)
        embedding = None
        try:
            embedding = await self.embedder.embed(message.text, attribution)
        except PupError as e:
            logger.warning("Embedding unavailable, memory will be keyword-searchable only", error=str(e))

        candidate = build_candidate(message, decision, history or [], embedding)

        try:
            result = await self.memory_store.create(candidate)
        except ValidationError as e:
            logger.error("Rejected memory candidate", error=str(e))
            return None

        if isinstance(result, Err):
            return None
        return result.value

    async def process(self, state: Dict[str, Any]) -> Dict[str, Any]:
        self.update_activity()
        try:
            memory = await self.form_memory(state["message"], state["decision"], state.get("history", []))
        except Exception:
            logger.exception("Memory formation failed")
            memory = None

        return {"memory_formed": memory is not None}
