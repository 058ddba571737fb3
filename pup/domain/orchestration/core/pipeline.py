from typing import TypedDict, List, Dict, Any, Optional, Literal, Set
import asyncio

from langgraph.graph import StateGraph, END
import structlog

from domain.accounting.cost_ledger import CostLedger
from domain.context.memory.recent_keys import RecentKeySet
from domain.context.memory.runtime_memory import MessageBuffer
from domain.context.memory.vector_memory_store import MemoryStore
from domain.entities.channel_vibes import ChannelVibeService
from domain.entities.user_profiles import UserProfileService
from domain.errors import StorageError
from domain.models import (
    Attribution, BufferedMessage, ChannelVibe, InboundMessage, IngestionDecision,
    Interaction, Memory, PipelineResult, UserProfile
)
from domain.orchestration.stages.ingestion import IngestionStage
from domain.orchestration.stages.memory_formation import MemoryFormationStage
from domain.orchestration.stages.response_generation import ResponseGenerationStage
from infrastructure.observability.logging import bind_message_context, clear_message_context

logger = structlog.get_logger(__name__)

HISTORY_LIMIT = 20
VIBE_ANALYSIS_INTERVAL = 50


class PipelineState(TypedDict, total=False):
    """State for the message graph; parallel branches write disjoint keys"""
    message: InboundMessage
    duplicate: bool
    history: List[BufferedMessage]
    decision: IngestionDecision
    memory_formed: bool
    response: Optional[str]


class MessagePipeline:
    """
    Per-message workflow:

        dedupe -> buffer -> ingest -> (form_memory || respond) -> END

    Memory formation and response generation run as parallel branches and
    each turns its own failures into a degraded result.
    """

    def __init__(
        self,
        buffer: MessageBuffer,
        recent_keys: RecentKeySet,
        memory_store: MemoryStore,
        profiles: UserProfileService,
        vibes: ChannelVibeService,
        ledger: CostLedger,
        ingestion: IngestionStage,
        memory_formation: MemoryFormationStage,
        response_generation: ResponseGenerationStage,
    ):
        self.buffer = buffer
        self.recent_keys = recent_keys
        self.memory_store = memory_store
        self.profiles = profiles
        self.vibes = vibes
        self.ledger = ledger
        self.ingestion = ingestion
        self.memory_formation = memory_formation
        self.response_generation = response_generation
        self._background: Set[asyncio.Task] = set()
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the message workflow graph"""

        workflow = StateGraph(PipelineState)

        workflow.add_node("dedupe", self.dedupe_node)
        workflow.add_node("buffer", self.buffer_node)
        workflow.add_node("ingest", self.ingestion.process)
        workflow.add_node("form_memory", self.memory_formation.process)
        workflow.add_node("respond", self.response_generation.process)

        workflow.set_entry_point("dedupe")

        workflow.add_conditional_edges(
            "dedupe",
            self.route_after_dedupe,
            {
                "duplicate": END,
                "new": "buffer"
            }
        )
        workflow.add_edge("buffer", "ingest")

        # Fan out, then both branches join at END
        workflow.add_edge("ingest", "form_memory")
        workflow.add_edge("ingest", "respond")
        workflow.add_edge("form_memory", END)
        workflow.add_edge("respond", END)

        return workflow.compile()

    async def dedupe_node(self, state: PipelineState) -> Dict[str, Any]:
        """Drop Slack redeliveries of an event already seen"""

        message = state["message"]
        key = message.event_id or f"{message.channel}:{message.timestamp}"
        fresh = await self.recent_keys.add("event", key)
        if not fresh:
            logger.info("Skipping duplicate event", dedupe_key=key)
        return {"duplicate": not fresh}

    def route_after_dedupe(self, state: PipelineState) -> Literal["duplicate", "new"]:
        return "duplicate" if state.get("duplicate") else "new"

    async def buffer_node(self, state: PipelineState) -> Dict[str, Any]:
        """Buffer the message, note the author's activity and load recent history"""

        message = state["message"]
        appended = await self.buffer_message(message.channel, BufferedMessage.from_inbound(message))

        try:
            await self.profiles.get_or_create(message.user)
            await self.profiles.touch(message.user)
        except StorageError as e:
            logger.warning("Failed to record user activity", user_id=message.user, error=str(e))

        history = await self.recent_messages(message.channel, HISTORY_LIMIT)
        await self._maybe_analyze_vibe(message.channel, appended)
        return {"history": history}

    async def _maybe_analyze_vibe(self, channel_id: str, appended: int) -> None:
        """Analyze once per VIBE_ANALYSIS_INTERVAL messages received by the channel"""

        if appended == 0 or appended % VIBE_ANALYSIS_INTERVAL != 0:
            return

        messages = await self.buffer.recent(channel_id, VIBE_ANALYSIS_INTERVAL)
        task = asyncio.create_task(self.vibes.analyze_and_update(channel_id, messages))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def process_message(self, message: InboundMessage) -> PipelineResult:
        """Run one inbound message through the workflow"""

        bind_message_context(message.channel, message.event_id)
        logger.info("Processing message", user_id=message.user)

        try:
            final_state = await self.workflow.ainvoke({"message": message})
        except Exception:
            logger.exception("Error processing message")
            return PipelineResult(response=None, memory_formed=False, should_track_cost=False)
        finally:
            clear_message_context()

        if final_state.get("duplicate"):
            return PipelineResult(response=None, memory_formed=False, should_track_cost=False, duplicate=True)

        result = PipelineResult(
            response=final_state.get("response"),
            memory_formed=final_state.get("memory_formed", False),
            should_track_cost=True
        )
        logger.info(
            "Message processing complete",
            channel_id=message.channel,
            has_response=result.response is not None,
            memory_formed=result.memory_formed
        )
        return result

    async def close(self) -> None:
        """Cancel in-flight background analyses"""

        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # Operations exposed to the service layer

    async def form_memory(self, message: InboundMessage, decision: IngestionDecision) -> Optional[Memory]:
        history = await self.recent_messages(message.channel, HISTORY_LIMIT)
        return await self.memory_formation.form_memory(message, decision, history)

    async def search_memories(self, query: str, limit: int = 5, channel_id: Optional[str] = None) -> List[Memory]:
        """Never raises; empty on total failure"""
        result = await self.memory_store.search(query, limit, channel_id)
        return result.unwrap_or([])

    async def get_recent_memories(self, channel_id: str, limit: int = 10) -> List[Memory]:
        result = await self.memory_store.get_recent(channel_id, limit)
        return result.unwrap_or([])

    async def buffer_message(self, channel_id: str, message: BufferedMessage) -> int:
        return await self.buffer.append(channel_id, message)

    async def recent_messages(self, channel_id: str, limit: int = 100) -> List[BufferedMessage]:
        return await self.buffer.recent(channel_id, limit)

    async def get_or_create_profile(self, user_id: str, display_name: Optional[str] = None) -> UserProfile:
        return await self.profiles.get_or_create(user_id, display_name)

    async def get_or_create_vibe(self, channel_id: str, channel_name: Optional[str] = None) -> ChannelVibe:
        return await self.vibes.get_or_create(channel_id, channel_name)

    async def record_interaction(
        self,
        operation_type: str,
        tokens_used: int,
        model_id: str,
        success: bool,
        attribution: Optional[Attribution] = None,
        error: Optional[str] = None,
    ) -> Optional[Interaction]:
        """Fire and forget; ledger failures are logged by the ledger"""
        return await self.ledger.record(operation_type, tokens_used, model_id, success, attribution, error)
