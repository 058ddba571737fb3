from typing import Dict, Any, List
import structlog

from domain.accounting.cost_ledger import CostLedger
from domain.errors import ParseError, PupError
from domain.models import Attribution, BufferedMessage, InboundMessage, IngestionDecision, OperationType
from domain.orchestration.prompting import build_classification_messages
from domain.resilience.circuit_breaker import ResilientCaller
from infrastructure.llm.base import LanguageModel
from .base_stage import BasePipelineStage

logger = structlog.get_logger(__name__)


def parse_decision(raw: str) -> IngestionDecision:
    """Convert the classifier's raw JSON into a decision; raises ParseError"""

    try:
        return IngestionDecision.model_validate_json(raw)
    except ValueError as e:
        raise ParseError(f"Invalid classifier output: {e}", raw=raw) from e


class IngestionStage(BasePipelineStage):
    """Classifies each message: remember it, answer it, or neither"""

    def __init__(self, llm: LanguageModel, caller: ResilientCaller, ledger: CostLedger):
        super().__init__("ingestion", "Classify inbound messages")
        self.llm = llm
        self.caller = caller
        self.ledger = ledger

    async def classify(self, message: InboundMessage, history: List[BufferedMessage]) -> IngestionDecision:
        """Never raises; any failure yields a declined decision"""

        attribution = Attribution(channel_id=message.channel, user_id=message.user)
        prompt = build_classification_messages(message, history)

        try:
            completion = await self.caller.execute(lambda: self.llm.classify(prompt), "classify_message")
        except PupError as e:
            await self.ledger.record(
                OperationType.CLASSIFICATION.value, 0, self.llm.chat_model, False, attribution, error=str(e)
            )
            logger.error("Classification unavailable", error=str(e))
            return IngestionDecision.declined()

        await self.ledger.record(
            OperationType.CLASSIFICATION.value, completion.tokens_used, completion.model, True, attribution
        )

        try:
            decision = parse_decision(completion.text)
        except ParseError as e:
            logger.error("Discarding unreadable classification", error=str(e), raw=(e.raw or "")[:200])
            return IngestionDecision.declined()

        logger.info(
            "Ingestion complete",
            should_form_memory=decision.should_form_memory,
            should_respond=decision.should_respond,
            memory_type=decision.memory_type.value if decision.memory_type else None,
            significance=decision.significance
        )
        return decision

    async def process(self, state: Dict[str, Any]) -> Dict[str, Any]:
        self.update_activity()
        decision = await self.classify(state["message"], state.get("history", []))
        return {"decision": decision}
