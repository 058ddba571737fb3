from typing import Dict, Any, NamedTuple, Optional
from enum import Enum
import structlog

from domain.accounting.cost_ledger import CostLedger
from domain.context.context_manager import ContextManager
from domain.errors import CircuitOpenError, PupError, RemoteCallFailed, ValidationError
from domain.models import Attribution, InboundMessage, IngestionDecision, OperationType
from domain.orchestration.prompting import build_response_messages
from domain.resilience.circuit_breaker import ResilientCaller
from infrastructure.llm.base import LanguageModel
from .base_stage import BasePipelineStage

logger = structlog.get_logger(__name__)

FALLBACK_RESPONSE = "I couldn't generate a response right now."


class ResponseType(str, Enum):
    MENTION = "mention"
    DM = "dm"
    ORGANIC = "organic"


class ResponseTrigger(NamedTuple):
    should_respond: bool
    response_type: ResponseType


def should_bot_respond(message: InboundMessage, bot_user_id: str, decision: IngestionDecision) -> ResponseTrigger:
    """Mentions and direct messages are always answered; otherwise the classifier decides"""

    if bot_user_id and f"<@{bot_user_id}>" in message.text:
        return ResponseTrigger(True, ResponseType.MENTION)
    if message.is_direct_message:
        return ResponseTrigger(True, ResponseType.DM)
    return ResponseTrigger(decision.should_respond, ResponseType.ORGANIC)


class ResponseGenerationStage(BasePipelineStage):
    """Answers messages using buffered history, memories and channel vibe"""

    def __init__(
        self,
        context_manager: ContextManager,
        llm: LanguageModel,
        caller: ResilientCaller,
        ledger: CostLedger,
        bot_user_id: str = "",
    ):
        super().__init__("response_generation", "Generate replies")
        self.context_manager = context_manager
        self.llm = llm
        self.caller = caller
        self.ledger = ledger
        self.bot_user_id = bot_user_id

    async def generate(self, message: InboundMessage, response_type: ResponseType = ResponseType.ORGANIC) -> str:
        """Raises ValidationError, RemoteCallFailed or CircuitOpenError"""

        if not message.text.strip():
            raise ValidationError("Cannot respond to an empty message")

        logger.info("Generating response", response_type=response_type.value, user_id=message.user)

        context = await self.context_manager.build_response_context(message)
        prompt = build_response_messages(context, self.bot_user_id)
        attribution = Attribution(channel_id=message.channel, user_id=message.user)

        try:
            completion = await self.caller.execute(lambda: self.llm.complete(prompt), "generate_response")
        except PupError as e:
            await self.ledger.record(
                OperationType.RESPONSE.value, 0, self.llm.response_model, False, attribution, error=str(e)
            )
            raise

        await self.ledger.record(
            OperationType.RESPONSE.value, completion.tokens_used, completion.model, True, attribution
        )

        text = completion.text.strip()
        if not text:
            raise ValidationError("Model returned an empty response")

        logger.info("Response generated", response_length=len(text), memories_used=len(context.memories))
        return text

    async def respond(self, message: InboundMessage, decision: IngestionDecision) -> Optional[str]:
        """Reply text, the fallback apology, or None when silence is the right outcome"""

        trigger = should_bot_respond(message, self.bot_user_id, decision)
        if not trigger.should_respond:
            logger.debug("Response not warranted for this message")
            return None

        try:
            return await self.generate(message, trigger.response_type)
        except ValidationError as e:
            logger.error("Response rejected", error=str(e))
            return FALLBACK_RESPONSE
        except RemoteCallFailed as e:
            if e.transient:
                logger.error("Response generation unavailable", attempts=e.attempts, error=str(e))
                return None
            logger.error("Response generation failed", attempts=e.attempts, error=str(e))
            return FALLBACK_RESPONSE
        except CircuitOpenError as e:
            logger.warning("Response generation skipped, circuit open", retry_after=e.retry_after)
            return None

    async def process(self, state: Dict[str, Any]) -> Dict[str, Any]:
        self.update_activity()
        try:
            response = await self.respond(state["message"], state["decision"])
        except Exception:
            logger.exception("Response generation failed unexpectedly")
            response = None

        return {"response": response}
