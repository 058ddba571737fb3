from typing import Dict, List, NamedTuple, Optional
import uuid
from datetime import datetime

import structlog

from domain.errors import StorageError
from domain.models import Attribution, Interaction, UsageSummary
from infrastructure.persistence.repository import InteractionRepository

logger = structlog.get_logger(__name__)


class ModelRate(NamedTuple):
    """USD per 1000 tokens; output None for input-only models"""
    input_per_1k: float
    output_per_1k: Optional[float]


PRICE_TABLE: Dict[str, ModelRate] = {
    "gpt-4o-mini": ModelRate(0.00015, 0.0006),
    "gpt-4o": ModelRate(0.0025, 0.01),
    "gpt-4.1-mini": ModelRate(0.0004, 0.0016),
    "text-embedding-3-small": ModelRate(0.00002, None),
    "text-embedding-3-large": ModelRate(0.00013, None),
}

DEFAULT_MODEL = "gpt-4o-mini"

# Usage is reported as a single total; this share of it is billed as input
INPUT_TOKEN_SHARE = 0.75


def compute_cost(tokens_used: int, model_id: str) -> float:
    """Approximate USD cost of a call from its total token count"""

    rate = PRICE_TABLE.get(model_id)
    if rate is None:
        logger.warning("No price for model, using default rates", model_id=model_id, default_model=DEFAULT_MODEL)
        rate = PRICE_TABLE[DEFAULT_MODEL]

    thousands = max(tokens_used, 0) / 1000.0
    if rate.output_per_1k is None:
        return thousands * rate.input_per_1k

    blended = rate.input_per_1k * INPUT_TOKEN_SHARE + rate.output_per_1k * (1 - INPUT_TOKEN_SHARE)
    return thousands * blended


class CostLedger:
    """Append-only record of remote call outcomes"""

    def __init__(self, repository: InteractionRepository):
        self.repository = repository

    async def record(
        self,
        operation_type: str,
        tokens_used: int,
        model_id: str,
        success: bool,
        attribution: Optional[Attribution] = None,
        error: Optional[str] = None,
    ) -> Optional[Interaction]:
        """Append one interaction; ledger failures are logged, never raised"""

        attribution = attribution or Attribution()
        interaction = Interaction(
            id=str(uuid.uuid4()),
            operation_type=operation_type,
            tokens_used=max(tokens_used, 0),
            cost_usd=compute_cost(tokens_used, model_id),
            model_id=model_id,
            success=success,
            error_message=error,
            channel_id=attribution.channel_id,
            user_id=attribution.user_id,
        )

        try:
            await self.repository.append_interaction(interaction)
        except StorageError as e:
            logger.error(
                "Failed to record interaction",
                operation_type=operation_type,
                model_id=model_id,
                error=str(e)
            )
            return None

        logger.debug(
            "Interaction recorded",
            operation_type=operation_type,
            tokens_used=interaction.tokens_used,
            cost_usd=interaction.cost_usd,
            success=success
        )
        return interaction

    async def summarize(self, since: Optional[datetime] = None) -> List[UsageSummary]:
        """Totals per operation type, ordered by cost descending"""

        totals: Dict[str, UsageSummary] = {}
        for interaction in await self.repository.list_interactions(since):
            summary = totals.setdefault(
                interaction.operation_type,
                UsageSummary(operation_type=interaction.operation_type)
            )
            summary.calls += 1
            summary.failures += 0 if interaction.success else 1
            summary.tokens_used += interaction.tokens_used
            summary.cost_usd += interaction.cost_usd

        return sorted(totals.values(), key=lambda s: s.cost_usd, reverse=True)
