from typing import List, Optional

import structlog

from domain.accounting.cost_ledger import CostLedger
from domain.errors import PupError
from domain.models import Attribution, OperationType
from domain.resilience.circuit_breaker import ResilientCaller
from infrastructure.llm.base import LanguageModel

logger = structlog.get_logger(__name__)


class Embedder:
    """Embedding generation through the embedding call family's breaker, with cost recorded"""

    def __init__(self, llm: LanguageModel, caller: ResilientCaller, ledger: CostLedger):
        self.llm = llm
        self.caller = caller
        self.ledger = ledger

    async def embed(self, text: str, attribution: Optional[Attribution] = None) -> List[float]:
        """Raises RemoteCallFailed or CircuitOpenError"""

        try:
            embedding = await self.caller.execute(lambda: self.llm.embed(text), "generate_embedding")
        except PupError as e:
            await self.ledger.record(
                OperationType.EMBEDDING.value, 0, self.llm.embedding_model, False, attribution, error=str(e)
            )
            raise

        await self.ledger.record(
            OperationType.EMBEDDING.value, embedding.tokens_used, embedding.model, True, attribution
        )
        return embedding.vector
