from typing import Any, Optional, Sequence

import openai
import structlog
from langchain_core.messages import AIMessage, BaseMessage
from langchain_openai import ChatOpenAI, OpenAIEmbeddings

from domain.errors import TransientRemoteError
from .base import Completion, Embedding, LanguageModel

logger = structlog.get_logger(__name__)


def _token_usage(message: AIMessage) -> int:
    usage = getattr(message, "usage_metadata", None)
    if usage:
        return int(usage.get("total_tokens", 0))

    token_usage = (message.response_metadata or {}).get("token_usage") or {}
    return int(token_usage.get("total_tokens", 0))


def _text(message: AIMessage) -> str:
    if isinstance(message.content, str):
        return message.content

    # Content blocks
    return "".join(
        block.get("text", "") if isinstance(block, dict) else str(block)
        for block in message.content
    )


class OpenAILanguageModel(LanguageModel):
    """OpenAI chat and embedding calls through LangChain, with client retries disabled"""

    def __init__(
        self,
        api_key: Optional[str],
        chat_model: str = "gpt-4o-mini",
        response_model: str = "gpt-4o",
        embedding_model: str = "text-embedding-3-small",
        embedding_dimension: int = 1536,
        response_max_tokens: int = 500,
    ):
        self.chat_model = chat_model
        self.response_model = response_model
        self.embedding_model = embedding_model

        self._classifier = ChatOpenAI(
            model=chat_model,
            api_key=api_key,
            temperature=0,
            max_retries=0,
        ).bind(response_format={"type": "json_object"})
        self._responder = ChatOpenAI(
            model=response_model,
            api_key=api_key,
            max_tokens=response_max_tokens,
            max_retries=0,
        )
        self._embeddings = OpenAIEmbeddings(
            model=embedding_model,
            api_key=api_key,
            dimensions=embedding_dimension,
            max_retries=0,
        )

    async def _invoke(self, runnable: Any, messages: Sequence[BaseMessage], model: str) -> Completion:
        try:
            message = await runnable.ainvoke(list(messages))
        except openai.APIConnectionError as e:
            # Includes timeouts; status-bearing errors are classified by their status code
            raise TransientRemoteError(str(e)) from e

        completion = Completion(text=_text(message), tokens_used=_token_usage(message), model=model)
        logger.debug("Chat completion received", model=model, tokens_used=completion.tokens_used)
        return completion

    async def classify(self, messages: Sequence[BaseMessage]) -> Completion:
        return await self._invoke(self._classifier, messages, self.chat_model)

    async def complete(self, messages: Sequence[BaseMessage]) -> Completion:
        return await self._invoke(self._responder, messages, self.response_model)

    async def embed(self, text: str) -> Embedding:
        try:
            vector = await self._embeddings.aembed_query(text)
        except openai.APIConnectionError as e:
            raise TransientRemoteError(str(e)) from e

        # The embeddings wrapper drops usage; approximate at four characters per token
        return Embedding(vector=vector, tokens_used=max(len(text) // 4, 1), model=self.embedding_model)
