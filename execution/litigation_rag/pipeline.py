"""
Server-side RAG chat turn.

    history -> retrieve (embed + match) -> assemble prompt
            -> open completion stream -> multiplex sources ahead of tokens

Retrieval finishes before the completion call starts. Completion errors
raise from ``open_stream`` before any byte is produced, so the HTTP layer
can still answer with a status code.
"""

import logging
from typing import AsyncIterator, Optional, Sequence
from dataclasses import dataclass

from .api_models import ConversationMessage, RAGSource
from .completion import CompletionService
from .prompts import MODE_INSTRUCTIONS, PromptAssembler
from .retriever import SemanticRetriever, to_rag_sources
from .streaming import multiplex

logger = logging.getLogger(__name__)


@dataclass
class ChatStream:
    """An opened chat turn: the sources shown to the user and the wire body."""
    sources: list[RAGSource]
    body: AsyncIterator[bytes]


def latest_user_query(history: Sequence[ConversationMessage]) -> str:
    """Content of the last user turn, which is what gets retrieved for."""
    for message in reversed(history):
        if message.role == "user":
            return message.content
    return ""


class RAGChatPipeline:
    """
    Runs one user turn through retrieval, grounding and streaming.

    Only one turn per conversation should be in flight; concurrent turns
    are the caller's to serialize.
    """

    def __init__(
        self,
        retriever: SemanticRetriever,
        completion: CompletionService,
        assembler: Optional[PromptAssembler] = None,
        metrics=None,
    ):
        self.retriever = retriever
        self.completion = completion
        self.assembler = assembler or PromptAssembler()
        self._metrics = metrics

    async def open_stream(
        self,
        history: Sequence[ConversationMessage],
        mode: str = "balanced",
    ) -> ChatStream:
        """
        Retrieve, ground and start streaming one assistant turn.

        Args:
            history: Conversation so far, ending with the new user turn
            mode: Response mode

        Returns:
            ChatStream whose body starts with the rag_sources frame when
            any sources were found

        Raises:
            ValueError: unknown mode
            ConfigurationError / UpstreamError: the completion call failed
        """
        if mode not in MODE_INSTRUCTIONS:
            raise ValueError(f"Unknown response mode: {mode!r}")

        query = latest_user_query(history)
        fragments = await self.retriever.retrieve(query) if query.strip() else []
        sources = to_rag_sources(fragments, self.retriever.config.display_chars)

        messages = self.assembler.assemble(history, fragments, mode)
        logger.info(
            f"Chat turn: mode={mode}, {len(history)} messages, {len(sources)} sources"
        )

        try:
            upstream = await self.completion.stream(messages)
        except Exception as e:
            if self._metrics is not None:
                self._metrics.record_failure(mode, type(e).__name__)
            raise

        if self._metrics is not None:
            self._metrics.record_turn(mode, len(sources))
        return ChatStream(sources=sources, body=multiplex(sources, upstream))
