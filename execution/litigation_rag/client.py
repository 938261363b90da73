"""
Async client for the Litigation RAG chat API.

``stream_events`` yields decoded ``StreamEvent`` objects; ``send_message``
drives the same stream through callbacks:

    callbacks = StreamCallbacks(
        on_rag_sources=show_sources,
        on_delta=append_text,
        on_done=finish,
        on_error=show_error,
    )
    answer = await client.send_message(history, "balanced", callbacks)

Cancelling the awaiting task abandons the transport read. Text already
delivered through ``on_delta`` stands, ``on_done`` is not called, and
``on_cancel`` is called before ``asyncio.CancelledError`` propagates.
"""

import os
import asyncio
import logging
from typing import AsyncIterator, Callable, Optional, Sequence, Union
from dataclasses import dataclass

import httpx

from .api_models import ChatRequest, ConversationMessage, RAGSource, SearchResponse
from .errors import ChatRequestError, QuotaExceededError, RateLimitError, UpstreamError
from .streaming import (
    DeltaEvent,
    DoneEvent,
    ErrorEvent,
    RAGSourcesEvent,
    StreamEvent,
    decode_stream,
)

logger = logging.getLogger(__name__)

MessageLike = Union[ConversationMessage, dict]


@dataclass
class StreamCallbacks:
    """Callbacks invoked as chat stream events arrive."""
    on_delta: Optional[Callable[[str], None]] = None
    on_done: Optional[Callable[[], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None
    on_rag_sources: Optional[Callable[[list[RAGSource]], None]] = None
    on_cancel: Optional[Callable[[], None]] = None


def error_from_response(response: httpx.Response) -> UpstreamError:
    """Map a non-2xx chat API response to an error."""
    message = None
    try:
        data = response.json()
        if isinstance(data, dict):
            message = data.get("error") or data.get("detail")
    except ValueError:
        pass

    if response.status_code == 429:
        return RateLimitError("Rate limit exceeded. Please wait a moment and try again.")
    if response.status_code == 402:
        return QuotaExceededError("Usage limit reached. Please add credits to your workspace.")
    if message and not isinstance(message, str):
        message = str(message)
    return ChatRequestError(
        message or f"Request failed with status {response.status_code}",
        status_code=response.status_code,
    )


class LegalChatClient:
    """Client for the chat and knowledge-search endpoints."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
    ):
        self.base_url = (base_url or os.getenv("LITIGATION_RAG_URL") or "http://localhost:8000").rstrip("/")
        self._api_key = api_key
        self._http = http_client
        self._timeout = timeout

    @property
    def chat_url(self) -> str:
        return f"{self.base_url}/api/v1/chat"

    @property
    def search_url(self) -> str:
        return f"{self.base_url}/api/v1/search"

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout, connect=10.0))
        return self._http

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def stream_events(
        self,
        messages: Sequence[MessageLike],
        mode: str = "balanced",
        session_id: Optional[str] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        POST a chat turn and yield its events.

        Ends with either one DoneEvent or one ErrorEvent. HTTP status
        failures and transport failures (also mid-stream) become an
        ErrorEvent carrying the exception.
        """
        request = ChatRequest(messages=list(messages), mode=mode, session_id=session_id)
        payload = request.model_dump(by_alias=True, exclude_none=True)
        client = self._get_http_client()

        try:
            async with client.stream("POST", self.chat_url, json=payload, headers=self._headers()) as response:
                if not response.is_success:
                    await response.aread()
                    error = error_from_response(response)
                    logger.error(f"Chat request failed: {response.status_code} {error}")
                    yield ErrorEvent(str(error), error)
                    return

                async for event in decode_stream(response.aiter_bytes()):
                    yield event
        except httpx.HTTPError as e:
            logger.error(f"Stream error: {type(e).__name__}: {e}")
            yield ErrorEvent(str(e) or type(e).__name__, e)

    async def send_message(
        self,
        messages: Sequence[MessageLike],
        mode: str = "balanced",
        callbacks: Optional[StreamCallbacks] = None,
        session_id: Optional[str] = None,
    ) -> str:
        """
        Stream one assistant turn through callbacks.

        Errors go to ``on_error`` when it is set and are raised otherwise.
        Exceptions raised by the callbacks themselves propagate unchanged.

        Returns:
            The answer text received (partial if the turn failed)
        """
        callbacks = callbacks or StreamCallbacks()
        answer: list[str] = []
        events = self.stream_events(messages, mode, session_id)

        try:
            async for event in events:
                if isinstance(event, RAGSourcesEvent):
                    if callbacks.on_rag_sources:
                        callbacks.on_rag_sources(event.sources)
                elif isinstance(event, DeltaEvent):
                    answer.append(event.text)
                    if callbacks.on_delta:
                        callbacks.on_delta(event.text)
                elif isinstance(event, DoneEvent):
                    if callbacks.on_done:
                        callbacks.on_done()
                elif isinstance(event, ErrorEvent):
                    error = event.error or ChatRequestError(event.message)
                    if callbacks.on_error:
                        callbacks.on_error(error)
                        break
                    raise error
        except asyncio.CancelledError:
            logger.info("Chat stream cancelled")
            if callbacks.on_cancel:
                callbacks.on_cancel()
            raise
        finally:
            await events.aclose()

        return "".join(answer)

    async def search(
        self,
        query: str,
        threshold: float = 0.75,
        limit: int = 10,
    ) -> SearchResponse:
        """Standalone semantic search over indexed judgments."""
        client = self._get_http_client()
        response = await client.post(
            self.search_url,
            json={"query": query, "matchThreshold": threshold, "matchCount": limit},
            headers=self._headers(),
        )
        if not response.is_success:
            raise error_from_response(response)
        return SearchResponse.model_validate(response.json())


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    from .citation import extract_citations

    load_dotenv()
    logging.basicConfig(level=logging.WARNING)

    question = " ".join(sys.argv[1:]) or "What are the principles for addition under Section 68?"

    async def _main():
        client = LegalChatClient()
        callbacks = StreamCallbacks(
            on_rag_sources=lambda sources: print(f"[{len(sources)} sources retrieved]\n"),
            on_delta=lambda text: print(text, end="", flush=True),
            on_done=lambda: print("\n"),
        )
        try:
            answer = await client.send_message([{"role": "user", "content": question}], callbacks=callbacks)
        finally:
            await client.aclose()
        for citation in extract_citations(answer):
            print(f"[{citation.id}] {citation.citation} - {citation.court}")

    asyncio.run(_main())
