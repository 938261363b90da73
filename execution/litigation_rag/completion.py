"""
Streaming chat-completion client for the hosted LLM gateway.

The gateway speaks the OpenAI chat-completions protocol. Its response body
is returned as raw bytes (``data: {...}`` lines ending in ``data: [DONE]``)
so the API can forward it unchanged. Status errors are raised before any
byte is streamed.
"""

import os
import logging
from typing import AsyncIterator, Optional, Sequence
from dataclasses import dataclass

import httpx

from .api_models import ConversationMessage
from .errors import ConfigurationError, UpstreamError, error_for_status

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY_URL = "https://ai.gateway.lovable.dev/v1/chat/completions"


@dataclass
class CompletionConfig:
    """Configuration for the completion gateway."""
    url: str = DEFAULT_GATEWAY_URL
    model: str = "google/gemini-2.5-flash"
    api_key: Optional[str] = None
    timeout: float = 120.0

    @classmethod
    def from_env(cls) -> "CompletionConfig":
        return cls(
            url=os.getenv("LLM_GATEWAY_URL", DEFAULT_GATEWAY_URL),
            model=os.getenv("LLM_MODEL", "google/gemini-2.5-flash"),
            api_key=os.getenv("LLM_GATEWAY_API_KEY"),
        )


class CompletionService:
    """
    Opens streaming completions against the gateway.

    Usage:
        service = CompletionService(CompletionConfig.from_env())
        body = await service.stream(messages)
        async for chunk in body:
            ...
    """

    def __init__(
        self,
        config: Optional[CompletionConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or CompletionConfig.from_env()
        self._http = http_client

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=httpx.Timeout(self.config.timeout, connect=10.0))
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def stream(self, messages: Sequence[ConversationMessage]) -> AsyncIterator[bytes]:
        """
        Start a streaming completion.

        Args:
            messages: Full prompt, system message first

        Returns:
            Async iterator over the raw response body

        Raises:
            ConfigurationError: no gateway API key
            RateLimitError / QuotaExceededError / UpstreamError: non-2xx status
            UpstreamError: the request could not be sent
        """
        if not self.config.api_key:
            raise ConfigurationError("LLM_GATEWAY_API_KEY is not configured")

        client = self._get_http_client()
        request = client.build_request(
            "POST",
            self.config.url,
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": self.config.model,
                "messages": [m.model_dump() for m in messages],
                "stream": True,
            },
        )

        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error(f"AI gateway request failed: {type(e).__name__}: {e}")
            raise UpstreamError(f"AI gateway unreachable: {e}", status_code=502) from e

        if response.status_code != 200:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            logger.error(f"AI gateway error: {response.status_code} {body[:500]}")
            raise error_for_status(response.status_code, body)

        return self._iter_body(response)

    @staticmethod
    async def _iter_body(response: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        finally:
            await response.aclose()
