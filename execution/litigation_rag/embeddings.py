"""
Embedding Service for Litigation RAG

Turns a query into a fixed-length vector using a hosted embedding model.
Text longer than the provider limit is truncated before the call, never
rejected. No caching: every call performs a fresh embedding request.

Architecture:
    BaseEmbeddingService      -- truncation, client checks, embed_query
        OpenAIEmbeddingService    -- OpenAI-compatible /v1/embeddings (default)
        VoyageEmbeddingService    -- Voyage AI voyage-law-2
"""

import os
import inspect
import logging
from typing import Optional, Union
from dataclasses import dataclass

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingConfig:
    """Configuration for embedding service."""
    provider: str = "openai"  # "openai" or "voyage"
    model: str = "text-embedding-ada-002"
    # Must match the dimensionality of the stored fragment embeddings
    dimensions: int = 1536
    max_chars: int = 8000


class BaseEmbeddingService:
    """
    Base class for API-based embedding services.

    Subclasses implement:
    - _init_client(): build the provider SDK client (leave None if unconfigured)
    - _embed(text): one provider round-trip for an already-truncated text

    And set these class attributes:
    - _provider_name: Human-readable provider name for error messages
    - _env_var_name: Environment variable name for the API key
    """

    _provider_name: str = "Base"
    _env_var_name: str = ""

    def __init__(self, config: Optional[EmbeddingConfig] = None, client=None):
        """
        Initialize embedding service.

        Args:
            config: Optional configuration. Uses defaults if not provided.
            client: Optional pre-built SDK client (skips environment lookup).
        """
        self.config = config or EmbeddingConfig()
        self._client = client
        if self._client is None:
            self._init_client()

    def _init_client(self):
        raise NotImplementedError("Subclasses must implement _init_client()")

    async def _embed(self, text: str) -> list[float]:
        raise NotImplementedError("Subclasses must implement _embed()")

    def truncate(self, text: str) -> str:
        """Clip text to the provider character budget."""
        if len(text) > self.config.max_chars:
            logger.debug(f"Truncating embedding input from {len(text)} to {self.config.max_chars} chars")
            return text[:self.config.max_chars]
        return text

    async def embed_query(self, query: str) -> list[float]:
        """
        Generate embedding for a search query.

        Args:
            query: Search query string

        Returns:
            Embedding vector

        Raises:
            ConfigurationError: if the provider API key is not set
        """
        if not self._client:
            raise ConfigurationError(
                f"{self._provider_name} client not initialized. "
                f"Check {self._env_var_name}."
            )

        try:
            embedding = await self._embed(self.truncate(query))
        except Exception as e:
            logger.error(f"{self._provider_name} embedding failed: {e}")
            raise

        if len(embedding) != self.config.dimensions:
            logger.warning(
                f"{self._provider_name} returned {len(embedding)} dimensions, "
                f"expected {self.config.dimensions}"
            )
        return embedding

    async def aclose(self) -> None:
        """Release the provider client's HTTP connections."""
        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result

    @property
    def model(self) -> str:
        return self.config.model

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions."""
        return self.config.dimensions


class OpenAIEmbeddingService(BaseEmbeddingService):
    """
    Embeddings from an OpenAI-compatible endpoint (text-embedding-ada-002).

    OPENAI_BASE_URL may point at a gateway exposing the same API.
    """

    _provider_name = "OpenAI"
    _env_var_name = "OPENAI_API_KEY"

    def _init_client(self):
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            logger.warning("OPENAI_API_KEY not found. Embeddings will fail.")
            return

        from openai import AsyncOpenAI
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=os.getenv("OPENAI_BASE_URL") or None,
            timeout=30.0,
        )
        logger.info(f"OpenAI embedding client initialized with model {self.config.model}")

    async def _embed(self, text: str) -> list[float]:
        response = await self._client.embeddings.create(
            model=self.config.model,
            input=text,
        )
        return list(response.data[0].embedding)


class VoyageEmbeddingService(BaseEmbeddingService):
    """
    Embedding service using Voyage AI's voyage-law-2 model.

    voyage-law-2 is tuned for legal text and returns 1024-dimensional
    vectors, so the fragment store must have been indexed with it.
    """

    _provider_name = "Voyage AI"
    _env_var_name = "VOYAGE_API_KEY"

    def _init_client(self):
        api_key = os.getenv("VOYAGE_API_KEY")
        if not api_key:
            logger.warning(
                "VOYAGE_API_KEY not found. Embeddings will fail. "
                "Get your API key at https://dash.voyageai.com/"
            )
            return

        import voyageai
        self._client = voyageai.AsyncClient(api_key=api_key)
        logger.info(f"Voyage AI client initialized with model {self.config.model}")

    async def _embed(self, text: str) -> list[float]:
        response = await self._client.embed(
            texts=[text],
            model=self.config.model,
            input_type="query",
        )
        return list(response.embeddings[0])


def get_embedding_service(
    provider: Optional[str] = None,
    model: Optional[str] = None,
) -> Union[OpenAIEmbeddingService, VoyageEmbeddingService]:
    """
    Factory function to get appropriate embedding service.

    Args:
        provider: "openai" (default) or "voyage". Falls back to EMBEDDING_PROVIDER.
        model: Optional model override. Falls back to EMBEDDING_MODEL.

    Returns:
        Configured embedding service
    """
    prov = (provider or os.getenv("EMBEDDING_PROVIDER") or "openai").lower()
    model = model or os.getenv("EMBEDDING_MODEL")

    if prov == "voyage":
        return VoyageEmbeddingService(EmbeddingConfig(
            provider="voyage",
            model=model or "voyage-law-2",
            dimensions=1024,
        ))

    return OpenAIEmbeddingService(EmbeddingConfig(
        provider="openai",
        model=model or "text-embedding-ada-002",
        dimensions=1536,
    ))
