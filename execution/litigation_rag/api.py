"""
FastAPI Backend for Litigation RAG

Endpoints for the grounded research chat (streamed as Server-Sent Events),
standalone semantic search over indexed judgments, and an embedding proxy.

Run with: uvicorn execution.litigation_rag.api:app --host 0.0.0.0 --port 8000
"""

import os
import logging
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from .api_models import (
    ChatRequest,
    EmbedRequest, EmbedResponse,
    SearchRequest, SearchResponse,
    HealthResponse,
)
from .errors import ConfigurationError, UpstreamError
from .metrics import MetricsCollector
from .retriever import group_by_source, to_search_hits

# Load environment variables
load_dotenv()
logger = logging.getLogger(__name__)

VERSION = "0.1.0"


# =============================================================================
# Service Container - builds services lazily from the environment
# =============================================================================

class ServiceContainer:
    """Holds the pipeline collaborators for one application instance.

    Anything passed in is used as-is, which is how tests inject fakes.
    Everything else is built on first use from environment variables.
    """

    def __init__(
        self,
        embeddings=None,
        store=None,
        retriever=None,
        completion=None,
        pipeline=None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.metrics = metrics or MetricsCollector()
        self._embeddings = embeddings
        self._store = store
        self._retriever = retriever
        self._completion = completion
        self._pipeline = pipeline

    def get_embeddings(self):
        if self._embeddings is None:
            from .embeddings import get_embedding_service
            self._embeddings = get_embedding_service()
        return self._embeddings

    def get_store(self):
        if self._store is None:
            from .fragment_store import FragmentStore
            self._store = FragmentStore()
        return self._store

    def get_retriever(self):
        if self._retriever is None:
            from .retriever import RetrievalConfig, SemanticRetriever
            self._retriever = SemanticRetriever(
                self.get_embeddings(),
                self.get_store(),
                RetrievalConfig.from_env(),
                metrics=self.metrics,
            )
        return self._retriever

    def get_completion(self):
        if self._completion is None:
            from .completion import CompletionConfig, CompletionService
            self._completion = CompletionService(CompletionConfig.from_env())
        return self._completion

    def get_pipeline(self):
        if self._pipeline is None:
            from .pipeline import RAGChatPipeline
            self._pipeline = RAGChatPipeline(
                self.get_retriever(),
                self.get_completion(),
                metrics=self.metrics,
            )
        return self._pipeline

    async def aclose(self) -> None:
        for service in (self._completion, self._embeddings):
            if service is not None and hasattr(service, "aclose"):
                await service.aclose()
        if self._store is not None and hasattr(self._store, "close"):
            self._store.close()


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def _error_response(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status_code)


# =============================================================================
# Endpoints
# =============================================================================

router = APIRouter(prefix="/api/v1")


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(status="ok", version=VERSION)


@router.get("/metrics")
async def get_metrics(container: ServiceContainer = Depends(get_container)):
    return container.metrics.get_metrics_dict()


@router.post("/chat")
async def chat(
    request: ChatRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Grounded research chat, streamed as SSE.

    The body is the gateway's completion stream, preceded by one
    ``{"type":"rag_sources",...}`` event when sources were retrieved.
    Gateway 429/402 map to the same status; other failures to 500.
    """
    session = f" (session {request.session_id})" if request.session_id else ""
    logger.info(
        f"Processing chat request with {len(request.messages)} messages in {request.mode} mode{session}"
    )

    try:
        stream = await container.get_pipeline().open_stream(request.messages, request.mode)
    except UpstreamError as e:
        status = e.status_code if e.status_code in (402, 429) else 500
        return _error_response(status, e.message)
    except ConfigurationError as e:
        logger.error(f"Chat unavailable: {e}")
        return _error_response(500, str(e))
    except Exception as e:
        logger.error(f"Chat error: {type(e).__name__}: {e}")
        return _error_response(500, "Chat request failed")

    return StreamingResponse(
        stream.body,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


@router.post("/search", response_model=SearchResponse)
async def semantic_search(
    request: SearchRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Semantic search: best fragment per judgment plus every matching fragment."""
    retriever = container.get_retriever()
    logger.info(f"Semantic search: {request.query[:50]!r}")

    try:
        fragments = await retriever.match(
            request.query,
            threshold=request.match_threshold,
            match_count=request.match_count,
        )
    except Exception as e:
        logger.error(f"Semantic search error: {type(e).__name__}: {e}")
        return _error_response(500, str(e) or "Semantic search failed", results=[], totalResults=0)

    display = retriever.config.display_chars
    grouped = group_by_source(fragments)
    logger.info(f"Found {len(fragments)} matching fragments from {len(grouped)} judgments")

    return SearchResponse(
        query=request.query,
        results=to_search_hits(grouped, display),
        all_fragments=to_search_hits(fragments, display),
        total_results=len(grouped),
    )


@router.post("/embed", response_model=EmbedResponse)
async def embed_text(
    request: EmbedRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Embedding proxy for the ingestion tooling."""
    embeddings = container.get_embeddings()
    logger.info(f"Generating embedding for text of length: {len(request.text)}")

    try:
        vector = await embeddings.embed_query(request.text)
    except ConfigurationError as e:
        return _error_response(500, str(e))
    except Exception as e:
        logger.error(f"Embed error: {type(e).__name__}: {e}")
        return _error_response(500, "Embedding failed")

    return EmbedResponse(embedding=vector, model=embeddings.model, dimensions=len(vector))


# =============================================================================
# Application factory
# =============================================================================

def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the FastAPI app around a service container."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.container.aclose()

    app = FastAPI(
        title="Litigation RAG API",
        description="Grounded legal research chat with streamed citations",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.container = container or ServiceContainer()

    # Configure CORS: use CORS_ORIGINS env var (comma-separated) or default to localhost
    cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in cors_origins],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()
