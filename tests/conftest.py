"""
Shared fixtures and test utilities for Litigation RAG tests.

Provides fake embedders, fragment stores, canned SSE payloads and
httpx mock transports so that all tests run without API keys, databases,
or external network access.
"""

import sys
import json
from pathlib import Path

import httpx
import pytest

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


# ---------------------------------------------------------------------------
# Sample judgment paragraphs
# ---------------------------------------------------------------------------
LOVELY_EXPORTS = "CIT vs. Lovely Exports (P) Ltd [2008] 216 CTR 195 (SC)"
ROHINI_BUILDERS = "DCIT vs. Rohini Builders [2002] 256 ITR 360 (Guj)"
NRA_IRON = "PCIT vs. NRA Iron & Steel (P) Ltd [2019] 412 ITR 161 (SC)"

SECTION_68_PARAGRAPH = (
    "If the share application money is received by the assessee company from "
    "alleged bogus shareholders, whose names are given to the Assessing Officer, "
    "then the Department is free to proceed to reopen their individual assessments "
    "in accordance with law, but it cannot be regarded as undisclosed income of the "
    "assessee company."
)


def make_fragment(
    similarity,
    source_id="src-1",
    fragment_id=None,
    paragraph_number=1,
    content=SECTION_68_PARAGRAPH,
    citation=LOVELY_EXPORTS,
    court="Supreme Court",
):
    """Build a RankedFragment with sensible defaults."""
    from execution.litigation_rag.fragment_store import RankedFragment
    return RankedFragment(
        id=fragment_id or f"{source_id}-p{paragraph_number}",
        source_id=source_id,
        paragraph_number=paragraph_number,
        content=content,
        similarity=similarity,
        citation=citation,
        court=court,
    )


def run(coro):
    """Drive a coroutine to completion from a synchronous test."""
    import asyncio
    return asyncio.run(coro)


async def collect(aiterable):
    return [item async for item in aiterable]


async def aiter_chunks(chunks):
    for chunk in chunks:
        yield chunk


# ---------------------------------------------------------------------------
# Fake embedder and fragment store
# ---------------------------------------------------------------------------

class FakeEmbeddingService:
    """Returns a fixed vector and records every query."""

    def __init__(self, vector=None):
        self.vector = vector or [0.1, 0.2, 0.3]
        self.queries = []
        self.closed = False

    async def embed_query(self, query):
        self.queries.append(query)
        return list(self.vector)

    async def aclose(self):
        self.closed = True

    @property
    def model(self):
        return "fake-embedding"

    @property
    def dimensions(self):
        return len(self.vector)


class FailingEmbeddingService:
    """Embedder whose provider is unreachable."""

    def __init__(self, error=None):
        self.error = error or RuntimeError("embedding provider unavailable")

    async def embed_query(self, query):
        raise self.error

    @property
    def model(self):
        return "fake-embedding"


class FakeFragmentStore:
    """Returns canned fragments as-is, without filtering, and records calls."""

    def __init__(self, fragments=None):
        self.fragments = list(fragments or [])
        self.calls = []

    def match(self, query_embedding, threshold, count):
        self.calls.append({"embedding": query_embedding, "threshold": threshold, "count": count})
        return list(self.fragments)


class FakeCompletionService:
    """Completion source that replays canned SSE chunks."""

    def __init__(self, chunks=None, error=None):
        self.chunks = list(chunks or [])
        self.error = error
        self.requests = []
        self.closed = False

    async def stream(self, messages):
        self.requests.append(list(messages))
        if self.error is not None:
            raise self.error
        return aiter_chunks(self.chunks)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_embeddings():
    return FakeEmbeddingService()


@pytest.fixture
def ranked_fragments():
    """Three fragments from two judgments, already best-first."""
    return [
        make_fragment(0.92, source_id="src-lovely", paragraph_number=4),
        make_fragment(0.85, source_id="src-rohini", paragraph_number=12,
                      citation=ROHINI_BUILDERS, court="High Court",
                      content="The assessee had discharged the initial onus."),
        make_fragment(0.80, source_id="src-lovely", paragraph_number=7,
                      content="Genuineness of the shareholders was not doubted."),
    ]


@pytest.fixture
def fake_store(ranked_fragments):
    return FakeFragmentStore(ranked_fragments)


@pytest.fixture
def retriever(fake_embeddings, fake_store):
    from execution.litigation_rag.retriever import SemanticRetriever
    return SemanticRetriever(fake_embeddings, fake_store)


# ---------------------------------------------------------------------------
# Canned SSE payloads
# ---------------------------------------------------------------------------

def delta_frame(text):
    payload = {"choices": [{"index": 0, "delta": {"content": text}}]}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


DONE_FRAME = b"data: [DONE]\n\n"


@pytest.fixture
def upstream_chunks():
    """A gateway body: three deltas, then the sentinel."""
    return [
        delta_frame("Under Section 68, "),
        delta_frame("the onus lies on the assessee [1]."),
        delta_frame(" See ¶ 4 – “genuineness of the shareholders”."),
        DONE_FRAME,
    ]


# ---------------------------------------------------------------------------
# httpx mock transports
# ---------------------------------------------------------------------------

def sse_response(chunks, status_code=200):
    """httpx response whose body streams the given byte chunks."""

    class _Body(httpx.AsyncByteStream):
        async def __aiter__(self):
            for chunk in chunks:
                yield chunk

        async def aclose(self):
            pass

    return httpx.Response(
        status_code,
        headers={"Content-Type": "text/event-stream"},
        stream=_Body(),
    )


def mock_http_client(handler):
    """AsyncClient routed through an in-process handler."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
