"""
Semantic Retriever for Litigation RAG

Pipeline:
1. Embed the query (hosted embedding model)
2. Threshold + top-K cosine search over judgment fragments
3. Sort by similarity, best first

Grounding is best-effort: ``retrieve`` returns an empty list when the
embedder or the store is unavailable so the chat turn can still proceed.
``match`` and ``search`` raise instead, for callers that show the failure.
"""

import os
import time
import asyncio
import logging
from typing import Optional
from dataclasses import dataclass

from .api_models import RAGSource, SearchHit
from .fragment_store import FragmentMatcher, RankedFragment

logger = logging.getLogger(__name__)

ELLIPSIS = "..."


@dataclass
class RetrievalConfig:
    """Configuration for semantic retrieval."""
    match_threshold: float = 0.75
    match_count: int = 10
    # Hard cap on fragments fetched per query
    max_match_count: int = 100
    # Characters of fragment content shown to the user per source
    display_chars: int = 500

    @classmethod
    def from_env(cls) -> "RetrievalConfig":
        return cls(
            match_threshold=float(os.getenv("RAG_MATCH_THRESHOLD", "0.75")),
            match_count=int(os.getenv("RAG_MATCH_COUNT", "10")),
        )


def clamp_threshold(threshold: float) -> float:
    return min(max(0.0, float(threshold)), 1.0)


def clamp_count(count: int, maximum: int = 100) -> int:
    return min(max(1, int(count)), maximum)


def truncate_content(text: str, budget: int, mark_at_budget: bool = True) -> str:
    """Cut text to ``budget`` characters and mark the cut with an ellipsis.

    Display content that reaches the budget is marked; shorter content is
    returned unchanged. With ``mark_at_budget=False`` only content that is
    actually cut gets the ellipsis.
    """
    if len(text) > budget or (mark_at_budget and len(text) == budget):
        return text[:budget] + ELLIPSIS
    return text


def similarity_percent(similarity: float) -> int:
    """Cosine similarity in [0, 1] as a rounded integer percentage."""
    return min(100, max(0, int(similarity * 100 + 0.5)))


def sort_by_similarity(fragments: list[RankedFragment]) -> list[RankedFragment]:
    # Stable: equal scores keep store order
    return sorted(fragments, key=lambda f: f.similarity, reverse=True)


def group_by_source(fragments: list[RankedFragment]) -> list[RankedFragment]:
    """
    Collapse to the best-scoring fragment per source document.

    Ties keep the fragment seen first. Output is re-sorted by similarity.
    """
    best: dict[str, RankedFragment] = {}
    for fragment in fragments:
        existing = best.get(fragment.source_id)
        if existing is None or fragment.similarity > existing.similarity:
            best[fragment.source_id] = fragment
    return sort_by_similarity(list(best.values()))


def to_rag_sources(
    fragments: list[RankedFragment],
    display_chars: int = 500,
) -> list[RAGSource]:
    """
    Number fragments 1..n in the given (rank) order for display.

    The numbering must match the ``[n]`` headers in the grounding prompt,
    so both are built from the same list.
    """
    return [
        RAGSource(
            id=i,
            citation=f.citation,
            court=f.court,
            content=truncate_content(f.content, display_chars),
            similarity=similarity_percent(f.similarity),
            source_id=f.source_id,
        )
        for i, f in enumerate(fragments, start=1)
    ]


def to_search_hits(
    fragments: list[RankedFragment],
    display_chars: int = 500,
) -> list[SearchHit]:
    """Like to_rag_sources, keeping the paragraph number."""
    return [
        SearchHit(
            id=i,
            citation=f.citation,
            court=f.court,
            content=truncate_content(f.content, display_chars),
            similarity=similarity_percent(f.similarity),
            source_id=f.source_id,
            paragraph_num=f.paragraph_number,
        )
        for i, f in enumerate(fragments, start=1)
    ]


class SemanticRetriever:
    """
    Embedding + vector-search retriever over judgment fragments.

    Collaborators are injected so tests can substitute fakes:
    - embedding_service: anything with ``async embed_query(text)``
    - fragment_store: anything with ``match(embedding, threshold, count)``
    """

    def __init__(
        self,
        embedding_service,
        fragment_store: FragmentMatcher,
        config: Optional[RetrievalConfig] = None,
        metrics=None,
    ):
        self.embeddings = embedding_service
        self.store = fragment_store
        self.config = config or RetrievalConfig()
        self._metrics = metrics

    def _resolve(self, threshold: Optional[float], count: Optional[int]) -> tuple[float, int]:
        threshold = self.config.match_threshold if threshold is None else threshold
        count = self.config.match_count if count is None else count
        return clamp_threshold(threshold), clamp_count(count, self.config.max_match_count)

    async def match(
        self,
        query: str,
        threshold: Optional[float] = None,
        match_count: Optional[int] = None,
    ) -> list[RankedFragment]:
        """
        Ranked fragments for a query. Errors propagate.

        Args:
            query: Non-empty search text
            threshold: Minimum similarity (defaults to config, clamped to [0, 1])
            match_count: Maximum fragments (defaults to config, clamped to [1, 100])

        Returns:
            Fragments with similarity >= threshold, descending similarity
        """
        if not query or not query.strip():
            raise ValueError("Query is required")

        threshold, match_count = self._resolve(threshold, match_count)
        embedding = await self.embeddings.embed_query(query)
        fragments = await asyncio.to_thread(
            self.store.match, embedding, threshold, match_count,
        )
        # The store filters already; enforce the threshold regardless of backend
        fragments = [f for f in fragments if f.similarity >= threshold]
        return sort_by_similarity(fragments)[:match_count]

    async def retrieve(
        self,
        query: str,
        threshold: Optional[float] = None,
        match_count: Optional[int] = None,
    ) -> list[RankedFragment]:
        """Ranked fragments for chat grounding, or [] if retrieval fails."""
        start = time.time()
        try:
            fragments = await self.match(query, threshold, match_count)
        except Exception as e:
            logger.warning(f"Retrieval unavailable, continuing without sources: {type(e).__name__}: {e}")
            if self._metrics is not None:
                self._metrics.record_retrieval(0, (time.time() - start) * 1000, degraded=True)
            return []

        elapsed = (time.time() - start) * 1000
        logger.info(f"Retrieved {len(fragments)} fragments in {elapsed:.0f}ms")
        if self._metrics is not None:
            self._metrics.record_retrieval(len(fragments), elapsed)
        return fragments

    async def retrieve_grouped(
        self,
        query: str,
        threshold: Optional[float] = None,
        match_count: Optional[int] = None,
    ) -> list[RankedFragment]:
        """One best fragment per source document, for document-level listings."""
        return group_by_source(await self.retrieve(query, threshold, match_count))

    async def search(
        self,
        query: str,
        threshold: Optional[float] = None,
        limit: Optional[int] = None,
        grouped: bool = True,
    ) -> list[SearchHit]:
        """Numbered results for a standalone knowledge search. Errors propagate."""
        fragments = await self.match(query, threshold, limit)
        if grouped:
            fragments = group_by_source(fragments)
        return to_search_hits(fragments, self.config.display_chars)


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    from .embeddings import get_embedding_service
    from .fragment_store import FragmentStore

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    store = FragmentStore()
    retriever = SemanticRetriever(get_embedding_service(), store, RetrievalConfig.from_env())

    query = " ".join(sys.argv[1:]) or "addition under section 68 for unexplained cash credits"
    print(f"\nSearching for: {query}")
    print("-" * 50)

    fragments = asyncio.run(retriever.retrieve(query))
    for source in to_rag_sources(fragments):
        print(f"\n[{source.id}] {source.citation} ({source.court}) - {source.similarity}%")
        print(f"   {source.content[:200]}")
    store.close()
