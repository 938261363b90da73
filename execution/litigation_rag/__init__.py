"""
Litigation RAG - grounded legal research chat

This module provides the retrieval-and-citation pipeline behind the
research assistant of a litigation case-management app:
- Semantic retrieval of judgment paragraphs (pgvector)
- Grounding prompt assembly with numbered sources
- SSE streaming with a rag_sources side channel ahead of model tokens
- Incremental client-side stream decoding
- Citation extraction from free-form answers
"""

from .retriever import SemanticRetriever
from .prompts import PromptAssembler
from .pipeline import RAGChatPipeline
from .streaming import StreamDecoder, multiplex
from .citation import CitationExtractor, extract_citations
from .client import LegalChatClient

__all__ = [
    "SemanticRetriever",
    "PromptAssembler",
    "RAGChatPipeline",
    "StreamDecoder",
    "multiplex",
    "CitationExtractor",
    "extract_citations",
    "LegalChatClient",
]

__version__ = "0.1.0"
