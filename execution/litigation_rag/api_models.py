"""
Pydantic models for the Litigation RAG FastAPI backend and its clients.

Field aliases keep the camelCase wire names the browser client expects
(``sourceId``, ``matchThreshold``...) while Python code uses snake_case.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

ResponseMode = Literal["sources-only", "balanced", "creative", "tribunal"]


class ConversationMessage(BaseModel):
    """One turn of chat history."""
    role: Literal["user", "assistant", "system"]
    content: str


class RAGSource(BaseModel):
    """Numbered, display-ready projection of a retrieved fragment.

    ``id`` is the same number the model is told to cite as ``[id]``.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: int
    citation: str = ""
    court: str = "Unknown"
    content: str = ""
    similarity: int = Field(default=0, ge=0, le=100)
    source_id: str = Field(default="", alias="sourceId")

    @field_validator("citation", "court", "content", "source_id", mode="before")
    @classmethod
    def _null_to_default(cls, value, info):
        if value is None:
            return cls.model_fields[info.field_name].default
        return value

    @field_validator("similarity", mode="before")
    @classmethod
    def _coerce_percent(cls, value):
        # Other producers may send null or a fractional percentage
        if value is None:
            return 0
        if isinstance(value, float):
            return min(100, max(0, int(value + 0.5)))
        return value

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class SearchHit(RAGSource):
    """RAGSource returned by the standalone knowledge search."""
    paragraph_num: int = Field(default=0, alias="paragraphNum")


class ChatRequest(BaseModel):
    """Request body for the streaming chat endpoint."""
    model_config = ConfigDict(populate_by_name=True)

    messages: list[ConversationMessage]
    mode: ResponseMode = "balanced"
    session_id: Optional[str] = Field(default=None, alias="sessionId")

    @field_validator("messages")
    @classmethod
    def _history_only(cls, messages: list[ConversationMessage]) -> list[ConversationMessage]:
        # The system message is synthesized per request.
        if any(m.role == "system" for m in messages):
            raise ValueError("system messages are not accepted in chat history")
        return messages


class SearchRequest(BaseModel):
    """Request body for semantic search."""
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(..., min_length=1, max_length=2000)
    match_threshold: float = Field(default=0.75, alias="matchThreshold")
    match_count: int = Field(default=10, alias="matchCount")


class SearchResponse(BaseModel):
    """Response body for semantic search."""
    model_config = ConfigDict(populate_by_name=True)

    query: str
    results: list[SearchHit]
    all_fragments: list[SearchHit] = Field(default_factory=list, alias="allFragments")
    total_results: int = Field(default=0, alias="totalResults")
    attribution: str = "Semantic search powered by hosted embeddings"


class EmbedRequest(BaseModel):
    """Request body for the embedding proxy."""
    text: str = Field(..., min_length=1)


class EmbedResponse(BaseModel):
    embedding: list[float]
    model: str
    dimensions: int


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
