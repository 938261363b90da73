"""
Error types for the Litigation RAG pipeline.

Retrieval failures never use these (grounding degrades to "no sources").
Completion and transport failures do, so callers can tell a rate limit
from an exhausted quota from a generic provider failure.
"""

from typing import Optional


class LitigationRAGError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(LitigationRAGError):
    """A required credential or endpoint is not configured."""


class UpstreamError(LitigationRAGError):
    """A hosted provider answered with a non-success status."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class RateLimitError(UpstreamError):
    """Provider reported HTTP 429."""

    status_code = 429


class QuotaExceededError(UpstreamError):
    """Provider reported HTTP 402 (credits or billing exhausted)."""

    status_code = 402


class ChatRequestError(UpstreamError):
    """The chat endpoint rejected a request for any other reason."""


def error_for_status(status_code: int, provider_text: str = "") -> UpstreamError:
    """Map a provider status code onto the matching error type."""
    if status_code == 429:
        return RateLimitError("Rate limit exceeded. Please try again later.")
    if status_code == 402:
        return QuotaExceededError("Usage limit reached. Please add credits to continue.")
    detail = f"AI gateway error: {status_code}"
    if provider_text:
        detail = f"{detail}: {provider_text}"
    return UpstreamError(detail, status_code=status_code)
