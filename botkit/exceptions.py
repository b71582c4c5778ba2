"""
Exception hierarchy for the BotKit RAG core.

Component errors are raised here and converted into structured results at the
orchestration boundary (RAGEngine, MigrationManager). Expected rate-limit
denials are modelled as result types in rate_limiter; RateLimitExceeded exists
only for callers that explicitly ask for exception semantics.
"""

from typing import Any, Dict, List, Optional


class BotKitError(Exception):
    """Base class for every error raised by the core."""


class ConfigurationError(BotKitError, ValueError):
    """Invalid configuration detected at construction or call time."""


class IngestionError(BotKitError):
    """A document could not be loaded or processed."""

    def __init__(self, message: str, document_id: Optional[int] = None):
        super().__init__(message)
        self.document_id = document_id


class UnsupportedFormat(IngestionError):
    """The source type or file format cannot be extracted."""


class FetchError(IngestionError):
    """A remote source could not be fetched."""

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class LLMRequestError(BotKitError):
    """Every provider in the fallback chain failed to complete a request."""

    def __init__(self, message: str, attempts: Optional[List[Dict[str, str]]] = None):
        super().__init__(message)
        self.attempts = attempts or []


class EmbeddingProviderError(BotKitError):
    """Embedding generation failed after retries and fallback."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message


class VectorStoreError(BotKitError):
    """The vector backend rejected or could not serve a request."""


class RateLimitExceeded(BotKitError):
    """Raised by RateLimiter.enforce when a request is denied."""

    def __init__(self, retry_after: float, reset_time: str, reason: str = "rate_limit"):
        super().__init__(f"Rate limit exceeded ({reason}); retry after {retry_after:.0f}s")
        self.retry_after = retry_after
        self.reset_time = reset_time
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "rate_limit_exceeded",
            "retry_after_seconds": int(max(1, round(self.retry_after))),
            "reset_time": self.reset_time,
        }


class MigrationError(BotKitError):
    """A single item failed to migrate; collected rather than raised mid-run."""

    def __init__(self, message: str, item_id: Optional[str] = None):
        super().__init__(message)
        self.item_id = item_id

    def to_dict(self) -> Dict[str, Any]:
        return {"item_id": self.item_id, "message": str(self)}


class StateConflictError(BotKitError):
    """An optimistic state update kept losing to concurrent writers."""
