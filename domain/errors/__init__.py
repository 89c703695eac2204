"""Error taxonomy shared by indexing and retrieval."""
from __future__ import annotations

from typing import Any


class VaultSearchError(Exception):
    """Base class for all engine errors."""


class StoreInitError(VaultSearchError):
    """No embedding capability is available and no stored index exists."""


class EmbeddingError(VaultSearchError):
    """The embedding provider returned an empty or malformed vector."""


class UpsertError(VaultSearchError):
    """Insert failed after the previous version had been removed."""


class RateLimitError(VaultSearchError):
    """The embedding or remote provider reported a rate limit."""


class RemoteApiError(VaultSearchError):
    """Non-2xx response from the remote search service."""

    def __init__(self, status: int, body: Any, message: str | None = None) -> None:
        self.status = status
        self.body = body
        super().__init__(message or f"Remote API error {status}: {body}")


class RemoteTimeoutError(VaultSearchError):
    """A single remote request exceeded its timeout."""


class RemoteNetworkError(VaultSearchError):
    """The remote service could not be reached."""


class RetrievalCancelled(VaultSearchError):
    """The caller cancelled an in-flight retrieval."""


def is_rate_limit_error(error: BaseException) -> bool:
    if isinstance(error, RateLimitError):
        return True
    if isinstance(error, RemoteApiError) and error.status == 429:
        return True
    return "rate limit" in str(error).lower()


__all__ = [
    "VaultSearchError",
    "StoreInitError",
    "EmbeddingError",
    "UpsertError",
    "RateLimitError",
    "RemoteApiError",
    "RemoteTimeoutError",
    "RemoteNetworkError",
    "RetrievalCancelled",
    "is_rate_limit_error",
]
