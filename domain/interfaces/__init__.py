"""Abstract interfaces for the vaultsearch engine."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterable, Sequence

from domain.entities import (
    CancellationToken,
    Chunk,
    RankedDocument,
    RerankResult,
    RetrieverOptions,
    VaultFile,
)


class VaultFileSystem(ABC):
    """Read-only view of the host's note vault."""

    @abstractmethod
    def list_files(self) -> list[VaultFile]:
        """Return every note file in the vault."""

    @abstractmethod
    def read_file(self, path: str) -> str:
        """Return the text content of a note."""

    @abstractmethod
    def file_exists(self, path: str) -> bool:
        """Return True when the path is still present in the vault."""

    @abstractmethod
    def get_file(self, path: str) -> VaultFile | None:
        """Return file stats for a path, or None when missing."""

    @abstractmethod
    def get_tags(self, path: str) -> list[str]:
        """Return the note's tags, each prefixed with '#'."""

    @abstractmethod
    def get_frontmatter(self, path: str) -> dict[str, Any]:
        """Return the note's frontmatter properties."""


class LinkGraph(ABC):
    """Outgoing link and backlink lookups per note."""

    @abstractmethod
    def get_linked_notes(self, path: str) -> list[str]:
        """Return paths the note links to."""

    @abstractmethod
    def get_backlinked_notes(self, path: str) -> list[str]:
        """Return paths of notes linking to the note."""


class ChunkSplitter(ABC):
    """Splits a note into chunk contents ready for embedding."""

    @abstractmethod
    def split(self, title: str, text: str, metadata: dict[str, Any] | None = None) -> list[str]:
        """Return chunk contents, each prefixed with a contextual header."""


class Embedder(ABC):
    """Turns text (documents or queries) into vector embeddings."""

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Return the stable identifier for this embedding model."""

    @abstractmethod
    def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed a batch of texts into dense vectors."""

    @abstractmethod
    def embed_query(self, text: str) -> list[float]:
        """Embed a user query for retrieval."""


class QueryRewriter(ABC):
    """Rewrites a query into a passage better suited for semantic search."""

    @abstractmethod
    def rewrite(self, query: str) -> str:
        """Return the rewritten query text."""


class Reranker(ABC):
    """Second-pass relevance scoring over a candidate shortlist."""

    @abstractmethod
    def rerank(self, query: str, texts: Sequence[str]) -> list[RerankResult]:
        """Return relevance scores keyed by the index of each input text."""


class IndexBackend(ABC):
    """Storage that the indexing pipeline writes into."""

    requires_embeddings: bool = True

    @abstractmethod
    async def initialize(self) -> None:
        """Load or create the underlying index."""

    @abstractmethod
    async def clear_index(self) -> None:
        """Drop every indexed chunk."""

    @abstractmethod
    async def upsert_file(self, path: str, chunks: Sequence[Chunk]) -> int:
        """Replace the indexed chunks of a file and return how many were written."""

    @abstractmethod
    async def remove_by_path(self, path: str) -> None:
        """Remove all chunks belonging to a file."""

    @abstractmethod
    async def garbage_collect(self, live_paths: Iterable[str]) -> int:
        """Remove chunks of files no longer present and return the count."""

    @abstractmethod
    async def get_indexed_files(self) -> list[str]:
        """Return sorted unique indexed paths."""

    @abstractmethod
    async def get_latest_file_mtime(self) -> int:
        """Return the newest mtime among indexed chunks, or 0."""

    @abstractmethod
    async def has_index(self, path: str) -> bool:
        """Return whether any chunk of the file is indexed."""

    @abstractmethod
    async def check_and_handle_embedding_model_change(self, model_name: str) -> bool:
        """Reset the index when stored vectors come from another model."""

    @abstractmethod
    async def save(self) -> None:
        """Persist pending changes."""

    @abstractmethod
    def mark_file_missing_embeddings(self, path: str) -> None:
        """Remember a file whose embeddings could not be produced."""

    @abstractmethod
    def get_files_missing_embeddings(self) -> set[str]:
        """Return files that must be re-embedded on the next run."""

    @abstractmethod
    def clear_files_missing_embeddings(self) -> None:
        """Forget the missing-embeddings list."""


class NoteSimilaritySource(ABC):
    """Scores how similar other notes are to a given note."""

    @abstractmethod
    async def similarity_scores(self, path: str) -> dict[str, float]:
        """Return the best similarity per other note path, or an empty dict."""


class Retriever(ABC):
    """Answers a free-text query with ranked documents."""

    @abstractmethod
    async def retrieve(
        self,
        query: str,
        options: RetrieverOptions,
        cancellation: CancellationToken | None = None,
    ) -> list[RankedDocument]:
        """Return ranked documents, or an empty list on failure."""


__all__ = [
    "VaultFileSystem",
    "LinkGraph",
    "ChunkSplitter",
    "Embedder",
    "QueryRewriter",
    "Reranker",
    "IndexBackend",
    "NoteSimilaritySource",
    "Retriever",
]
