"""Domain entities for the vaultsearch engine."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from domain.errors import RetrievalCancelled


@dataclass(slots=True)
class VaultFile:
    """A note file as seen by the host vault."""

    path: str
    mtime: int = 0
    ctime: int = 0
    size: int = 0

    @property
    def basename(self) -> str:
        name = self.path.rsplit("/", 1)[-1]
        return name.rsplit(".", 1)[0] if "." in name else name

    @property
    def extension(self) -> str:
        name = self.path.rsplit("/", 1)[-1]
        return name.rsplit(".", 1)[1].lower() if "." in name else ""


@dataclass(slots=True)
class Chunk:
    """The atomic indexed unit: a slice of a note plus its embedding."""

    id: str
    path: str
    title: str
    content: str
    embedding: list[float] = field(default_factory=list)
    embedding_model: str = ""
    tags: list[str] = field(default_factory=list)
    extension: str = "md"
    metadata: dict[str, Any] = field(default_factory=dict)
    ctime: int = 0
    mtime: int = 0
    created_at: int = 0
    nchars: int = 0

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "path": self.path,
            "content": self.content,
            "embedding": list(self.embedding),
            "embeddingModel": self.embedding_model,
            "created_at": self.created_at,
            "ctime": self.ctime,
            "mtime": self.mtime,
            "tags": list(self.tags),
            "extension": self.extension,
            "nchars": self.nchars,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Chunk":
        return cls(
            id=str(record["id"]),
            path=str(record.get("path", "")),
            title=str(record.get("title", "")),
            content=str(record.get("content", "")),
            embedding=[float(value) for value in record.get("embedding") or []],
            embedding_model=str(record.get("embeddingModel", "")),
            tags=list(record.get("tags") or []),
            extension=str(record.get("extension", "")),
            metadata=dict(record.get("metadata") or {}),
            ctime=int(record.get("ctime") or 0),
            mtime=int(record.get("mtime") or 0),
            created_at=int(record.get("created_at") or 0),
            nchars=int(record.get("nchars") or 0),
        )


@dataclass(slots=True)
class PartitionManifest:
    """Metadata file describing how chunks are spread across partitions."""

    num_partitions: int
    vector_length: int
    schema: dict[str, str]
    last_modified: int = 0
    document_partitions: dict[str, dict[str, int]] = field(default_factory=dict)

    def to_record(self) -> dict[str, Any]:
        return {
            "numPartitions": self.num_partitions,
            "vectorLength": self.vector_length,
            "schema": dict(self.schema),
            "lastModified": self.last_modified,
            "documentPartitions": {path: dict(ids) for path, ids in self.document_partitions.items()},
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "PartitionManifest":
        return cls(
            num_partitions=int(record["numPartitions"]),
            vector_length=int(record["vectorLength"]),
            schema=dict(record.get("schema") or {}),
            last_modified=int(record.get("lastModified") or 0),
            document_partitions=dict(record.get("documentPartitions") or {}),
        )


@dataclass(slots=True)
class SearchHit:
    """A single store hit with the component scores that produced it."""

    chunk: Chunk
    score: float
    vector_score: float = 0.0
    lexical_score: float = 0.0


@dataclass(slots=True)
class TimeRange:
    """Inclusive window in epoch milliseconds."""

    start_time: int
    end_time: int


@dataclass(slots=True, frozen=True)
class RetrieverOptions:
    """Per-query options supplied by the caller."""

    max_k: int = 10
    min_similarity_score: float = 0.1
    salient_terms: tuple[str, ...] = ()
    time_range: TimeRange | None = None
    text_weight: float | None = None
    return_all: bool = False
    use_reranker_threshold: float | None = None
    skip_rewrite: bool = False


@dataclass(slots=True)
class RankedDocument:
    """A retrieval result handed back to the caller."""

    path: str
    content: str
    score: float
    title: str = ""
    rerank_score: float | None = None
    original_score: float | None = None
    include_in_context: bool = True
    source: str = "hybrid"
    chunk_id: str | None = None
    mtime: int = 0
    ctime: int = 0
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def has_valid_score(self) -> bool:
        return isinstance(self.score, (int, float)) and not math.isnan(self.score)


@dataclass(slots=True)
class RerankResult:
    """Relevance score returned by a reranker for one input text."""

    index: int
    relevance_score: float


@dataclass(slots=True)
class RelatedNote:
    """A note related to a source note by similarity and links."""

    path: str
    title: str
    score: float
    similarity_score: float
    has_outgoing_links: bool = False
    has_backlinks: bool = False
    category: int = 1


@dataclass(slots=True)
class IndexingError:
    path: str
    reason: str


@dataclass(slots=True)
class IndexingState:
    """Transient state of one indexing run."""

    is_paused: bool = False
    is_cancelled: bool = False
    indexed_count: int = 0
    total_files_to_index: int = 0
    errors: list[IndexingError] = field(default_factory=list)
    processed_files: set[str] = field(default_factory=set)


@dataclass(slots=True)
class IndexingReport:
    """Outcome of an indexing run."""

    status: str
    indexed: int
    total: int
    errors: list[IndexingError] = field(default_factory=list)
    rate_limited: bool = False


class CancellationToken:
    """Cooperative cancellation flag checked at suspension points."""

    __slots__ = ("_cancelled",)

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise RetrievalCancelled("Retrieval was cancelled")


__all__ = [
    "VaultFile",
    "Chunk",
    "PartitionManifest",
    "SearchHit",
    "TimeRange",
    "RetrieverOptions",
    "RankedDocument",
    "RerankResult",
    "RelatedNote",
    "IndexingError",
    "IndexingState",
    "IndexingReport",
    "CancellationToken",
]
