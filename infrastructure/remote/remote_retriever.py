"""Retriever backed by the external hybrid search service."""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from domain.entities import CancellationToken, RankedDocument, RetrieverOptions
from domain.errors import RetrievalCancelled
from domain.interfaces import Retriever
from infrastructure.remote.remote_search_client import RemoteSearchClient

logger = logging.getLogger(__name__)

REMOTE_MIN_SIMILARITY = 0.01
REMOTE_RETURN_ALL_LIMIT = 100


class RemoteRetriever(Retriever):
    """Delegates hybrid search to the remote service and maps its results."""

    def __init__(self, client: RemoteSearchClient, min_similarity_score: float = REMOTE_MIN_SIMILARITY) -> None:
        self._client = client
        self._min_similarity_score = min_similarity_score

    async def retrieve(
        self,
        query: str,
        options: RetrieverOptions,
        cancellation: CancellationToken | None = None,
    ) -> list[RankedDocument]:
        token = cancellation or CancellationToken()
        limit = REMOTE_RETURN_ALL_LIMIT if options.return_all else options.max_k
        filters: list[dict[str, Any]] = []
        if options.time_range is not None:
            filters.append(
                {"field": "mtime", "gte": options.time_range.start_time, "lte": options.time_range.end_time}
            )
        try:
            token.raise_if_cancelled()
            response = await asyncio.to_thread(self._client.search, query, limit=limit, filters=filters or None)
            token.raise_if_cancelled()
        except RetrievalCancelled:
            logger.info("Remote retrieval cancelled for query %r", query[:50])
            return []
        except Exception:
            logger.exception("Remote retrieval failed for query %r", query[:50])
            return []

        documents: list[RankedDocument] = []
        for item in response.get("results", []):
            score = float(item.get("score", 0.0))
            if score < self._min_similarity_score:
                continue
            documents.append(
                RankedDocument(
                    path=item["file_path"],
                    title=item.get("title") or item.get("file_name") or "",
                    content=item.get("chunk_text") or item.get("snippet") or "",
                    score=score,
                    rerank_score=score,
                    include_in_context=True,
                    source="remote",
                    mtime=int(item.get("mtime") or 0),
                    ctime=int(item.get("ctime") or 0),
                    metadata={
                        "chunk_index": item.get("chunk_index"),
                        "total_chunks": item.get("total_chunks"),
                    },
                )
            )
        return documents[:limit]


__all__ = ["RemoteRetriever", "REMOTE_MIN_SIMILARITY"]
