"""Similarity of notes taken from the external search service."""
from __future__ import annotations

import asyncio
import logging
import math

from application.use_cases.find_relevant_notes import MAX_K, top_scores
from domain.errors import RemoteApiError, RemoteNetworkError, RemoteTimeoutError
from domain.interfaces import NoteSimilaritySource
from infrastructure.remote.remote_search_client import RemoteSearchClient

logger = logging.getLogger(__name__)


class RemoteSimilaritySource(NoteSimilaritySource):
    """Keeps the best chunk score per note from ``/search/related``."""

    def __init__(self, client: RemoteSearchClient, limit: int = MAX_K) -> None:
        self._client = client
        self._limit = limit

    async def similarity_scores(self, path: str) -> dict[str, float]:
        try:
            response = await asyncio.to_thread(self._client.search_related, path, limit=self._limit)
        except (RemoteApiError, RemoteNetworkError, RemoteTimeoutError) as exc:
            logger.warning("Related-notes search failed for %s: %s", path, exc)
            return {}

        best: dict[str, float] = {}
        results = response.get("results") or []
        for result in results:
            candidate = result.get("file_path") or result.get("path")
            score = result.get("score")
            if not candidate or candidate == path:
                continue
            if not isinstance(score, (int, float)) or math.isnan(score):
                continue
            if score > best.get(candidate, float("-inf")):
                best[candidate] = float(score)
        logger.debug("Related search returned %d chunks, %d notes for %s", len(results), len(best), path)
        return top_scores(best, self._limit)


__all__ = ["RemoteSimilaritySource"]
