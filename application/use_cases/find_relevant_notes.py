"""Use case that ranks notes related to a given note."""
from __future__ import annotations

import logging

from domain.entities import RelatedNote
from domain.interfaces import LinkGraph, NoteSimilaritySource
from infrastructure.storage.partitioned_chunk_store import PartitionedChunkStore, SearchParams

logger = logging.getLogger(__name__)

MAX_K = 20
ORIGINAL_WEIGHT = 0.7
LINKS_WEIGHT = 0.3
SINGLE_DIRECTION_FACTOR = 0.8
HIGH_SIMILARITY = 0.7
MEDIUM_SIMILARITY = 0.55


def link_bonus(has_outgoing: bool, has_backlink: bool) -> float:
    if has_outgoing and has_backlink:
        return LINKS_WEIGHT
    if has_outgoing or has_backlink:
        return LINKS_WEIGHT * SINGLE_DIRECTION_FACTOR
    return 0.0


def merged_score(similarity: float, has_outgoing: bool, has_backlink: bool) -> float:
    weighted = similarity * ORIGINAL_WEIGHT / (ORIGINAL_WEIGHT + LINKS_WEIGHT)
    return weighted + link_bonus(has_outgoing, has_backlink)


def similarity_category(similarity: float) -> int:
    if similarity > HIGH_SIMILARITY:
        return 3
    if similarity > MEDIUM_SIMILARITY:
        return 2
    return 1


def rank_related(notes: list[RelatedNote]) -> list[RelatedNote]:
    """Order by similarity tier first, then by merged score inside a tier."""
    for note in notes:
        note.category = similarity_category(note.similarity_score)
    return sorted(notes, key=lambda note: (note.category, note.score), reverse=True)


def top_scores(scores: dict[str, float], limit: int = MAX_K) -> dict[str, float]:
    top = sorted(scores.items(), key=lambda item: item[1], reverse=True)[:limit]
    return dict(top)


def _title(path: str) -> str:
    name = path.rsplit("/", 1)[-1]
    return name.rsplit(".", 1)[0] if "." in name else name


class StoreSimilaritySource(NoteSimilaritySource):
    """Similarity from vector search over the local chunk store."""

    def __init__(self, store: PartitionedChunkStore, limit: int = MAX_K) -> None:
        self._store = store
        self._limit = limit

    async def similarity_scores(self, path: str) -> dict[str, float]:
        # each chunk is searched on its own so distinct topics do not cancel out
        best: dict[str, float] = {}
        for chunk in self._store.get_chunks_by_path(path):
            if not chunk.embedding:
                continue
            hits = await self._store.search(
                "vector",
                SearchParams(vector=chunk.embedding, limit=self._limit, exclude_paths={path}),
            )
            for hit in hits:
                candidate = hit.chunk.path
                if hit.score > best.get(candidate, float("-inf")):
                    best[candidate] = hit.score
        return top_scores(best, self._limit)


class RelevanceGraphScorer:
    """Combines note similarity with outgoing links and backlinks.

    Without a similarity source only linked notes are ranked.
    """

    def __init__(
        self,
        *,
        link_graph: LinkGraph,
        store: PartitionedChunkStore | None = None,
        similarity_source: NoteSimilaritySource | None = None,
    ) -> None:
        if similarity_source is None and store is not None:
            similarity_source = StoreSimilaritySource(store)
        self._similarity_source = similarity_source
        self._link_graph = link_graph

    async def similarity_scores(self, path: str) -> dict[str, float]:
        if self._similarity_source is None:
            return {}
        return await self._similarity_source.similarity_scores(path)

    async def find_related(self, path: str) -> list[RelatedNote]:
        similarity = await self.similarity_scores(path)
        outgoing = set(self._link_graph.get_linked_notes(path))
        backlinks = set(self._link_graph.get_backlinked_notes(path))

        notes: list[RelatedNote] = []
        for candidate in set(similarity) | outgoing | backlinks:
            if candidate == path or not candidate.lower().endswith(".md"):
                continue
            score = similarity.get(candidate, 0.0)
            has_outgoing = candidate in outgoing
            has_backlink = candidate in backlinks
            notes.append(
                RelatedNote(
                    path=candidate,
                    title=_title(candidate),
                    score=merged_score(score, has_outgoing, has_backlink),
                    similarity_score=score,
                    has_outgoing_links=has_outgoing,
                    has_backlinks=has_backlink,
                )
            )
        ranked = rank_related(notes)
        logger.debug("Found %d related notes for %s", len(ranked), path)
        return ranked


__all__ = [
    "RelevanceGraphScorer",
    "StoreSimilaritySource",
    "link_bonus",
    "merged_score",
    "rank_related",
    "similarity_category",
    "top_scores",
]
