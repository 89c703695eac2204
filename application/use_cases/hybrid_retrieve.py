"""Use case that answers a query from the local chunk store."""
from __future__ import annotations

import asyncio
import logging
import math
import time
from datetime import date, datetime, timedelta
from typing import Callable

from application.services.note_references import extract_note_references, resolve_note_files
from application.services.pattern_filters import PatternFilter
from domain.entities import (
    CancellationToken,
    RankedDocument,
    RetrieverOptions,
    SearchHit,
    TimeRange,
    VaultFile,
)
from domain.errors import RetrievalCancelled
from domain.interfaces import Embedder, QueryRewriter, Reranker, Retriever, VaultFileSystem
from infrastructure.storage.partitioned_chunk_store import (
    PartitionedChunkStore,
    SearchParams,
    resolve_text_weight,
)

logger = logging.getLogger(__name__)

RETURN_ALL_LIMIT = 100
MAX_DAILY_NOTE_DAYS = 365
RERANK_TOP_N = 10
RERANK_MAX_CHARS = 3000
DEDUP_PREFIX_CHARS = 200
_DAY_MS = 24 * 60 * 60 * 1000


def recency_score(mtime_ms: int, now_ms: int) -> float:
    days_since_modified = (now_ms - mtime_ms) / _DAY_MS
    return max(0.3, min(1.0, 1.0 - days_since_modified / 30))


def daily_note_titles(time_range: TimeRange) -> list[str]:
    """Return ``YYYY-MM-DD`` titles for the range, limited to the most recent 365 days."""
    start_ms = time_range.start_time
    end_ms = time_range.end_time
    if math.ceil((end_ms - start_ms) / _DAY_MS) > MAX_DAILY_NOTE_DAYS:
        logger.warning("Date range exceeds %d days, limiting to the most recent ones", MAX_DAILY_NOTE_DAYS)
        start_ms = end_ms - MAX_DAILY_NOTE_DAYS * _DAY_MS
    current: date = datetime.fromtimestamp(start_ms / 1000).date()
    end: date = datetime.fromtimestamp(end_ms / 1000).date()
    titles: list[str] = []
    while current <= end:
        titles.append(current.isoformat())
        current += timedelta(days=1)
    return titles


def is_valid_score(score: float) -> bool:
    return isinstance(score, (int, float)) and not math.isnan(score)


class HybridRetriever(Retriever):
    """Blends explicit references, hybrid store search and optional reranking."""

    def __init__(
        self,
        *,
        store: PartitionedChunkStore,
        embedder: Embedder,
        vault: VaultFileSystem,
        rewriter: QueryRewriter | None = None,
        reranker: Reranker | None = None,
        pattern_filter: PatternFilter | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._vault = vault
        self._rewriter = rewriter
        self._reranker = reranker
        self._filter = pattern_filter or PatternFilter()
        self._clock = clock

    async def retrieve(
        self,
        query: str,
        options: RetrieverOptions,
        cancellation: CancellationToken | None = None,
    ) -> list[RankedDocument]:
        token = cancellation or CancellationToken()
        try:
            token.raise_if_cancelled()
            if options.time_range is not None:
                documents = await self._time_range_documents(options.time_range, options, token)
            else:
                documents = await self._hybrid_documents(query, options, token)
            token.raise_if_cancelled()
            return documents
        except RetrievalCancelled:
            logger.info("Retrieval cancelled for query %r", query[:50])
            return []
        except Exception:
            logger.exception("Retrieval failed for query %r", query[:50])
            return []

    # -- time range -----------------------------------------------------

    async def _time_range_documents(
        self,
        time_range: TimeRange,
        options: RetrieverOptions,
        token: CancellationToken,
    ) -> list[RankedDocument]:
        files = [file for file in self._vault.list_files() if self._filter.should_index(file, self._vault.get_tags)]
        daily_files = resolve_note_files(daily_note_titles(time_range), files)
        daily_paths = {file.path for file in daily_files}
        limit = RETURN_ALL_LIMIT if options.return_all else min(options.max_k, RETURN_ALL_LIMIT)
        now_ms = int(self._clock() * 1000)

        documents: dict[str, RankedDocument] = {}
        for file in daily_files:
            token.raise_if_cancelled()
            documents[file.path] = self._full_note(file, score=1.0, source="daily-note")

        time_filtered = 0
        for file in files:
            if not time_range.start_time <= file.mtime <= time_range.end_time:
                continue
            if file.path in daily_paths:
                continue
            if time_filtered >= limit:
                break
            token.raise_if_cancelled()
            try:
                score = recency_score(file.mtime, now_ms)
                document = self._full_note(file, score=score, source="time-filtered")
            except OSError:
                logger.warning("Failed to read %s", file.path)
                continue
            document.rerank_score = score
            documents.setdefault(file.path, document)
            time_filtered += 1

        return sorted(documents.values(), key=lambda document: document.score, reverse=True)

    def _full_note(self, file: VaultFile, *, score: float, source: str) -> RankedDocument:
        return RankedDocument(
            path=file.path,
            title=file.basename,
            content=self._vault.read_file(file.path),
            score=score,
            include_in_context=True,
            source=source,
            mtime=file.mtime,
            ctime=file.ctime,
            tags=self._vault.get_tags(file.path),
        )

    # -- hybrid ---------------------------------------------------------

    async def _hybrid_documents(
        self,
        query: str,
        options: RetrieverOptions,
        token: CancellationToken,
    ) -> list[RankedDocument]:
        if await self._store.is_index_empty():
            logger.info("Index is empty, nothing to retrieve for %r", query[:50])
            return []
        explicit = await self._explicit_reference_documents(query, token)

        vector_text = query
        if self._rewriter is not None and not options.skip_rewrite:
            vector_text = await asyncio.to_thread(self._rewriter.rewrite, query) or query
            token.raise_if_cancelled()

        terms = list(options.salient_terms) or query.split()
        text_weight = resolve_text_weight(terms, options.text_weight)
        vector = None
        if text_weight < 1.0:
            vector = await asyncio.to_thread(self._embedder.embed_query, vector_text)
            token.raise_if_cancelled()

        limit = RETURN_ALL_LIMIT if options.return_all else min(options.max_k * 2, RETURN_ALL_LIMIT)
        hits = await self._store.search(
            "hybrid",
            SearchParams(term=query, vector=vector, terms=terms, limit=limit, text_weight=text_weight),
        )
        token.raise_if_cancelled()

        filtered = [
            hit for hit in hits if not is_valid_score(hit.score) or hit.score >= options.min_similarity_score
        ]
        merged = self._merge(explicit, [self._from_hit(hit) for hit in filtered])

        if options.use_reranker_threshold is not None and self._reranker is not None and merged:
            merged = await self._maybe_rerank(query, merged, options.use_reranker_threshold, token)

        cap = RETURN_ALL_LIMIT if options.return_all else options.max_k
        return merged[:cap]

    async def _explicit_reference_documents(
        self,
        query: str,
        token: CancellationToken,
    ) -> list[RankedDocument]:
        references = extract_note_references(query)
        if not references:
            return []
        indexed = [VaultFile(path=path) for path in await self._store.get_indexed_files()]
        documents: list[RankedDocument] = []
        for file in resolve_note_files(references, indexed):
            token.raise_if_cancelled()
            chunks = self._store.get_chunks_by_path(file.path)
            if not chunks:
                continue
            if self._vault.file_exists(file.path):
                content = self._vault.read_file(file.path)
            else:
                content = "\n\n".join(chunk.content for chunk in chunks)
            first = chunks[0]
            documents.append(
                RankedDocument(
                    path=file.path,
                    title=first.title,
                    content=content,
                    score=1.0,
                    include_in_context=True,
                    source="explicit",
                    mtime=first.mtime,
                    ctime=first.ctime,
                    tags=list(first.tags),
                )
            )
        return documents

    @staticmethod
    def _from_hit(hit: SearchHit) -> RankedDocument:
        chunk = hit.chunk
        return RankedDocument(
            path=chunk.path,
            title=chunk.title,
            content=chunk.content,
            score=hit.score,
            include_in_context=True,
            source="hybrid",
            chunk_id=chunk.id,
            mtime=chunk.mtime,
            ctime=chunk.ctime,
            tags=list(chunk.tags),
            metadata=dict(chunk.metadata),
        )

    @staticmethod
    def _merge(explicit: list[RankedDocument], hits: list[RankedDocument]) -> list[RankedDocument]:
        merged: list[RankedDocument] = list(explicit)
        full_paths = {document.path for document in explicit}
        seen: set[str] = set()
        for document in hits:
            if document.path in full_paths:
                continue
            key = document.chunk_id or f"{document.path}:{document.content[:DEDUP_PREFIX_CHARS]}"
            if key in seen:
                continue
            seen.add(key)
            merged.append(document)
        return merged

    async def _maybe_rerank(
        self,
        query: str,
        documents: list[RankedDocument],
        threshold: float,
        token: CancellationToken,
    ) -> list[RankedDocument]:
        valid_scores = [document.score for document in documents if is_valid_score(document.score)]
        if not valid_scores:
            logger.info("Reranking: all scores are non-numeric")
        elif max(valid_scores) < threshold:
            logger.info("Reranking: max score %.3f below threshold %.3f", max(valid_scores), threshold)
        else:
            return documents

        assert self._reranker is not None
        head = documents[:RERANK_TOP_N]
        tail = documents[RERANK_TOP_N:]
        results = await asyncio.to_thread(
            self._reranker.rerank, query, [document.content[:RERANK_MAX_CHARS] for document in head]
        )
        token.raise_if_cancelled()

        reranked: list[RankedDocument] = []
        used: set[int] = set()
        for result in sorted(results, key=lambda item: item.relevance_score, reverse=True):
            if result.index in used or not 0 <= result.index < len(head):
                continue
            used.add(result.index)
            document = head[result.index]
            document.original_score = document.score
            document.rerank_score = result.relevance_score
            document.score = result.relevance_score
            reranked.append(document)
        reranked.extend(document for index, document in enumerate(head) if index not in used)
        return reranked + tail


__all__ = [
    "HybridRetriever",
    "RETURN_ALL_LIMIT",
    "daily_note_titles",
    "is_valid_score",
    "recency_score",
]
