"""BM25 индекс по чанкам с кэшированием между запросами."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

from rank_bm25 import BM25Okapi

from domain.entities import Chunk


class PositiveIdfBM25(BM25Okapi):
    """BM25Okapi с IDF Lucene: log(1 + (N - n + 0.5) / (n + 0.5)).

    IDF положителен и для терма, который встречается в половине корпуса и чаще.
    """

    def _calc_idf(self, nd: dict[str, int]) -> None:
        for word, freq in nd.items():
            self.idf[word] = math.log(1.0 + (self.corpus_size - freq + 0.5) / (freq + 0.5))
        self.average_idf = sum(self.idf.values()) / len(self.idf) if self.idf else 0.0


@dataclass(slots=True)
class _State:
    index: BM25Okapi | None
    chunk_ids: list[str]
    fingerprint: str


class BM25Index:
    """Кэширует BM25 индекс, перестраивая его только при изменении набора чанков."""

    def __init__(self) -> None:
        self._state = _State(index=None, chunk_ids=[], fingerprint="")

    def update_chunks(self, chunks: Sequence[Chunk]) -> None:
        fingerprint = self._fingerprint(chunks)
        if fingerprint == self._state.fingerprint:
            return
        corpus = [self.tokenize(self._searchable_text(chunk)) for chunk in chunks]
        if not chunks or not any(corpus):
            self._state = _State(index=None, chunk_ids=[], fingerprint=fingerprint)
            return
        self._state = _State(
            index=PositiveIdfBM25(corpus),
            chunk_ids=[chunk.id for chunk in chunks],
            fingerprint=fingerprint,
        )

    def scores(self, terms: Sequence[str]) -> dict[str, float]:
        """Вернуть нормированные в [0, 1] BM25 оценки для каждого чанка."""
        if self._state.index is None:
            return {}
        query_tokens = [token for term in terms for token in self.tokenize(term)]
        if not query_tokens:
            return {}
        values = self._state.index.get_scores(query_tokens)
        top = max((float(value) for value in values), default=0.0)
        if top <= 0:
            return {chunk_id: 0.0 for chunk_id in self._state.chunk_ids}
        return {
            chunk_id: max(float(value), 0.0) / top
            for chunk_id, value in zip(self._state.chunk_ids, values)
        }

    @staticmethod
    def tokenize(text: str) -> list[str]:
        tokens: list[str] = []
        for raw in text.lower().split():
            token = raw.strip(".,;:!?()[]{}\"'`")
            if token:
                tokens.append(token)
        return tokens

    @staticmethod
    def _searchable_text(chunk: Chunk) -> str:
        if not chunk.tags:
            return chunk.content
        return f"{chunk.content} {' '.join(tag.lower() for tag in chunk.tags)}"

    @staticmethod
    def _fingerprint(chunks: Sequence[Chunk]) -> str:
        parts = [f"{chunk.id}:{len(chunk.content)}:{len(chunk.tags)}" for chunk in chunks]
        return "|".join(sorted(parts))


__all__ = ["BM25Index", "PositiveIdfBM25"]
