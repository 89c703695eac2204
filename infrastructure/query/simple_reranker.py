"""Reranker that scores texts by query term overlap."""
from __future__ import annotations

from typing import Sequence

from application.services.bm25_index import BM25Index
from domain.entities import RerankResult
from domain.interfaces import Reranker


class TermOverlapReranker(Reranker):
    """Score each text by the share of query terms it contains."""

    def rerank(self, query: str, texts: Sequence[str]) -> list[RerankResult]:
        terms = set(BM25Index.tokenize(query))
        results: list[RerankResult] = []
        for index, text in enumerate(texts):
            if not terms:
                results.append(RerankResult(index=index, relevance_score=0.0))
                continue
            tokens = set(BM25Index.tokenize(text))
            results.append(RerankResult(index=index, relevance_score=len(terms & tokens) / len(terms)))
        return sorted(results, key=lambda result: result.relevance_score, reverse=True)


__all__ = ["TermOverlapReranker"]
