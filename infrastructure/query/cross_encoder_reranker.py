"""Реранкер на базе cross-encoder моделей sentence-transformers."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from sentence_transformers import CrossEncoder

from domain.entities import RerankResult
from domain.interfaces import Reranker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CrossEncoderConfig:
    model_name: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"
    device: str = "cpu"
    batch_size: int = 16


class CrossEncoderReranker(Reranker):
    """Переоценивает короткий список кандидатов cross-encoder моделью."""

    def __init__(self, config: CrossEncoderConfig) -> None:
        self._config = config
        logger.info("Загрузка cross-encoder модели: %s", config.model_name)
        self._model = CrossEncoder(config.model_name, device=config.device)

    def rerank(self, query: str, texts: Sequence[str]) -> list[RerankResult]:
        if not texts:
            return []
        scores = self._model.predict(
            [(query, text) for text in texts],
            batch_size=self._config.batch_size,
            show_progress_bar=False,
        )
        results = [RerankResult(index=index, relevance_score=float(score)) for index, score in enumerate(scores)]
        return sorted(results, key=lambda result: result.relevance_score, reverse=True)


__all__ = ["CrossEncoderReranker", "CrossEncoderConfig"]
