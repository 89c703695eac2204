"""Эмбеддеры на базе sentence-transformers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import logging

from sentence_transformers import SentenceTransformer

from domain.errors import EmbeddingError
from domain.interfaces import Embedder


@dataclass(slots=True)
class SentenceTransformersConfig:
    model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    device: str = "cpu"
    normalize_embeddings: bool = True
    batch_size: int = 16
    query_prefix: str | None = None
    passage_prefix: str | None = None


logger = logging.getLogger(__name__)


class SentenceTransformersEmbedder(Embedder):
    """Эмбеддер на базе библиотеки sentence-transformers."""

    def __init__(self, config: SentenceTransformersConfig) -> None:
        self._config = config
        logger.info("Загрузка модели sentence-transformers: %s", config.model_name)
        self._model = SentenceTransformer(config.model_name, device=config.device)

    @property
    def model_id(self) -> str:
        return self._config.model_name

    def _apply_prefix(self, text: str, prefix: str | None) -> str:
        if prefix:
            return f"{prefix}{text}"
        return text

    def _encode(self, texts: list[str], batch_size: int) -> list[list[float]]:
        embeddings = self._model.encode(
            texts,
            batch_size=batch_size,
            normalize_embeddings=self._config.normalize_embeddings,
            show_progress_bar=False,
        )
        vectors = embeddings.tolist()
        if len(vectors) != len(texts) or any(not vector for vector in vectors):
            raise EmbeddingError(
                f"Model {self._config.model_name} returned {len(vectors)} vectors for {len(texts)} texts"
            )
        return vectors

    def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        prefixed = [self._apply_prefix(text, self._config.passage_prefix) for text in texts]
        logger.debug("Кодирование %d чанков моделью %s", len(prefixed), self._config.model_name)
        return self._encode(prefixed, self._config.batch_size)

    def embed_query(self, text: str) -> list[float]:
        logger.debug("Кодирование запроса моделью %s", self._config.model_name)
        return self._encode([self._apply_prefix(text, self._config.query_prefix)], 1)[0]


__all__ = ["SentenceTransformersEmbedder", "SentenceTransformersConfig"]
