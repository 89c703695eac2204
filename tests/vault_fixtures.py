"""Помощники для тестов: временное хранилище заметок и управляемые эмбеддеры."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Sequence

from domain.interfaces import Embedder
from infrastructure.embedding.hash_embedder import WordHashEmbedder


def write_note(root: Path, relative_path: str, text: str, mtime_ms: int | None = None) -> Path:
    path = root / relative_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    if mtime_ms is not None:
        seconds = mtime_ms / 1000
        os.utime(path, (seconds, seconds))
    return path


class RenamedEmbedder(WordHashEmbedder):
    """Hash embedder reporting a custom model id."""

    def __init__(self, model_id: str, dimension: int = 64) -> None:
        super().__init__(dimension=dimension)
        self._model_id = model_id


class FailingEmbedder(WordHashEmbedder):
    """Fails for texts containing a marker word."""

    def __init__(self, marker: str, message: str = "embedding backend exploded", dimension: int = 32) -> None:
        super().__init__(dimension=dimension)
        self.marker = marker
        self.message = message
        self.calls = 0

    def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls += 1
        if any(self.marker in text for text in texts):
            raise RuntimeError(self.message)
        return super().embed_texts(texts)


class EmptyEmbedder(Embedder):
    @property
    def model_id(self) -> str:
        return "empty"

    def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        return [[] for _ in texts]

    def embed_query(self, text: str) -> list[float]:
        return []
