"""Deterministic hashed bag-of-words embedder for offline use and tests."""
from __future__ import annotations

import hashlib
import math
import re
from collections import Counter
from typing import Sequence

from domain.interfaces import Embedder

_WORD_RE = re.compile(r"[\w#]+", re.UNICODE)


class WordHashEmbedder(Embedder):
    """Hashes each word into a signed bucket, so shared words mean similar vectors."""

    def __init__(self, dimension: int = 64) -> None:
        self._dimension = dimension
        self._model_id = f"hash-words-{dimension}"

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def dimension(self) -> int:
        return self._dimension

    def _bucket(self, word: str) -> tuple[int, float]:
        digest = hashlib.md5(word.encode("utf-8")).digest()
        index = int.from_bytes(digest[:4], "little") % self._dimension
        sign = 1.0 if digest[4] & 1 else -1.0
        return index, sign

    def _embed(self, text: str) -> list[float]:
        counts = Counter(word.lower() for word in _WORD_RE.findall(text))
        vector = [0.0] * self._dimension
        if not counts:
            # keep empty inputs non-degenerate so stores can detect the vector length
            vector[0] = 1.0
            return vector
        for word, count in counts.items():
            index, sign = self._bucket(word)
            vector[index] += sign * count
        norm = math.sqrt(sum(value * value for value in vector)) or 1.0
        return [value / norm for value in vector]

    def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        return self._embed(text)


__all__ = ["WordHashEmbedder"]
