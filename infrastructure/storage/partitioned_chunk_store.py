"""Партиционированное хранилище чанков с векторным и лексическим поиском."""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Literal, Sequence

import numpy as np

from application.services.bm25_index import BM25Index
from domain.entities import Chunk, PartitionManifest, SearchHit
from domain.errors import EmbeddingError, StoreInitError, UpsertError
from domain.interfaces import Embedder, IndexBackend

logger = logging.getLogger(__name__)

SearchMode = Literal["vector", "lexical", "hybrid"]

SAMPLE_EMBEDDING_TEXT = "Sample text for embedding"
DEFAULT_TEXT_WEIGHT = 0.5
DEFAULT_SAVE_DB_DELAY = 120.0


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def djb2_hash(text: str) -> int:
    """Rolling ``hash * 31 + code`` with 32-bit wraparound on the shift step."""
    acc = 0
    for char in text:
        code = ord(char)
        if code > 0xFFFF:
            # astral characters contribute their leading UTF-16 surrogate
            code = 0xD800 + ((code - 0x10000) >> 10)
        acc = _to_int32(_to_int32(acc) << 5) - acc + code
    return acc


def assign_partition(chunk_id: str, num_partitions: int) -> int:
    if num_partitions <= 0:
        raise ValueError("num_partitions must be positive")
    return abs(djb2_hash(chunk_id)) % num_partitions


def is_tag_only(terms: Sequence[str]) -> bool:
    cleaned = [term for term in terms if term.strip()]
    return bool(cleaned) and all(term.strip().startswith("#") for term in cleaned)


def resolve_text_weight(terms: Sequence[str], text_weight: float | None) -> float:
    """Tag-only term sets are searched purely lexically."""
    if is_tag_only(terms):
        return 1.0
    if text_weight is None:
        return DEFAULT_TEXT_WEIGHT
    return min(max(text_weight, 0.0), 1.0)


def _tag_membership_scores(chunks: Sequence[Chunk], terms: Sequence[str]) -> dict[str, float]:
    """Чанк с любым из запрошенных тегов получает полный лексический балл."""
    wanted = {term.strip().lower() for term in terms if term.strip()}
    return {
        chunk.id: 1.0
        for chunk in chunks
        if wanted.intersection(tag.lower() for tag in chunk.tags)
    }


def blend_scores(lexical_score: float, vector_score: float, text_weight: float) -> float:
    return text_weight * lexical_score + (1.0 - text_weight) * vector_score


def build_schema(vector_length: int) -> dict[str, str]:
    return {
        "id": "string",
        "title": "string",
        "path": "string",
        "content": "string",
        "embedding": f"vector[{vector_length}]",
        "embeddingModel": "string",
        "created_at": "number",
        "ctime": "number",
        "mtime": "number",
        "tags": "string[]",
        "extension": "string",
        "nchars": "number",
        "metadata": "object",
    }


@dataclass(slots=True)
class SearchParams:
    """Параметры одного поиска по хранилищу."""

    term: str = ""
    vector: Sequence[float] | None = None
    terms: Sequence[str] = ()
    limit: int = 10
    text_weight: float | None = None
    similarity: float | None = None
    exclude_paths: set[str] = field(default_factory=set)
    only_paths: set[str] | None = None


class PartitionedChunkStore(IndexBackend):
    """Хранит чанки в N JSON-партициях и манифесте; при N=1 использует один файл."""

    requires_embeddings = True

    def __init__(
        self,
        *,
        index_dir: str | Path = "index",
        identifier: str = "default",
        embedder: Embedder | None = None,
        num_partitions: int = 4,
        save_db_delay: float = DEFAULT_SAVE_DB_DELAY,
    ) -> None:
        if num_partitions <= 0:
            raise ValueError("num_partitions must be positive")
        self._index_dir = Path(index_dir)
        self._identifier = identifier
        self._embedder = embedder
        self._num_partitions = num_partitions
        self._save_db_delay = save_db_delay
        self._chunks: dict[str, Chunk] = {}
        self._manifest: PartitionManifest | None = None
        self._bm25 = BM25Index()
        self._lock = asyncio.Lock()
        self._save_lock = asyncio.Lock()
        self._missing_embeddings: set[str] = set()
        self._dirty = False

    # -- properties -----------------------------------------------------

    @property
    def is_legacy(self) -> bool:
        return self._num_partitions == 1

    @property
    def num_partitions(self) -> int:
        return self._num_partitions

    @property
    def vector_length(self) -> int:
        if self._manifest is None:
            raise StoreInitError("Store is not initialized")
        return self._manifest.vector_length

    @property
    def manifest(self) -> PartitionManifest | None:
        return self._manifest

    @property
    def has_unsaved_changes(self) -> bool:
        return self._dirty

    @property
    def embedder(self) -> Embedder | None:
        return self._embedder

    def set_embedder(self, embedder: Embedder | None) -> None:
        self._embedder = embedder

    def manifest_path(self) -> Path:
        return self._index_dir / f"vaultsearch-index-chunk-{self._identifier}-metadata.json"

    def partition_path(self, index: int) -> Path:
        return self._index_dir / f"vaultsearch-index-chunk-{self._identifier}-{index}.json"

    def legacy_path(self) -> Path:
        return self._index_dir / f"vaultsearch-index-{self._identifier}.json"

    # -- lifecycle ------------------------------------------------------

    async def initialize(self) -> None:
        if self._has_persisted_index():
            try:
                await self.load()
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("Индекс повреждён, создаётся новый: %s", exc)
            else:
                await self.check_index_integrity()
                return
        if self._embedder is None:
            raise StoreInitError("No embedding model available and no existing index found")
        await self._create_fresh()
        await self.save()

    async def _create_fresh(self) -> None:
        vector_length = await self._detect_vector_length()
        self._chunks = {}
        self._missing_embeddings.clear()
        self._manifest = PartitionManifest(
            num_partitions=self._num_partitions,
            vector_length=vector_length,
            schema=build_schema(vector_length),
            last_modified=_now_ms(),
        )
        logger.info(
            "Создано новое хранилище: partitions=%d vector_length=%d",
            self._num_partitions,
            vector_length,
        )

    async def _detect_vector_length(self) -> int:
        if self._embedder is None:
            raise StoreInitError("No embedding model available to detect vector length")
        vectors = await asyncio.to_thread(self._embedder.embed_texts, [SAMPLE_EMBEDDING_TEXT])
        if not vectors or not vectors[0]:
            raise EmbeddingError("Embedding model returned an empty sample vector")
        return len(vectors[0])

    def _has_persisted_index(self) -> bool:
        if self.is_legacy:
            return self.legacy_path().exists()
        return self.manifest_path().exists()

    async def load(self) -> None:
        if self.is_legacy:
            payload = await asyncio.to_thread(_read_json, self.legacy_path())
            manifest = PartitionManifest.from_record(payload)
            records = list(payload.get("docs") or [])
        else:
            manifest = PartitionManifest.from_record(
                await asyncio.to_thread(_read_json, self.manifest_path())
            )
            records = []
            for index in range(manifest.num_partitions):
                path = self.partition_path(index)
                if not path.exists():
                    logger.debug("Партиция %s отсутствует", path)
                    continue
                partition = await asyncio.to_thread(_read_json, path)
                records.extend(partition.get("docs") or [])

        chunks = {record["id"]: Chunk.from_record(record) for record in records}
        if manifest.num_partitions != self._num_partitions:
            logger.info(
                "Число партиций изменилось (%d -> %d), индекс будет полностью перезаписан",
                manifest.num_partitions,
                self._num_partitions,
            )
            manifest.num_partitions = self._num_partitions
            self._dirty = True
        self._manifest = manifest
        self._chunks = chunks
        self._rebuild_document_partitions()
        logger.info("Загружено %d чанков из %s", len(chunks), self._index_dir)

    async def save(self) -> None:
        async with self._save_lock:
            async with self._lock:
                if self._manifest is None:
                    return
                self._manifest.last_modified = _now_ms()
                self._rebuild_document_partitions()
                records = [chunk.to_record() for chunk in self._chunks.values()]
                manifest_record = self._manifest.to_record()
                self._dirty = False
            try:
                await self._write_snapshot(records, manifest_record)
            except OSError:
                self._dirty = True
                raise
        logger.info("Индекс сохранён: %d чанков", len(records))

    async def _write_snapshot(self, records: list[dict[str, Any]], manifest_record: dict[str, Any]) -> None:
        if self.is_legacy:
            payload = dict(manifest_record)
            payload["docs"] = records
            await asyncio.to_thread(_write_json, self.legacy_path(), payload)
            return
        partitions: list[list[dict[str, Any]]] = [[] for _ in range(self._num_partitions)]
        for record in records:
            partitions[assign_partition(record["id"], self._num_partitions)].append(record)
        for index, docs in enumerate(partitions):
            await asyncio.to_thread(_write_json, self.partition_path(index), {"docs": docs})
        await asyncio.to_thread(_write_json, self.manifest_path(), manifest_record)
        await asyncio.to_thread(self._remove_stale_partitions)

    async def save_if_dirty(self) -> bool:
        if not self._dirty:
            return False
        await self.save()
        return True

    async def run_autosave(self, interval: float | None = None) -> None:
        """Periodically persist unsaved changes until cancelled."""
        delay = interval if interval is not None else self._save_db_delay
        while True:
            await asyncio.sleep(delay)
            try:
                await self.save_if_dirty()
            except OSError:
                logger.exception("Периодическое сохранение индекса не удалось")

    def _remove_stale_partitions(self) -> None:
        index = self._num_partitions
        while True:
            path = self.partition_path(index)
            if not path.exists():
                return
            path.unlink()
            index += 1

    async def clear_index(self) -> None:
        async with self._lock:
            await self._create_fresh()
        await self.save()

    # -- mutation -------------------------------------------------------

    async def upsert(self, chunk: Chunk) -> Chunk:
        self._require_manifest()
        async with self._lock:
            previous = self._chunks.get(chunk.id)
            if previous is not None:
                self._delete(previous)
            try:
                self._insert(chunk)
            except (EmbeddingError, ValueError) as exc:
                if previous is not None:
                    try:
                        self._insert(previous)
                    except (EmbeddingError, ValueError):
                        logger.exception("Не удалось восстановить прежнюю версию чанка %s", chunk.id)
                    else:
                        logger.warning("Восстановлена прежняя версия чанка %s", chunk.id)
                raise UpsertError(f"Failed to upsert chunk {chunk.id} for {chunk.path}: {exc}") from exc
            self._dirty = True
            return chunk

    async def upsert_file(self, path: str, chunks: Sequence[Chunk]) -> int:
        written = 0
        for chunk in chunks:
            await self.upsert(chunk)
            written += 1
        return written

    async def remove_by_path(self, path: str) -> None:
        async with self._lock:
            doomed = [chunk for chunk in self._chunks.values() if chunk.path == path]
            for chunk in doomed:
                self._delete(chunk)
            if doomed:
                self._dirty = True
                logger.debug("Удалено %d чанков для %s", len(doomed), path)

    async def garbage_collect(self, live_paths: Iterable[str]) -> int:
        live = set(live_paths)
        async with self._lock:
            doomed = [chunk for chunk in self._chunks.values() if chunk.path not in live]
            for chunk in doomed:
                self._delete(chunk)
            if doomed:
                self._dirty = True
                logger.info("Сборка мусора удалила %d чанков", len(doomed))
        return len(doomed)

    async def check_and_handle_embedding_model_change(self, model_name: str) -> bool:
        self._require_manifest()
        sample = next(iter(self._chunks.values()), None)
        if sample is None or not sample.embedding_model:
            return False
        if sample.embedding_model == model_name:
            return False
        logger.info(
            "Обнаружена смена модели эмбеддингов: %s -> %s, индекс будет пересоздан",
            sample.embedding_model,
            model_name,
        )
        async with self._lock:
            await self._create_fresh()
        await self.save()
        return True

    def _insert(self, chunk: Chunk) -> None:
        assert self._manifest is not None
        if len(chunk.embedding) != self._manifest.vector_length:
            raise EmbeddingError(
                f"Embedding length {len(chunk.embedding)} does not match store "
                f"vector length {self._manifest.vector_length}"
            )
        if any(np.isnan(chunk.embedding)):
            raise ValueError("Embedding contains NaN values")
        self._chunks[chunk.id] = chunk
        self._manifest.document_partitions.setdefault(chunk.path, {})[chunk.id] = assign_partition(
            chunk.id, self._num_partitions
        )

    def _delete(self, chunk: Chunk) -> None:
        self._chunks.pop(chunk.id, None)
        if self._manifest is None:
            return
        by_path = self._manifest.document_partitions.get(chunk.path)
        if by_path is not None:
            by_path.pop(chunk.id, None)
            if not by_path:
                del self._manifest.document_partitions[chunk.path]

    def _rebuild_document_partitions(self) -> None:
        if self._manifest is None:
            return
        mapping: dict[str, dict[str, int]] = {}
        for chunk in self._chunks.values():
            mapping.setdefault(chunk.path, {})[chunk.id] = assign_partition(chunk.id, self._num_partitions)
        self._manifest.document_partitions = mapping

    def _require_manifest(self) -> None:
        if self._manifest is None:
            raise StoreInitError("Store is not initialized")

    # -- queries --------------------------------------------------------

    def get_chunk(self, chunk_id: str) -> Chunk | None:
        return self._chunks.get(chunk_id)

    def count(self) -> int:
        return len(self._chunks)

    def get_chunks_by_path(self, path: str) -> list[Chunk]:
        chunks = [chunk for chunk in self._chunks.values() if chunk.path == path]
        return sorted(chunks, key=lambda chunk: (int(chunk.metadata.get("chunk_index", 0)), chunk.id))

    async def get_indexed_files(self) -> list[str]:
        return sorted({chunk.path for chunk in self._chunks.values()})

    async def get_latest_file_mtime(self) -> int:
        return max((chunk.mtime for chunk in self._chunks.values()), default=0)

    async def is_index_empty(self) -> bool:
        return not self._chunks

    async def has_index(self, path: str) -> bool:
        return any(chunk.path == path for chunk in self._chunks.values())

    async def check_index_integrity(self) -> list[str]:
        """Вернуть id чанков с отсутствующими или некорректными эмбеддингами."""
        self._require_manifest()
        assert self._manifest is not None
        broken: list[str] = []
        for chunk in self._chunks.values():
            if len(chunk.embedding) != self._manifest.vector_length:
                broken.append(chunk.id)
                self._missing_embeddings.add(chunk.path)
        if broken:
            logger.warning("Найдено %d чанков без корректных эмбеддингов", len(broken))
        return broken

    def mark_file_missing_embeddings(self, path: str) -> None:
        self._missing_embeddings.add(path)

    def get_files_missing_embeddings(self) -> set[str]:
        return set(self._missing_embeddings)

    def clear_files_missing_embeddings(self) -> None:
        self._missing_embeddings.clear()

    async def search(self, mode: SearchMode, params: SearchParams) -> list[SearchHit]:
        self._require_manifest()
        candidates = [
            chunk
            for chunk in self._chunks.values()
            if chunk.path not in params.exclude_paths
            and (params.only_paths is None or chunk.path in params.only_paths)
        ]
        if not candidates or params.limit <= 0:
            return []

        terms = list(params.terms) or ([params.term] if params.term else [])
        if mode == "vector":
            text_weight = 0.0
        elif mode == "lexical":
            text_weight = 1.0
        else:
            text_weight = resolve_text_weight(terms, params.text_weight)

        vector_scores: dict[str, float] = {}
        if text_weight < 1.0:
            if params.vector is None:
                raise ValueError(f"{mode} search requires a query vector")
            vector_scores = self._vector_scores(candidates, params.vector)

        lexical_scores: dict[str, float] = {}
        if text_weight > 0.0:
            self._bm25.update_chunks(list(self._chunks.values()))
            lexical_scores = self._bm25.scores(terms)
            if is_tag_only(terms):
                lexical_scores.update(_tag_membership_scores(candidates, terms))

        hits: list[SearchHit] = []
        for chunk in candidates:
            vector_score = vector_scores.get(chunk.id, 0.0)
            lexical_score = lexical_scores.get(chunk.id, 0.0)
            if mode == "vector":
                score = vector_score
            elif mode == "lexical":
                score = lexical_score
            else:
                score = blend_scores(lexical_score, vector_score, text_weight)
            if mode == "lexical" and lexical_score <= 0:
                continue
            if params.similarity is not None and score < params.similarity:
                continue
            hits.append(
                SearchHit(chunk=chunk, score=score, vector_score=vector_score, lexical_score=lexical_score)
            )
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[: params.limit]

    @staticmethod
    def _vector_scores(chunks: Sequence[Chunk], vector: Sequence[float]) -> dict[str, float]:
        matrix = np.asarray([chunk.embedding for chunk in chunks], dtype="float32")
        query = np.asarray(vector, dtype="float32")
        if matrix.ndim != 2 or matrix.shape[1] != query.shape[0]:
            raise EmbeddingError(
                f"Query vector length {query.shape[0]} does not match stored vectors {matrix.shape}"
            )
        norms = np.linalg.norm(matrix, axis=1) * (np.linalg.norm(query) or 1.0)
        norms[norms == 0] = 1.0
        scores = matrix @ query / norms
        return {chunk.id: float(score) for chunk, score in zip(chunks, scores)}


def _now_ms() -> int:
    return int(time.time() * 1000)


def _read_json(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text(encoding="utf-8"))


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
    tmp_path.replace(path)


__all__ = [
    "PartitionedChunkStore",
    "SearchMode",
    "SearchParams",
    "assign_partition",
    "blend_scores",
    "djb2_hash",
    "is_tag_only",
    "resolve_text_weight",
]
