"""Use case that turns vault notes into embedded, stored chunks."""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from hashlib import md5
from typing import Callable

from application.services.pattern_filters import PatternFilter
from application.services.rate_limiter import RateLimiter
from domain.entities import Chunk, IndexingError, IndexingReport, IndexingState, VaultFile
from domain.errors import EmbeddingError, is_rate_limit_error
from domain.interfaces import ChunkSplitter, Embedder, IndexBackend, VaultFileSystem

logger = logging.getLogger(__name__)

DEFAULT_CHECKPOINT_INTERVAL = 200
PAUSE_POLL_INTERVAL = 0.1

ProgressCallback = Callable[[int, int], None]


def chunk_id_for(content: str) -> str:
    return md5(content.encode("utf-8")).hexdigest()


def _format_time(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).isoformat(timespec="seconds")


class IndexingPipeline:
    """Runs rate-limited, file-atomic indexing of the vault into an index backend.

    One run moves through Idle -> Running -> (Paused <-> Running) and ends as
    completed, cancelled, rate_limited or error. A new run must be started
    explicitly; starting one while another is active raises RuntimeError.
    """

    def __init__(
        self,
        *,
        vault: VaultFileSystem,
        backend: IndexBackend,
        embedder: Embedder | None,
        splitter: ChunkSplitter,
        rate_limiter: RateLimiter,
        pattern_filter: PatternFilter | None = None,
        checkpoint_interval: int = DEFAULT_CHECKPOINT_INTERVAL,
        on_progress: ProgressCallback | None = None,
        pause_poll_interval: float = PAUSE_POLL_INTERVAL,
    ) -> None:
        if checkpoint_interval <= 0:
            raise ValueError("checkpoint_interval must be positive")
        self._vault = vault
        self._backend = backend
        self._embedder = embedder
        self._splitter = splitter
        self._rate_limiter = rate_limiter
        self._filter = pattern_filter or PatternFilter()
        self._checkpoint_interval = checkpoint_interval
        self._on_progress = on_progress
        self._pause_poll_interval = pause_poll_interval
        self._state = IndexingState()
        self._running = False
        self.last_report: IndexingReport | None = None

    @property
    def backend(self) -> IndexBackend:
        return self._backend

    @property
    def state(self) -> IndexingState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @rate_limiter.setter
    def rate_limiter(self, limiter: RateLimiter) -> None:
        self._rate_limiter = limiter

    def pause(self) -> None:
        self._state.is_paused = True

    def resume(self) -> None:
        self._state.is_paused = False

    def cancel(self) -> None:
        self._state.is_cancelled = True
        self._state.is_paused = False

    async def index_vault(self, overwrite: bool = False) -> int:
        """Index every file that needs it and return the number of files indexed."""
        if self._running:
            raise RuntimeError("An indexing run is already in progress")
        self._running = True
        self._state = IndexingState()
        try:
            report = await self._run(overwrite)
        except Exception as exc:
            logger.exception("Indexing run failed")
            report = IndexingReport(
                status="error",
                indexed=self._state.indexed_count,
                total=self._state.total_files_to_index,
                errors=[*self._state.errors, IndexingError(path="", reason=str(exc))],
            )
        finally:
            self._running = False
        self.last_report = report
        logger.info(
            "Indexing finished: status=%s indexed=%d/%d errors=%d",
            report.status,
            report.indexed,
            report.total,
            len(report.errors),
        )
        return report.indexed

    async def _run(self, overwrite: bool) -> IndexingReport:
        if self._backend.requires_embeddings:
            if self._embedder is None:
                return IndexingReport(
                    status="error",
                    indexed=0,
                    total=0,
                    errors=[IndexingError(path="", reason="Embedding model not available")],
                )
            if await self._backend.check_and_handle_embedding_model_change(self._embedder.model_id):
                overwrite = True

        if overwrite:
            await self._backend.clear_index()
            self._backend.clear_files_missing_embeddings()
        else:
            live_paths = {file.path for file in self._vault.list_files()}
            await self._backend.garbage_collect(live_paths)

        files = await self._get_files_to_index(overwrite)
        if not files:
            return IndexingReport(status="up_to_date", indexed=0, total=0)

        self._state.total_files_to_index = len(files)
        self._backend.clear_files_missing_embeddings()
        rate_limited = False

        for file in files:
            if self._state.is_cancelled:
                break
            await self._wait_while_paused()
            if self._state.is_cancelled:
                break
            try:
                await self.index_file(file)
            except Exception as exc:
                logger.error("Failed to index %s: %s", file.path, exc)
                self._state.errors.append(IndexingError(path=file.path, reason=str(exc)))
                self._backend.mark_file_missing_embeddings(file.path)
                if is_rate_limit_error(exc):
                    logger.warning("Rate limit reached, aborting indexing run")
                    rate_limited = True
                    break
                continue

            self._state.processed_files.add(file.path)
            self._state.indexed_count = len(self._state.processed_files)
            if self._on_progress is not None:
                self._on_progress(self._state.indexed_count, self._state.total_files_to_index)
            if self._state.indexed_count % self._checkpoint_interval == 0:
                await self._backend.save()
                logger.info("Index checkpoint saved after %d files", self._state.indexed_count)

        await self._backend.save()

        if rate_limited:
            status = "rate_limited"
        elif self._state.is_cancelled:
            status = "cancelled"
        else:
            status = "completed"
        return IndexingReport(
            status=status,
            indexed=self._state.indexed_count,
            total=self._state.total_files_to_index,
            errors=list(self._state.errors),
            rate_limited=rate_limited,
        )

    async def _wait_while_paused(self) -> None:
        while self._state.is_paused and not self._state.is_cancelled:
            await asyncio.sleep(self._pause_poll_interval)

    async def _get_files_to_index(self, overwrite: bool) -> list[VaultFile]:
        candidates = [
            file
            for file in self._vault.list_files()
            if self._filter.should_index(file, self._vault.get_tags)
        ]
        if overwrite:
            return candidates

        indexed = set(await self._backend.get_indexed_files())
        latest_mtime = await self._backend.get_latest_file_mtime()
        missing = self._backend.get_files_missing_embeddings()
        selected: list[VaultFile] = []
        empty = 0
        for file in candidates:
            if not self._vault.read_file(file.path).strip():
                empty += 1
                continue
            if file.path not in indexed or file.path in missing or file.mtime > latest_mtime:
                selected.append(file)
        logger.info(
            "Files to index: %d, previously indexed: %d, empty skipped: %d, missing embeddings: %d",
            len(selected),
            len(indexed),
            empty,
            len(missing),
        )
        return selected

    async def index_file(self, file: VaultFile | str) -> int:
        """Embed and store one file; nothing is kept if any chunk fails."""
        if isinstance(file, str):
            resolved = self._vault.get_file(file)
            if resolved is None:
                raise FileNotFoundError(file)
            file = resolved

        content = self._vault.read_file(file.path)
        if not content.strip():
            return 0
        tags = self._vault.get_tags(file.path)
        metadata = {
            **self._vault.get_frontmatter(file.path),
            "created": _format_time(file.ctime),
            "modified": _format_time(file.mtime),
        }
        contents = self._splitter.split(file.basename, content, metadata)
        if not contents:
            return 0

        vectors = await self._embed_chunks(contents) if self._backend.requires_embeddings else [
            [] for _ in contents
        ]
        model_id = self._embedder.model_id if self._embedder is not None else ""
        created_at = int(time.time() * 1000)
        chunks = [
            Chunk(
                id=chunk_id_for(text),
                path=file.path,
                title=file.basename,
                content=text,
                embedding=vector,
                embedding_model=model_id,
                tags=list(tags),
                extension=file.extension,
                metadata={**metadata, "chunk_index": index},
                ctime=file.ctime,
                mtime=file.mtime,
                created_at=created_at,
                nchars=len(text),
            )
            for index, (text, vector) in enumerate(zip(contents, vectors))
        ]

        await self._backend.remove_by_path(file.path)
        try:
            return await self._backend.upsert_file(file.path, chunks)
        except Exception:
            await self._backend.remove_by_path(file.path)
            raise

    async def _embed_chunks(self, contents: list[str]) -> list[list[float]]:
        if self._embedder is None:
            raise EmbeddingError("Embedding model not available")
        vectors: list[list[float]] = []
        for text in contents:
            await self._wait_while_paused()
            await self._rate_limiter.wait()
            batch = await asyncio.to_thread(self._embedder.embed_texts, [text])
            if not batch or not batch[0]:
                raise EmbeddingError("Embedding model returned an empty vector")
            if vectors and len(batch[0]) != len(vectors[0]):
                raise EmbeddingError("Embedding model returned vectors of different lengths")
            vectors.append(list(batch[0]))
        return vectors

    async def reindex_file(self, path: str) -> int:
        """Re-embed a single modified file."""
        await self._backend.remove_by_path(path)
        if self._backend.requires_embeddings and self._embedder is not None:
            await self._backend.check_and_handle_embedding_model_change(self._embedder.model_id)
        file = self._vault.get_file(path)
        if file is None or not self._filter.should_index(file, self._vault.get_tags):
            return 0
        try:
            return await self.index_file(file)
        except Exception as exc:
            logger.error("Failed to reindex %s: %s", path, exc)
            self._backend.mark_file_missing_embeddings(path)
            return 0

    async def handle_file_deleted(self, path: str) -> None:
        if await self._backend.has_index(path):
            await self._backend.remove_by_path(path)


__all__ = ["IndexingPipeline", "chunk_id_for", "DEFAULT_CHECKPOINT_INTERVAL"]
