"""Index backend that ingests chunks into the external search service."""
from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Sequence

from domain.entities import Chunk
from domain.interfaces import IndexBackend
from infrastructure.remote.remote_search_client import MAX_FILES_PAGE, RemoteSearchClient

logger = logging.getLogger(__name__)


class RemoteIndexBackend(IndexBackend):
    """The remote service embeds on its side, so chunks are sent as plain text."""

    requires_embeddings = False

    def __init__(self, client: RemoteSearchClient) -> None:
        self._client = client
        self._missing_embeddings: set[str] = set()

    async def initialize(self) -> None:
        if not await asyncio.to_thread(self._client.is_available):
            logger.warning("Remote search service is not available")

    async def clear_index(self) -> None:
        paths = await self.get_indexed_files()
        if paths:
            await asyncio.to_thread(self._client.delete, file_paths=paths)

    async def upsert_file(self, path: str, chunks: Sequence[Chunk]) -> int:
        if not chunks:
            return 0
        response = await asyncio.to_thread(
            self._client.ingest_chunks, path, [chunk.content for chunk in chunks], force=True
        )
        if response.get("status") == "error":
            raise RuntimeError(response.get("error") or f"Remote ingest failed for {path}")
        return int(response.get("chunks_created") or len(chunks))

    async def remove_by_path(self, path: str) -> None:
        await asyncio.to_thread(self._client.delete, file_path=path)

    async def garbage_collect(self, live_paths: Iterable[str]) -> int:
        live = set(live_paths)
        doomed = [path for path in await self.get_indexed_files() if path not in live]
        if doomed:
            await asyncio.to_thread(self._client.delete, file_paths=doomed)
            logger.info("Removed %d stale files from the remote index", len(doomed))
        return len(doomed)

    async def get_indexed_files(self) -> list[str]:
        return sorted(set(await asyncio.to_thread(self._client.get_all_indexed_files)))

    async def has_index(self, path: str) -> bool:
        return await asyncio.to_thread(self._client.is_file_indexed, path)

    async def get_latest_file_mtime(self) -> int:
        latest = 0
        offset = 0
        while True:
            page = await asyncio.to_thread(self._client.list_files, offset=offset, limit=MAX_FILES_PAGE)
            for item in page.get("files", []):
                latest = max(latest, int(item.get("indexed_at") or 0))
            if not page.get("has_more"):
                return latest
            offset += MAX_FILES_PAGE

    async def check_and_handle_embedding_model_change(self, model_name: str) -> bool:
        return False

    async def save(self) -> None:
        return None

    def mark_file_missing_embeddings(self, path: str) -> None:
        self._missing_embeddings.add(path)

    def get_files_missing_embeddings(self) -> set[str]:
        return set(self._missing_embeddings)

    def clear_files_missing_embeddings(self) -> None:
        self._missing_embeddings.clear()


__all__ = ["RemoteIndexBackend"]
