"""HTTP клиент внешнего сервиса гибридного поиска."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Sequence

import requests

from domain.errors import RemoteApiError, RemoteNetworkError, RemoteTimeoutError

logger = logging.getLogger(__name__)

API_PREFIX = "/v0"
DEFAULT_TIMEOUT_MS = 30_000
MAX_FILES_PAGE = 200


@dataclass(slots=True)
class RemoteSearchConfig:
    base_url: str = "http://127.0.0.1:8742"
    api_key: str | None = None
    source_id: str | None = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS


class RemoteSearchClient:
    """Синхронный JSON клиент: /search, /search/related, /ingest, /delete, /files, /health."""

    def __init__(self, config: RemoteSearchConfig) -> None:
        self._config = config
        self._base_url = config.base_url.rstrip("/")

    @property
    def source_id(self) -> str | None:
        return self._config.source_id

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}{API_PREFIX}{path}"
        query = {key: value for key, value in (params or {}).items() if value is not None} or None
        try:
            response = requests.request(
                method,
                url,
                headers=self._headers(),
                json=body,
                params=query,
                timeout=self._config.timeout_ms / 1000,
            )
        except requests.Timeout as exc:
            raise RemoteTimeoutError(f"Request timeout after {self._config.timeout_ms}ms") from exc
        except requests.RequestException as exc:
            raise RemoteNetworkError(f"Network error: {exc}") from exc

        if not response.ok:
            try:
                error_body: Any = response.json()
            except ValueError:
                error_body = response.text
            logger.warning("Сервис поиска вернул %s для %s %s", response.status_code, method, path)
            raise RemoteApiError(response.status_code, error_body)
        if not response.content:
            return {}
        return response.json()

    def health(self) -> dict[str, Any]:
        return self._request("GET", "/health")

    def is_available(self) -> bool:
        try:
            health = self.health()
        except (RemoteApiError, RemoteNetworkError, RemoteTimeoutError) as exc:
            logger.info("Сервис поиска недоступен: %s", exc)
            return False
        return health.get("status") == "ok" and health.get("qdrant") == "connected"

    def search(
        self,
        query: str,
        *,
        limit: int = 10,
        filters: Sequence[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        logger.info("Поиск во внешнем сервисе: %r", query[:50])
        body: dict[str, Any] = {"query": query, "limit": limit}
        if filters:
            body["filters"] = list(filters)
        return self._request("POST", "/search", body=body)

    def search_related(
        self,
        file_path: str,
        *,
        limit: int | None = None,
        filters: Sequence[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        """Чанки, похожие на уже проиндексированную заметку ``file_path``."""
        body: dict[str, Any] = {"file_path": file_path}
        if self._config.source_id:
            body["source_id"] = self._config.source_id
        if limit is not None:
            body["limit"] = limit
        if filters:
            body["filters"] = list(filters)
        return self._request("POST", "/search/related", body=body)

    def ingest(self, file: str, *, force: bool = False, source_id: str | None = None) -> dict[str, Any]:
        body = {"file": file, "force": force, "source_id": source_id or self._config.source_id}
        return self._request("POST", "/ingest", body=body)

    def ingest_chunks(
        self,
        file: str,
        chunks: Sequence[str],
        *,
        force: bool = False,
        source_id: str | None = None,
    ) -> dict[str, Any]:
        body = {
            "file": file,
            "chunks": list(chunks),
            "force": force,
            "source_id": source_id or self._config.source_id,
        }
        return self._request("POST", "/ingest", body=body)

    def ingest_batch(
        self,
        files: Sequence[str],
        *,
        force: bool = False,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        for position, file in enumerate(files, start=1):
            try:
                results.append(self.ingest(file, force=force))
            except (RemoteApiError, RemoteNetworkError, RemoteTimeoutError) as exc:
                logger.error("Не удалось отправить %s: %s", file, exc)
                results.append({"status": "error", "action": "failed", "file_path": file, "error": str(exc)})
            if on_progress is not None:
                on_progress(position, len(files))
        return results

    def delete(
        self,
        *,
        file_path: str | None = None,
        file_paths: Sequence[str] | None = None,
        filter: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if file_path is None and not file_paths and filter is None:
            raise ValueError("Provide file_path, file_paths or filter")
        body: dict[str, Any] = {}
        if file_path is not None:
            body["file_path"] = file_path
        if file_paths:
            body["file_paths"] = list(file_paths)
        if filter is not None:
            body["filter"] = filter
        return self._request("POST", "/delete", body=body)

    def list_files(
        self,
        *,
        search: str | None = None,
        offset: int = 0,
        limit: int = 50,
        source_id: str | None = None,
    ) -> dict[str, Any]:
        params = {
            "source_id": source_id or self._config.source_id,
            "search": search,
            "offset": offset,
            "limit": min(limit, MAX_FILES_PAGE),
        }
        return self._request("GET", "/files", params=params)

    def get_all_indexed_files(self) -> list[str]:
        paths: list[str] = []
        offset = 0
        while True:
            page = self.list_files(offset=offset, limit=MAX_FILES_PAGE)
            paths.extend(item["file_path"] for item in page.get("files", []))
            if not page.get("has_more"):
                return paths
            offset += MAX_FILES_PAGE

    def is_file_indexed(self, path: str) -> bool:
        page = self.list_files(search=path, limit=1)
        return any(item.get("file_path") == path for item in page.get("files", []))


__all__ = ["RemoteSearchClient", "RemoteSearchConfig", "DEFAULT_TIMEOUT_MS"]
