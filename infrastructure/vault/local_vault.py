"""Файловое хранилище заметок (vault) на локальном диске."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable

import yaml

from application.services.note_references import extract_tags
from domain.entities import VaultFile
from domain.interfaces import VaultFileSystem

logger = logging.getLogger(__name__)


def split_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    """Отделить YAML-заголовок ``---`` от тела заметки.

    Значения приводятся к JSON-совместимым: даты становятся ISO-строками.
    """
    if not text.startswith("---"):
        return {}, text
    lines = text.splitlines()
    if not lines or lines[0].strip() != "---":
        return {}, text
    for end, line in enumerate(lines[1:], start=1):
        if line.strip() == "---":
            break
    else:
        return {}, text

    body = "\n".join(lines[end + 1 :])
    try:
        properties = yaml.safe_load("\n".join(lines[1:end]))
    except yaml.YAMLError:
        logger.warning("Некорректный YAML во frontmatter, заголовок пропущен")
        return {}, body
    if not isinstance(properties, dict):
        return {}, body
    return json.loads(json.dumps(properties, default=str)), body


class LocalVault(VaultFileSystem):
    """Отдаёт заметки из директории; пути относительные, с разделителем ``/``."""

    def __init__(self, root: str | Path, extensions: Iterable[str] = (".md",)) -> None:
        self._root = Path(root)
        self._extensions = {extension.lower() for extension in extensions}

    @property
    def root(self) -> Path:
        return self._root

    def _absolute(self, path: str) -> Path | None:
        """Путь заметки внутри vault; ``None`` для путей наружу и чужих расширений."""
        root = self._root.resolve()
        absolute = (root / Path(path)).resolve()
        if not absolute.is_relative_to(root):
            logger.warning("Путь %s указывает за пределы vault", path)
            return None
        if absolute.suffix.lower() not in self._extensions:
            return None
        return absolute

    def _to_vault_file(self, absolute: Path, base: Path) -> VaultFile:
        stat = absolute.stat()
        return VaultFile(
            path=absolute.relative_to(base).as_posix(),
            mtime=int(stat.st_mtime * 1000),
            ctime=int(stat.st_ctime * 1000),
            size=stat.st_size,
        )

    def list_files(self) -> list[VaultFile]:
        if not self._root.exists():
            return []
        files: list[VaultFile] = []
        for file_path in sorted(self._root.rglob("*")):
            if not file_path.is_file() or file_path.suffix.lower() not in self._extensions:
                continue
            if any(part.startswith(".") for part in file_path.relative_to(self._root).parts):
                continue
            files.append(self._to_vault_file(file_path, self._root))
        return files

    def read_file(self, path: str) -> str:
        absolute = self._absolute(path)
        if absolute is None:
            raise FileNotFoundError(path)
        return absolute.read_text(encoding="utf-8")

    def file_exists(self, path: str) -> bool:
        absolute = self._absolute(path)
        return absolute is not None and absolute.is_file()

    def get_file(self, path: str) -> VaultFile | None:
        absolute = self._absolute(path)
        if absolute is None or not absolute.is_file():
            return None
        return self._to_vault_file(absolute, self._root.resolve())

    def get_frontmatter(self, path: str) -> dict[str, Any]:
        try:
            properties, _ = split_frontmatter(self.read_file(path))
        except OSError:
            logger.warning("Не удалось прочитать заметку %s", path)
            return {}
        return properties

    def get_tags(self, path: str) -> list[str]:
        try:
            properties, body = split_frontmatter(self.read_file(path))
        except OSError:
            logger.warning("Не удалось прочитать заметку %s", path)
            return []
        raw = properties.get("tags") or []
        if isinstance(raw, str):
            raw = [item for item in raw.replace(",", " ").split() if item]
        tags = [f"#{str(tag).lstrip('#').lower()}" for tag in raw]
        for tag in extract_tags(body):
            if tag not in tags:
                tags.append(tag)
        return tags


__all__ = ["LocalVault", "split_frontmatter"]
