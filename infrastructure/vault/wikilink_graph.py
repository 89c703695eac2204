"""Граф ссылок между заметками, построенный по ``[[wikilinks]]``."""
from __future__ import annotations

import logging

from application.services.note_references import extract_note_references, resolve_note_files
from domain.interfaces import LinkGraph, VaultFileSystem

logger = logging.getLogger(__name__)


class WikiLinkGraph(LinkGraph):
    """Строит исходящие ссылки и обратные ссылки для всех заметок хранилища."""

    def __init__(self, vault: VaultFileSystem) -> None:
        self._vault = vault
        self._outgoing: dict[str, list[str]] | None = None
        self._incoming: dict[str, list[str]] = {}

    def refresh(self) -> None:
        files = self._vault.list_files()
        outgoing: dict[str, list[str]] = {}
        incoming: dict[str, list[str]] = {}
        for file in files:
            try:
                text = self._vault.read_file(file.path)
            except OSError:
                logger.warning("Не удалось прочитать заметку %s", file.path)
                continue
            targets = [
                target.path
                for target in resolve_note_files(extract_note_references(text), files)
                if target.path != file.path
            ]
            outgoing[file.path] = targets
            for target in targets:
                incoming.setdefault(target, []).append(file.path)
        self._outgoing = outgoing
        self._incoming = incoming
        logger.debug("Граф ссылок обновлён: %d заметок", len(outgoing))

    def _ensure(self) -> dict[str, list[str]]:
        if self._outgoing is None:
            self.refresh()
        assert self._outgoing is not None
        return self._outgoing

    def get_linked_notes(self, path: str) -> list[str]:
        return list(self._ensure().get(path, []))

    def get_backlinked_notes(self, path: str) -> list[str]:
        self._ensure()
        return list(self._incoming.get(path, []))


__all__ = ["WikiLinkGraph"]
