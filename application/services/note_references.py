"""Parsing of ``[[note]]`` references and ``#tags`` in free text."""
from __future__ import annotations

import re
from typing import Iterable

from domain.entities import VaultFile

_WIKILINK_RE = re.compile(r"\[\[([^\[\]]+?)\]\]")
_TAG_RE = re.compile(r"(?<![\w#])#([^\s#\[\](){},;:!?\"']+)")


def extract_note_references(text: str) -> list[str]:
    """Return referenced note names in order of appearance, without aliases or headings."""
    references: list[str] = []
    for match in _WIKILINK_RE.finditer(text):
        target = match.group(1).split("|", 1)[0].split("#", 1)[0].strip()
        if target and target not in references:
            references.append(target)
    return references


def extract_tags(text: str) -> list[str]:
    tags: list[str] = []
    for match in _TAG_RE.finditer(text):
        tag = f"#{match.group(1).rstrip('.').lower()}"
        if len(tag) > 1 and tag not in tags:
            tags.append(tag)
    return tags


def resolve_note_files(references: Iterable[str], files: Iterable[VaultFile]) -> list[VaultFile]:
    """Match references against file paths first, then against basenames."""
    files = list(files)
    by_path = {file.path: file for file in files}
    by_path.update({file.path.rsplit(".", 1)[0]: file for file in files if "." in file.path})
    resolved: list[VaultFile] = []
    for reference in references:
        matches = [by_path[reference]] if reference in by_path else [
            file for file in files if file.basename == reference
        ]
        for file in matches:
            if file not in resolved:
                resolved.append(file)
    return resolved


__all__ = ["extract_note_references", "extract_tags", "resolve_note_files"]
