"""Inclusion/exclusion patterns deciding which notes are indexed."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable
from urllib.parse import unquote

from domain.entities import VaultFile

_TAG_PATTERN = re.compile(r"^#[^\s#]+$")
_EXTENSION_PATTERN = re.compile(r"^\*\.([a-zA-Z0-9.]+)$")
_NOTE_PATTERN = re.compile(r"^\[\[(.*?)\]\]$")


@dataclass(slots=True)
class PatternCategories:
    tag_patterns: list[str] = field(default_factory=list)
    extension_patterns: list[str] = field(default_factory=list)
    folder_patterns: list[str] = field(default_factory=list)
    note_patterns: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.tag_patterns or self.extension_patterns or self.folder_patterns or self.note_patterns)


def parse_patterns(value: str | None) -> list[str]:
    """Split a comma separated setting into decoded, non-empty patterns."""
    if not value:
        return []
    patterns: list[str] = []
    for raw in value.split(","):
        pattern = unquote(raw.strip())
        if pattern:
            patterns.append(pattern)
    return patterns


def categorize_patterns(patterns: list[str]) -> PatternCategories:
    categories = PatternCategories()
    for pattern in patterns:
        if _TAG_PATTERN.match(pattern):
            categories.tag_patterns.append(pattern.lower())
            continue
        extension = _EXTENSION_PATTERN.match(pattern)
        if extension:
            categories.extension_patterns.append(extension.group(1).lower())
            continue
        note = _NOTE_PATTERN.match(pattern)
        if note:
            categories.note_patterns.append(note.group(1))
            continue
        categories.folder_patterns.append(pattern.strip("/"))
    return categories


def matches_patterns(file: VaultFile, tags: list[str], categories: PatternCategories) -> bool:
    lowered_tags = {tag.lower() for tag in tags}
    if any(tag in lowered_tags for tag in categories.tag_patterns):
        return True
    if file.extension in categories.extension_patterns:
        return True
    if file.basename in categories.note_patterns:
        return True
    for folder in categories.folder_patterns:
        if not folder:
            continue
        if file.path == folder or file.path.startswith(f"{folder}/"):
            return True
    return False


class PatternFilter:
    """Applies exclusion-first inclusion/exclusion rules to vault files."""

    def __init__(self, inclusions: str | None = None, exclusions: str | None = None) -> None:
        self.inclusions = categorize_patterns(parse_patterns(inclusions))
        self.exclusions = categorize_patterns(parse_patterns(exclusions))

    def should_index(self, file: VaultFile, tags_provider: Callable[[str], list[str]] | None = None) -> bool:
        tags: list[str] = []
        if tags_provider is not None and (
            self.inclusions.tag_patterns or self.exclusions.tag_patterns
        ):
            tags = tags_provider(file.path)
        if not self.exclusions.is_empty() and matches_patterns(file, tags, self.exclusions):
            return False
        if not self.inclusions.is_empty() and not matches_patterns(file, tags, self.inclusions):
            return False
        return True


__all__ = [
    "PatternCategories",
    "PatternFilter",
    "categorize_patterns",
    "matches_patterns",
    "parse_patterns",
]
