"""Chunk splitter that uses a fixed-size sliding window."""
from __future__ import annotations

import json
from typing import Any

from domain.interfaces import ChunkSplitter


def build_chunk_header(title: str, metadata: dict[str, Any]) -> str:
    metadata_json = json.dumps(metadata, ensure_ascii=False, default=str)
    return f"NOTE TITLE: [[{title}]]\n\nMETADATA:{metadata_json}\n\nNOTE BLOCK CONTENT:\n\n"


class FixedWindowSplitter(ChunkSplitter):
    """Split notes using a fixed-size window and overlap, prefixing each chunk with a header."""

    def __init__(self, window_size: int = 6000, overlap: int = 600) -> None:
        if overlap >= window_size:
            raise ValueError("overlap must be smaller than window_size")
        self.window_size = window_size
        self.stride = window_size - overlap

    def windows(self, text: str) -> list[str]:
        fragments: list[str] = []
        for start in range(0, len(text), self.stride):
            fragment = text[start : start + self.window_size]
            if not fragment:
                break
            if fragment.strip():
                fragments.append(fragment)
            if start + self.window_size >= len(text):
                break
        return fragments

    def split(self, title: str, text: str, metadata: dict[str, Any] | None = None) -> list[str]:
        chunks: list[str] = []
        for index, fragment in enumerate(self.windows(text)):
            chunk_metadata = dict(metadata or {})
            chunk_metadata["chunk_index"] = index
            chunks.append(build_chunk_header(title, chunk_metadata) + fragment)
        return chunks


__all__ = ["FixedWindowSplitter", "build_chunk_header"]
