"""Source file chunker: sliding window over whole files."""

from __future__ import annotations

from contextkit.ingest.base import BaseChunker, Segment


class SourceChunker(BaseChunker):
    """Split a code or text file into overlapping line-aligned windows.

    Default: 1,024 tokens / 256 tokens overlap.
    """

    def chunk(self, content: str, path: str = "") -> list[Segment]:
        if not content.strip():
            return []
        return self._split_window(content)
