"""Conversation and log chunker for append-only streams."""

from __future__ import annotations

import re

from contextkit.ingest.base import BaseChunker, Segment

_BLANK_LINES_RE = re.compile(r"\n\s*\n")


class StreamChunker(BaseChunker):
    """Chunk one appended block of a conversation or log stream.

    A conversation block is a single turn and stays whole unless it is larger
    than the window. Log blocks are split into blank-line separated records,
    each windowed on its own.
    """

    def __init__(self, *args, kind: str = "conversation", **kwargs) -> None:
        super().__init__(*args, **kwargs)
        if kind not in ("conversation", "log"):
            raise ValueError(f"StreamChunker kind must be 'conversation' or 'log', got {kind!r}")
        self.kind = kind

    def chunk(self, content: str, path: str = "") -> list[Segment]:
        if not content.strip():
            return []
        if self.kind == "conversation":
            return self._split_window(content)

        segments: list[Segment] = []
        pos = 0
        for match in _BLANK_LINES_RE.finditer(content):
            segments.extend(self._record(content[pos : match.start()], content, pos))
            pos = match.end()
        segments.extend(self._record(content[pos:], content, pos))
        return segments

    def _record(self, record: str, content: str, char_pos: int) -> list[Segment]:
        if not record.strip():
            return []
        base = len(content[:char_pos].encode("utf-8"))
        return self._split_window(record, base_offset=base)
