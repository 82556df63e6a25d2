"""Base chunker interface and the token-measured sliding window."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

from contextkit.config import MAX_OVERLAP_TOKENS, MIN_OVERLAP_TOKENS

_WORD_RE = re.compile(r"\S+\s*|\s+")


@dataclass(frozen=True)
class Segment:
    """A slice of normalised source text and its UTF-8 byte offset."""

    text: str
    byte_offset: int


@dataclass(frozen=True)
class _Unit:
    text: str
    byte_offset: int
    tokens: int


class BaseChunker(ABC):
    """Abstract base for all chunkers.

    Windows are measured with *count_tokens*, the tokenizer of the model that
    will eventually read the text, and always end on a line boundary. Adjacent
    windows share up to *overlap* tokens of trailing lines; when whole lines
    cannot carry the minimum overlap, the next window starts inside the last
    line, at a word boundary.

    Args:
        count_tokens: One-argument token counter.
        chunk_size: Window size in tokens.
        overlap: Tokens repeated between adjacent windows, in [128, 512].
    """

    def __init__(
        self,
        count_tokens: Callable[[str], int],
        chunk_size: int = 1_024,
        overlap: int = 256,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if not MIN_OVERLAP_TOKENS <= overlap <= MAX_OVERLAP_TOKENS:
            raise ValueError(
                f"overlap must be in [{MIN_OVERLAP_TOKENS}, {MAX_OVERLAP_TOKENS}] tokens"
            )
        if overlap >= chunk_size:
            raise ValueError("overlap must be smaller than chunk_size")
        self.count_tokens = count_tokens
        self.chunk_size = chunk_size
        self.overlap = overlap

    @abstractmethod
    def chunk(self, content: str, path: str = "") -> list[Segment]:
        """Split normalised *content* into ordered segments.

        Args:
            content: Normalised text of one source or one appended block.
            path: Source path, for subclasses that vary by file type.
        """

    def _split_window(self, text: str, base_offset: int = 0) -> list[Segment]:
        """Sliding token window over the lines of *text*."""
        units = self._units(text, base_offset)
        if not units:
            return []

        segments: list[Segment] = []
        start = 0
        n = len(units)
        while start < n:
            end = start
            total = 0
            while end < n and (end == start or total + units[end].tokens <= self.chunk_size):
                total += units[end].tokens
                end += 1
            body = "".join(u.text for u in units[start:end]).rstrip("\n")
            if body.strip():
                segments.append(Segment(body, units[start].byte_offset))
            if end >= n:
                break
            back = end
            carried = 0
            while back - 1 > start and carried + units[back - 1].tokens <= self.overlap:
                back -= 1
                carried += units[back].tokens
            if carried < MIN_OVERLAP_TOKENS:
                # lines too long to carry whole: share the tail words of the last one
                budget = min(self.overlap, self.chunk_size - units[end].tokens) - carried
                split = self._split_tail(units[back - 1], budget) if budget > 0 else None
                if split is not None:
                    units[back - 1 : back] = split
                    n += 1
            start = back
        return segments

    def _units(self, text: str, base_offset: int) -> list[_Unit]:
        """Lines of *text*, with any line over the window split at word boundaries."""
        units: list[_Unit] = []
        offset = base_offset
        for line in text.splitlines(keepends=True):
            tokens = self.count_tokens(line)
            if tokens <= self.chunk_size:
                units.append(_Unit(line, offset, tokens))
            else:
                units.extend(self._split_long_line(line, offset))
            offset += len(line.encode("utf-8"))
        return units

    def _split_long_line(self, line: str, offset: int) -> list[_Unit]:
        # pieces leave room for the carried overlap next to them
        cap = self.chunk_size - self.overlap
        pieces: list[_Unit] = []
        current = ""
        current_tokens = 0
        start = offset
        for word in _WORD_RE.findall(line):
            for part in self._fit_word(word):
                part_tokens = self.count_tokens(part)
                if current and current_tokens + part_tokens > cap:
                    pieces.append(_Unit(current, start, current_tokens))
                    start += len(current.encode("utf-8"))
                    current, current_tokens = "", 0
                current += part
                current_tokens += part_tokens
        if current:
            pieces.append(_Unit(current, start, current_tokens))
        return pieces

    def _split_tail(self, unit: _Unit, budget: int) -> list[_Unit] | None:
        """Cut *unit* into head and tail, the tail being the words that fit *budget*.

        Returns None when no proper tail fits.
        """
        words = _WORD_RE.findall(unit.text)
        cut = len(words)
        taken = 0
        while cut > 1 and taken + self.count_tokens(words[cut - 1]) <= budget:
            cut -= 1
            taken += self.count_tokens(words[cut])
        if cut == len(words):
            return None
        head = "".join(words[:cut])
        tail = "".join(words[cut:])
        return [
            _Unit(head, unit.byte_offset, self.count_tokens(head)),
            _Unit(tail, unit.byte_offset + len(head.encode("utf-8")), self.count_tokens(tail)),
        ]

    def _fit_word(self, word: str) -> list[str]:
        """Cut a single word that alone exceeds the window into character slices."""
        tokens = self.count_tokens(word)
        if tokens <= self.chunk_size:
            return [word]
        width = max(1, len(word) * self.chunk_size // tokens)
        while width > 1 and self.count_tokens(word[:width]) > self.chunk_size:
            width //= 2
        return [word[i : i + width] for i in range(0, len(word), width)]
