"""Domain models for the contextkit database layer."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone

CHUNK_TYPES: tuple[str, ...] = ("code", "conversation", "log", "summary")
RETRIEVABLE_TYPES: tuple[str, ...] = ("code", "conversation", "log")
SUMMARY_LEVELS: tuple[str, ...] = ("file", "directory", "project")


TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> str:
    """ISO-8601 UTC timestamp with microseconds (sorts lexicographically)."""
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_ts(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def fingerprint_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def make_chunk_id(project_id: str, fingerprint: str) -> str:
    digest = hashlib.sha256(f"{project_id}\0{fingerprint}".encode("utf-8")).hexdigest()
    return f"ch_{digest[:32]}"


@dataclass(frozen=True)
class Chunk:
    chunk_id: str
    project_id: str
    source_path: str
    byte_offset: int
    token_count: int
    fingerprint: str
    type: str
    text: str
    language: str = "text"
    created_at: str = ""


@dataclass(frozen=True)
class Artifact:
    project_id: str
    path: str
    size_bytes: int
    content_hash: str
    mime_type: str = "text/plain"
    language: str = "text"
    is_binary: bool = False
    ingested_at: str = ""


@dataclass(frozen=True)
class Summary:
    summary_id: str
    project_id: str
    scope_path: str
    level: str
    text: str
    token_count: int
    source_ids: tuple[str, ...] = ()
    created_at: str = ""
    superseded_at: str | None = None

    @property
    def fingerprint(self) -> str:
        return fingerprint_text(self.text)


@dataclass(frozen=True)
class ContextPiece:
    ref_id: str
    kind: str              # chunk | summary
    token_count: int
    relevance_score: float
    rank: int
    source_path: str
    text: str
    fingerprint: str
    piece_type: str        # code | conversation | log | file | directory | project
    truncated: bool = False

    @property
    def preview(self) -> str:
        first = self.text.strip().splitlines()[0] if self.text.strip() else ""
        return first if len(first) <= 160 else first[:157] + "..."


@dataclass(frozen=True)
class ContextBundle:
    session_id: str | None
    project_id: str
    token_budget: int
    safety_margin: int
    tokens_used: int
    pieces: tuple[ContextPiece, ...] = ()
    created_at: str = field(default_factory=utcnow)
    warnings: tuple[str, ...] = ()
    budget_exceeded: bool = False
    cached_piece_ids: tuple[str, ...] = ()

    @property
    def available(self) -> int:
        return max(0, self.token_budget - self.safety_margin)

    @property
    def ids(self) -> list[str]:
        return [p.ref_id for p in self.pieces]

    def chunk_pieces(self) -> list[ContextPiece]:
        return [p for p in self.pieces if p.kind == "chunk"]


@dataclass(frozen=True)
class ModelCallRecord:
    call_id: str
    session_id: str | None
    model: str
    phase: str
    status: str                 # ok | error | cancelled | fallback
    prompt_tokens: int = 0
    completion_tokens: int = 0
    chunk_ids_used: frozenset[str] = frozenset()
    timestamp: str = field(default_factory=utcnow)
    error: str | None = None
