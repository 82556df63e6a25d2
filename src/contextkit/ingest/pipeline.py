"""Ingestion trigger: normalise → chunk → store → embed → summarise.

Writes to one ``(project, path)`` are serialised by a per-path lock held across
chunking, re-embedding and summary regeneration. Different paths ingest in
parallel under ingest_many().
"""

from __future__ import annotations

import hashlib
import logging
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from contextkit.db.models import Artifact, Chunk, utcnow
from contextkit.db.store import ChunkStore
from contextkit.ingest.base import BaseChunker
from contextkit.ingest.detect import (
    BINARY_SIZE_LIMIT,
    detect_language,
    detect_mime_type,
    is_binary,
    normalize_content,
)
from contextkit.ingest.embedding_writer import EmbeddingWriter
from contextkit.ingest.source import SourceChunker
from contextkit.ingest.stream import StreamChunker
from contextkit.ingest.summarizer import HierarchicalSummarizer, directory_of
from contextkit.rag.calls import CancelToken

log = logging.getLogger("contextkit.ingest")

_STREAM_TYPES = ("conversation", "log")
INGEST_TYPES: tuple[str, ...] = ("code", *_STREAM_TYPES)


@dataclass(frozen=True)
class IngestResult:
    """Outcome of ingesting one path or one appended stream block."""

    project_id: str
    path: str
    type: str
    chunk_ids: tuple[str, ...] = ()
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    is_binary: bool = False
    changed: bool = True


class IngestPipeline:
    """Drive chunking, storage, embedding and summarisation for incoming text.

    Args:
        store:      Chunk store (owns token counting and path membership).
        writer:     Embedding writer for new chunks.
        summarizer: Hierarchical summarizer, or None to skip summaries.
        chunk_size: Window size in tokens.
        overlap:    Window overlap in tokens.
        binary_size_limit: Larger inputs are stored as metadata only.
        max_workers: Thread count for ingest_many().
    """

    def __init__(
        self,
        store: ChunkStore,
        writer: EmbeddingWriter,
        summarizer: HierarchicalSummarizer | None = None,
        chunk_size: int = 1_024,
        overlap: int = 256,
        binary_size_limit: int = BINARY_SIZE_LIMIT,
        max_workers: int = 4,
    ) -> None:
        self.store = store
        self.writer = writer
        self.summarizer = summarizer
        self.binary_size_limit = binary_size_limit
        self.max_workers = max_workers
        count = store.tokenizer.counter(store.model_id)
        self._chunkers: dict[str, BaseChunker] = {
            "code": SourceChunker(count, chunk_size, overlap),
            "conversation": StreamChunker(count, chunk_size, overlap, kind="conversation"),
            "log": StreamChunker(count, chunk_size, overlap, kind="log"),
        }
        self._locks: defaultdict[tuple[str, str], threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def ingest(
        self,
        project_id: str,
        path: str,
        raw_text: str | bytes,
        type: str = "code",  # noqa: A002
        cancel: CancelToken | None = None,
    ) -> IngestResult:
        """Ingest one file version, or append one conversation / log block.

        Raises:
            ValueError: Unknown *type* or empty identifiers.
            ChunkTooLargeError: Propagated from the store.
        """
        if type not in INGEST_TYPES:
            raise ValueError(f"Unknown ingest type {type!r}; expected one of {INGEST_TYPES}")
        if not project_id or not path:
            raise ValueError("project_id and path are required")

        with self._path_lock(project_id, path):
            if type in _STREAM_TYPES:
                result = self._append_stream(project_id, path, raw_text, type, cancel)
            else:
                result = self._ingest_file(project_id, path, raw_text, cancel)
        if self.summarizer is not None:
            self.summarizer.run_due()
        return result

    def ingest_many(
        self,
        project_id: str,
        items: list[tuple[str, str | bytes, str]],
        cancel: CancelToken | None = None,
        flush_summaries: bool = True,
    ) -> list[IngestResult]:
        """Ingest ``(path, raw_text, type)`` items in parallel, preserving input order."""
        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="contextkit-ingest"
        ) as pool:
            futures = [
                pool.submit(self.ingest, project_id, path, raw, kind, cancel)
                for path, raw, kind in items
            ]
            results = [f.result() for f in futures]
        if flush_summaries and self.summarizer is not None:
            self.summarizer.flush(project_id)
        return results

    def delete_project(self, project_id: str) -> None:
        """Remove all chunks, summaries, vectors and artifacts of *project_id*."""
        self.store.repo.delete_project(project_id)
        log.info("deleted project %s", project_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _path_lock(self, project_id: str, path: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[(project_id, path)]

    def _ingest_file(
        self,
        project_id: str,
        path: str,
        raw: str | bytes,
        cancel: CancelToken | None,
    ) -> IngestResult:
        raw_bytes = raw if isinstance(raw, bytes) else raw.encode("utf-8")
        binary = is_binary(raw, self.binary_size_limit)
        previous = [c.chunk_id for c in self.store.list_chunks_for_path(project_id, path)]

        if binary:
            self._record_artifact(project_id, path, raw_bytes, binary=True)
            if previous:
                self.store.set_path_chunks(project_id, path, [])
                self._summarize(project_id, path, [])
            log.info("stored %s/%s as binary metadata only", project_id, path)
            return IngestResult(
                project_id, path, "code", removed=tuple(previous), is_binary=True,
                changed=bool(previous),
            )

        text = normalize_content(_decode(raw))
        language = detect_language(path)
        placed = self._store_segments(project_id, path, text, "code", language)
        chunks = [c for c, _ in placed]
        ids = [c.chunk_id for c in chunks]
        self._record_artifact(project_id, path, raw_bytes, binary=False, language=language)

        if ids == previous:
            if not self._summaries_stale(project_id, path, ids):
                return IngestResult(project_id, path, "code", tuple(ids), changed=False)
            log.info("rebuilding stale summaries for unchanged %s/%s", project_id, path)
            self._summarize(project_id, path, chunks)
            return IngestResult(project_id, path, "code", tuple(ids))

        self.writer.write_chunks(chunks, cancel=cancel)
        added, removed = self.store.set_path_chunks(project_id, path, placed)
        self._summarize(project_id, path, chunks)
        log.info(
            "ingested %s/%s: %d chunk(s), %d new, %d retired",
            project_id, path, len(ids), len(added), len(removed),
        )
        return IngestResult(project_id, path, "code", tuple(ids), tuple(added), tuple(removed))

    def _append_stream(
        self,
        project_id: str,
        path: str,
        raw: str | bytes,
        kind: str,
        cancel: CancelToken | None,
    ) -> IngestResult:
        text = normalize_content(_decode(raw))
        # blocks are laid end to end, one newline apart
        end = self.store.repo.path_end_offset(project_id, path)
        base = end + 1 if end else 0
        placed = self._store_segments(project_id, path, text, kind, "text", base)
        if not placed:
            return IngestResult(project_id, path, kind, changed=False)
        chunks = [c for c, _ in placed]
        self.writer.write_chunks(chunks, cancel=cancel)
        self.store.append_path_chunks(project_id, path, placed)
        ids = tuple(c.chunk_id for c in chunks)
        log.info("appended %d %s chunk(s) to %s/%s", len(ids), kind, project_id, path)
        return IngestResult(project_id, path, kind, ids, added=ids)

    def _store_segments(
        self,
        project_id: str,
        path: str,
        text: str,
        kind: str,
        language: str,
        base_offset: int = 0,
    ) -> list[tuple[Chunk, int]]:
        placed = []
        for seg in self._chunkers[kind].chunk(text, path):
            offset = base_offset + seg.byte_offset
            chunk = self.store.put_chunk(project_id, path, offset, seg.text, kind, language)
            placed.append((chunk, offset))
        return placed

    def _record_artifact(
        self,
        project_id: str,
        path: str,
        raw: bytes,
        binary: bool,
        language: str = "text",
    ) -> None:
        self.store.repo.upsert_artifact(
            Artifact(
                project_id=project_id,
                path=path,
                size_bytes=len(raw),
                content_hash=hashlib.sha256(raw).hexdigest(),
                mime_type=detect_mime_type(path, binary),
                language="binary" if binary else language,
                is_binary=binary,
                ingested_at=utcnow(),
            )
        )

    def _summarize(self, project_id: str, path: str, chunks: list[Chunk]) -> None:
        if self.summarizer is not None:
            self.summarizer.on_file_changed(project_id, path, chunks)

    def _summaries_stale(self, project_id: str, path: str, ids: list[str]) -> bool:
        """True when an earlier cascade for *path* did not finish.

        The file summary must cover exactly *ids* and be listed by the live
        directory summary.
        """
        if self.summarizer is None or not ids:
            return False
        repo = self.store.repo
        file_summary = repo.current_summary(project_id, "file", path)
        if file_summary is None or file_summary.source_ids != tuple(ids):
            return True
        dir_summary = repo.current_summary(project_id, "directory", directory_of(path))
        return dir_summary is None or file_summary.summary_id not in dir_summary.source_ids


def _decode(raw: str | bytes) -> str:
    return raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
