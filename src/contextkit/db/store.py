"""Chunk store: content-addressed, immutable chunk records plus path membership."""

from __future__ import annotations

import logging

from contextkit.db.models import CHUNK_TYPES, Chunk, fingerprint_text, make_chunk_id, utcnow
from contextkit.db.repository import Repository
from contextkit.errors import ChunkTooLargeError, NotFoundError
from contextkit.rag.tokenizer import TokenizerAdapter

log = logging.getLogger("contextkit.store")

MAX_CHUNK_TOKENS = 8_000


class ChunkStore:
    """Idempotent chunk persistence on top of :class:`Repository`.

    Token counts are measured once here, with the tokenizer of *model_id*, and
    stored on the chunk so the assembler never re-counts stored text.

    Args:
        repo: Open repository.
        tokenizer: Adapter used to measure chunk size.
        model_id: Tokenizer model; defaults to the adapter's default model.
        max_chunk_tokens: Hard per-chunk ceiling. Callers must pre-split.
    """

    def __init__(
        self,
        repo: Repository,
        tokenizer: TokenizerAdapter,
        model_id: str | None = None,
        max_chunk_tokens: int = MAX_CHUNK_TOKENS,
    ) -> None:
        self.repo = repo
        self.tokenizer = tokenizer
        self.model_id = model_id
        self.max_chunk_tokens = max_chunk_tokens

    def put_chunk(
        self,
        project_id: str,
        path: str,
        offset: int,
        text: str,
        type: str,  # noqa: A002
        language: str = "text",
    ) -> Chunk:
        """Store *text* as a chunk and return the stored record.

        Storing the same text twice in a project returns the first record
        unchanged, including its original ``source_path`` and ``byte_offset``.

        Raises:
            ValueError: Unknown chunk type or empty text.
            ChunkTooLargeError: Text is over ``max_chunk_tokens``.
        """
        if type not in CHUNK_TYPES:
            raise ValueError(f"Unknown chunk type {type!r}; expected one of {CHUNK_TYPES}")
        if not text:
            raise ValueError("Chunk text must not be empty")

        fingerprint = fingerprint_text(text)
        existing = self.repo.find_chunk_by_fingerprint(project_id, fingerprint)
        if existing is not None:
            return existing

        tokens = self.tokenizer.count_tokens(text, self.model_id)
        if tokens > self.max_chunk_tokens:
            raise ChunkTooLargeError(tokens, self.max_chunk_tokens)

        chunk = Chunk(
            chunk_id=make_chunk_id(project_id, fingerprint),
            project_id=project_id,
            source_path=path,
            byte_offset=offset,
            token_count=tokens,
            fingerprint=fingerprint,
            type=type,
            text=text,
            language=language,
            created_at=utcnow(),
        )
        return self.repo.insert_chunk(chunk)

    def get_chunk(self, chunk_id: str) -> Chunk:
        """Return the chunk with *chunk_id*.

        Raises:
            NotFoundError: No such chunk.
        """
        chunk = self.repo.get_chunk(chunk_id)
        if chunk is None:
            raise NotFoundError("chunk", chunk_id)
        return chunk

    def list_chunks_for_path(self, project_id: str, path: str) -> list[Chunk]:
        """Live chunks of *path* in document order."""
        return self.repo.list_chunks_for_path(project_id, path)

    def set_path_chunks(
        self, project_id: str, path: str, placed: list[tuple[Chunk, int]]
    ) -> tuple[list[str], list[str]]:
        """Make *placed* the live chunk list of *path*, superseding the old one.

        Args:
            placed: ``(chunk, byte_offset)`` pairs; the offset is where the
                text sits in *this* path, which differs from the stored
                ``byte_offset`` for chunks first seen elsewhere.

        Returns:
            ``(added, removed)`` chunk ids.
        """
        added, removed = self.repo.replace_path_refs(
            project_id, path, [(c.chunk_id, off) for c, off in placed], utcnow()
        )
        log.debug(
            "path %s/%s: %d chunk(s) added, %d removed", project_id, path, len(added), len(removed)
        )
        return added, removed

    def append_path_chunks(
        self, project_id: str, path: str, placed: list[tuple[Chunk, int]]
    ) -> None:
        """Extend the live chunk list of a conversation or log stream."""
        self.repo.append_path_refs(
            project_id, path, [(c.chunk_id, off) for c, off in placed], utcnow()
        )

    def stats(self, project_id: str) -> dict[str, float]:
        return self.repo.chunk_stats(project_id)
