"""Embedding writer: keeps the embedding index in step with chunks and summaries.

Chunks are content-addressed, so a chunk that already has a vector for the
configured model is never embedded again. Summaries are re-embedded on every
regeneration and the superseded summary's vector is removed.
"""

from __future__ import annotations

import logging

from contextkit.db.models import Chunk, Summary
from contextkit.rag.calls import CancelToken
from contextkit.rag.index import Embedder, EmbeddingIndex

log = logging.getLogger("contextkit.ingest")


class EmbeddingWriter:
    """Embed chunks and summaries and persist their vectors.

    Args:
        index:    Embedding index for the configured embedding model.
        embedder: Client for the same model as *index*.
    """

    def __init__(self, index: EmbeddingIndex, embedder: Embedder) -> None:
        if index.model != embedder.model:
            raise ValueError(
                f"Embedding index model {index.model!r} does not match "
                f"embedder model {embedder.model!r}"
            )
        self._index = index
        self._embedder = embedder

    def write_chunks(self, chunks: list[Chunk], cancel: CancelToken | None = None) -> int:
        """Embed every chunk that has no vector yet. Returns the number written."""
        unique = list({c.chunk_id: c for c in chunks}.values())
        have = self._index.repo.embedded_ids([c.chunk_id for c in unique], self._index.model)
        pending = [c for c in unique if c.chunk_id not in have]
        if not pending:
            return 0
        vectors = self._embedder.embed([c.text for c in pending], cancel=cancel)
        for chunk, vector in zip(pending, vectors):
            self._index.index(chunk.chunk_id, vector, chunk.project_id, chunk.type)
        log.debug("indexed %d new chunk vector(s)", len(pending))
        return len(pending)

    def write_summary(
        self,
        summary: Summary,
        replaces: Summary | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        """Index *summary* under its level and drop the vector of *replaces*."""
        vector = self._embedder.embed_one(summary.text, cancel=cancel)
        self._index.index(summary.summary_id, vector, summary.project_id, summary.level)
        if replaces is not None:
            self._index.remove([replaces.summary_id])

    def remove(self, item_ids: list[str]) -> int:
        return self._index.remove(item_ids)
