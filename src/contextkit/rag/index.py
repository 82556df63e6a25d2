"""Embedding index: per-model cosine search over chunks and summaries.

Vectors are stored with sqlite-vec's float32 encoding and scored with its
``vec_distance_cosine`` scalar function. One model's vectors are never compared
with another's; rows are keyed by ``(item_id, model)``.
"""

from __future__ import annotations

import logging

from contextkit.db.models import utcnow
from contextkit.db.repository import Repository
from contextkit.db.vectors import encode_vector
from contextkit.rag import llm_client
from contextkit.rag.calls import CancelToken

log = logging.getLogger("contextkit.index")

DEFAULT_TOP_K = 500


class EmbeddingIndex:
    """Nearest-neighbour lookup scoped to one project and one embedding model."""

    def __init__(self, repo: Repository, model: str) -> None:
        self.repo = repo
        self.model = model

    def index(
        self,
        item_id: str,
        vector: list[float],
        project_id: str,
        type: str,  # noqa: A002
    ) -> None:
        """Insert or replace the vector for *item_id*.

        Raises:
            ValueError: The vector is empty, non-finite or all zeros.
        """
        blob = encode_vector(vector)
        self.repo.upsert_embedding(
            item_id, self.model, project_id, type, blob, len(vector), utcnow()
        )

    def query(
        self,
        vector: list[float],
        project_id: str,
        top_k: int = DEFAULT_TOP_K,
        type_filter: list[str] | tuple[str, ...] | None = None,
    ) -> list[tuple[str, float]]:
        """Return up to *top_k* ``(item_id, similarity)`` pairs, best first.

        Equal scores order by most recently indexed, then id. A project with no
        vectors for this model yields an empty list.
        """
        if top_k <= 0:
            return []
        blob = encode_vector(vector)
        hits = self.repo.search_embeddings(
            self.model,
            project_id,
            blob,
            len(vector),
            list(type_filter) if type_filter else None,
            top_k,
        )
        return [(item_id, score) for item_id, score, _ in hits]

    def score(
        self, vector: list[float], project_id: str, item_ids: list[str]
    ) -> dict[str, float]:
        """Similarity of *vector* to each of *item_ids*; items without a vector are absent."""
        ids = list(dict.fromkeys(item_ids))
        if not ids:
            return {}
        hits = self.repo.search_embeddings(
            self.model, project_id, encode_vector(vector), len(vector), None, len(ids), ids
        )
        return {item_id: score for item_id, score, _ in hits}

    def remove(self, item_ids: list[str]) -> int:
        return self.repo.delete_embeddings(item_ids)

    def count(self, project_id: str) -> int:
        return self.repo.count_embeddings(project_id, self.model)


class Embedder:
    """Batching front-end to the embedding model.

    Args:
        model: LiteLLM embedding model string.
        batch_size: Texts per ``litellm.embedding`` request.
        timeout: Per-request deadline in seconds.
        num_retries: Transient-error retries delegated to LiteLLM.
    """

    def __init__(
        self,
        model: str,
        batch_size: int = 64,
        timeout: float = 30.0,
        num_retries: int = 1,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.model = model
        self.batch_size = batch_size
        self.timeout = timeout
        self.num_retries = num_retries

    def embed(self, texts: list[str], cancel: CancelToken | None = None) -> list[list[float]]:
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start : start + self.batch_size]
            result = llm_client.embed(
                self.model,
                batch,
                num_retries=self.num_retries,
                timeout=self.timeout,
                cancel=cancel,
            )
            if len(result) != len(batch):
                raise RuntimeError(
                    f"Embedding model {self.model!r} returned {len(result)} vectors "
                    f"for {len(batch)} inputs"
                )
            vectors.extend(result)
        log.debug("embedded %d text(s) with %s", len(texts), self.model)
        return vectors

    def embed_one(self, text: str, cancel: CancelToken | None = None) -> list[float]:
        return self.embed([text], cancel=cancel)[0]
