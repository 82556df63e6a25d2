"""Repository pattern for all contextkit database operations.

Single interface for: artifacts, chunks + path membership, summaries,
embedding vectors, and model-call provenance rows. Every statement runs under
one re-entrant lock so a shared connection is safe across ingestion threads.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterable

from contextkit.db.models import Artifact, Chunk, ModelCallRecord, Summary


class Repository:
    """Data access layer for all contextkit database entities.

    Wraps an open sqlite3.Connection. The connection is owned by the caller and
    must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see contextkit.db.migrations.initialize).
        """
        self._conn = conn
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def upsert_artifact(self, artifact: Artifact) -> None:
        """Insert or replace the metadata row for an ingested path."""
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO artifacts (project_id, path, size_bytes, content_hash,
                                       mime_type, language, is_binary, ingested_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(project_id, path) DO UPDATE SET
                    size_bytes = excluded.size_bytes,
                    content_hash = excluded.content_hash,
                    mime_type = excluded.mime_type,
                    language = excluded.language,
                    is_binary = excluded.is_binary,
                    ingested_at = excluded.ingested_at
                """,
                (
                    artifact.project_id,
                    artifact.path,
                    artifact.size_bytes,
                    artifact.content_hash,
                    artifact.mime_type,
                    artifact.language,
                    int(artifact.is_binary),
                    artifact.ingested_at,
                ),
            )
            self._conn.commit()

    def get_artifact(self, project_id: str, path: str) -> Artifact | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM artifacts WHERE project_id = ? AND path = ?",
                (project_id, path),
            ).fetchone()
        return _row_to_artifact(row) if row else None

    def list_artifacts(self, project_id: str) -> list[Artifact]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM artifacts WHERE project_id = ? ORDER BY path",
                (project_id,),
            ).fetchall()
        return [_row_to_artifact(r) for r in rows]

    def list_projects(self) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT DISTINCT project_id FROM artifacts ORDER BY project_id"
            ).fetchall()
        return [r[0] for r in rows]

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def insert_chunk(self, chunk: Chunk) -> Chunk:
        """Insert *chunk* unless the project already holds the same fingerprint.

        Returns the stored record, which is the pre-existing one on a duplicate.
        """
        with self._lock:
            self._conn.execute(
                """
                INSERT OR IGNORE INTO chunks (chunk_id, project_id, source_path, byte_offset,
                                              token_count, fingerprint, type, language,
                                              text, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    chunk.chunk_id,
                    chunk.project_id,
                    chunk.source_path,
                    chunk.byte_offset,
                    chunk.token_count,
                    chunk.fingerprint,
                    chunk.type,
                    chunk.language,
                    chunk.text,
                    chunk.created_at,
                ),
            )
            self._conn.commit()
            stored = self.find_chunk_by_fingerprint(chunk.project_id, chunk.fingerprint)
        assert stored is not None
        return stored

    def find_chunk_by_fingerprint(self, project_id: str, fingerprint: str) -> Chunk | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM chunks WHERE project_id = ? AND fingerprint = ?",
                (project_id, fingerprint),
            ).fetchone()
        return _row_to_chunk(row) if row else None

    def get_chunk(self, chunk_id: str) -> Chunk | None:
        """Return a chunk by id, or None if not found."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM chunks WHERE chunk_id = ?", (chunk_id,)
            ).fetchone()
        return _row_to_chunk(row) if row else None

    def get_chunks(self, chunk_ids: Iterable[str]) -> dict[str, Chunk]:
        """Bulk lookup. Missing ids are simply absent from the result."""
        ids = list(dict.fromkeys(chunk_ids))
        found: dict[str, Chunk] = {}
        with self._lock:
            for batch in _batches(ids):
                placeholders = ",".join("?" * len(batch))
                rows = self._conn.execute(
                    f"SELECT * FROM chunks WHERE chunk_id IN ({placeholders})", batch
                ).fetchall()
                for r in rows:
                    found[r["chunk_id"]] = _row_to_chunk(r)
        return found

    def replace_path_refs(
        self,
        project_id: str,
        path: str,
        refs: list[tuple[str, int]],
        now: str,
    ) -> tuple[list[str], list[str]]:
        """Supersede the live chunk list of *path* with *refs*.

        Args:
            refs: Ordered ``(chunk_id, byte_offset)`` pairs for the new version.
            now: Timestamp written to ``created_at`` / ``superseded_at``.

        Returns:
            ``(added, removed)`` chunk ids relative to the previous version.
        """
        with self._lock:
            previous = [
                r[0]
                for r in self._conn.execute(
                    """
                    SELECT chunk_id FROM chunk_refs
                    WHERE project_id = ? AND path = ? AND superseded_at IS NULL
                    ORDER BY ordinal
                    """,
                    (project_id, path),
                ).fetchall()
            ]
            self._conn.execute(
                """
                UPDATE chunk_refs SET superseded_at = ?
                WHERE project_id = ? AND path = ? AND superseded_at IS NULL
                """,
                (now, project_id, path),
            )
            self._conn.executemany(
                """
                INSERT INTO chunk_refs (project_id, path, ordinal, chunk_id, byte_offset, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (project_id, path, i, chunk_id, offset, now)
                    for i, (chunk_id, offset) in enumerate(refs)
                ],
            )
            self._conn.commit()
        new_ids = [chunk_id for chunk_id, _ in refs]
        added = [c for c in dict.fromkeys(new_ids) if c not in set(previous)]
        removed = [c for c in dict.fromkeys(previous) if c not in set(new_ids)]
        return added, removed

    def append_path_refs(
        self, project_id: str, path: str, refs: list[tuple[str, int]], now: str
    ) -> None:
        """Append *refs* after the current live list of *path* (conversation / log streams)."""
        with self._lock:
            row = self._conn.execute(
                """
                SELECT COALESCE(MAX(ordinal), -1) FROM chunk_refs
                WHERE project_id = ? AND path = ? AND superseded_at IS NULL
                """,
                (project_id, path),
            ).fetchone()
            start = row[0] + 1
            self._conn.executemany(
                """
                INSERT INTO chunk_refs (project_id, path, ordinal, chunk_id, byte_offset, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (project_id, path, start + i, chunk_id, offset, now)
                    for i, (chunk_id, offset) in enumerate(refs)
                ],
            )
            self._conn.commit()

    def path_end_offset(self, project_id: str, path: str) -> int:
        """Byte offset just past the last live chunk of *path*; 0 for an empty path."""
        with self._lock:
            row = self._conn.execute(
                """
                SELECT COALESCE(MAX(r.byte_offset + LENGTH(CAST(c.text AS BLOB))), 0)
                FROM chunk_refs r JOIN chunks c ON c.chunk_id = r.chunk_id
                WHERE r.project_id = ? AND r.path = ? AND r.superseded_at IS NULL
                """,
                (project_id, path),
            ).fetchone()
        return int(row[0])

    def list_chunks_for_path(self, project_id: str, path: str) -> list[Chunk]:
        """Return the live chunks of *path* in ordinal order."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT c.* FROM chunk_refs r JOIN chunks c ON c.chunk_id = r.chunk_id
                WHERE r.project_id = ? AND r.path = ? AND r.superseded_at IS NULL
                ORDER BY r.ordinal
                """,
                (project_id, path),
            ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def live_chunk_ids(self, chunk_ids: Iterable[str]) -> set[str]:
        """Subset of *chunk_ids* referenced by at least one non-superseded path."""
        ids = list(dict.fromkeys(chunk_ids))
        live: set[str] = set()
        with self._lock:
            for batch in _batches(ids):
                placeholders = ",".join("?" * len(batch))
                rows = self._conn.execute(
                    f"""
                    SELECT DISTINCT chunk_id FROM chunk_refs
                    WHERE superseded_at IS NULL AND chunk_id IN ({placeholders})
                    """,
                    batch,
                ).fetchall()
                live.update(r[0] for r in rows)
        return live

    def list_live_paths(self, project_id: str) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT DISTINCT path FROM chunk_refs
                WHERE project_id = ? AND superseded_at IS NULL ORDER BY path
                """,
                (project_id,),
            ).fetchall()
        return [r[0] for r in rows]

    def chunk_stats(self, project_id: str) -> dict[str, float]:
        """Totals over the live chunks of a project."""
        with self._lock:
            row = self._conn.execute(
                """
                SELECT COUNT(*) AS total_chunks,
                       COALESCE(SUM(token_count), 0) AS total_tokens,
                       COUNT(DISTINCT source_path) AS unique_files,
                       COALESCE(AVG(token_count), 0) AS avg_chunk_size
                FROM chunks
                WHERE project_id = ? AND chunk_id IN (
                    SELECT chunk_id FROM chunk_refs
                    WHERE project_id = ? AND superseded_at IS NULL
                )
                """,
                (project_id, project_id),
            ).fetchone()
        return {
            "total_chunks": row["total_chunks"],
            "total_tokens": row["total_tokens"],
            "unique_files": row["unique_files"],
            "avg_chunk_size": float(row["avg_chunk_size"]),
        }

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    def add_summary(self, summary: Summary) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO summaries (summary_id, project_id, scope_path, level, text,
                                       token_count, source_ids, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    summary.summary_id,
                    summary.project_id,
                    summary.scope_path,
                    summary.level,
                    summary.text,
                    summary.token_count,
                    json.dumps(list(summary.source_ids)),
                    summary.created_at,
                ),
            )
            self._conn.commit()

    def supersede_summary(self, summary_id: str, now: str) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE summaries SET superseded_at = ? WHERE summary_id = ? AND superseded_at IS NULL",
                (now, summary_id),
            )
            self._conn.commit()

    def get_summary(self, summary_id: str) -> Summary | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM summaries WHERE summary_id = ?", (summary_id,)
            ).fetchone()
        return _row_to_summary(row) if row else None

    def get_summaries(self, summary_ids: Iterable[str]) -> dict[str, Summary]:
        ids = list(dict.fromkeys(summary_ids))
        found: dict[str, Summary] = {}
        with self._lock:
            for batch in _batches(ids):
                placeholders = ",".join("?" * len(batch))
                rows = self._conn.execute(
                    f"SELECT * FROM summaries WHERE summary_id IN ({placeholders})", batch
                ).fetchall()
                for r in rows:
                    found[r["summary_id"]] = _row_to_summary(r)
        return found

    def current_summary(self, project_id: str, level: str, scope_path: str) -> Summary | None:
        """Return the live summary for a scope, or None."""
        with self._lock:
            row = self._conn.execute(
                """
                SELECT * FROM summaries
                WHERE project_id = ? AND level = ? AND scope_path = ? AND superseded_at IS NULL
                ORDER BY created_at DESC LIMIT 1
                """,
                (project_id, level, scope_path),
            ).fetchone()
        return _row_to_summary(row) if row else None

    def list_current_summaries(self, project_id: str, level: str | None = None) -> list[Summary]:
        sql = "SELECT * FROM summaries WHERE project_id = ? AND superseded_at IS NULL"
        params: list[str] = [project_id]
        if level is not None:
            sql += " AND level = ?"
            params.append(level)
        sql += " ORDER BY level, scope_path"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [_row_to_summary(r) for r in rows]

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def upsert_embedding(
        self,
        item_id: str,
        model: str,
        project_id: str,
        kind: str,
        blob: bytes,
        dimensions: int,
        created_at: str,
    ) -> None:
        """Insert or replace the vector for (*item_id*, *model*)."""
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO embeddings (item_id, model, project_id, kind, dimensions, created_at, embedding)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(item_id, model) DO UPDATE SET
                    project_id = excluded.project_id,
                    kind = excluded.kind,
                    dimensions = excluded.dimensions,
                    created_at = excluded.created_at,
                    embedding = excluded.embedding
                """,
                (item_id, model, project_id, kind, dimensions, created_at, blob),
            )
            self._conn.commit()

    def search_embeddings(
        self,
        model: str,
        project_id: str,
        query_blob: bytes,
        dimensions: int,
        kinds: list[str] | None,
        limit: int,
        item_ids: list[str] | None = None,
    ) -> list[tuple[str, float, str]]:
        """Cosine nearest neighbours. Returns ``(item_id, similarity, created_at)``.

        *item_ids*, when given, restricts the search to those items.

        Ordered by similarity desc, then created_at desc, then item_id.
        """
        sql = """
            SELECT item_id, created_at,
                   1.0 - vec_distance_cosine(embedding, ?) AS score
            FROM embeddings
            WHERE model = ? AND project_id = ? AND dimensions = ?
        """
        params: list[object] = [query_blob, model, project_id, dimensions]
        if kinds:
            sql += f" AND kind IN ({','.join('?' * len(kinds))})"
            params.extend(kinds)
        if item_ids is not None:
            sql += f" AND item_id IN ({','.join('?' * len(item_ids))})"
            params.extend(item_ids)
        sql += " ORDER BY score DESC, created_at DESC, item_id ASC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [(r["item_id"], float(r["score"]), r["created_at"]) for r in rows]

    def embedded_ids(self, item_ids: Iterable[str], model: str) -> set[str]:
        """Subset of *item_ids* that already have a vector for *model*."""
        ids = list(dict.fromkeys(item_ids))
        found: set[str] = set()
        with self._lock:
            for batch in _batches(ids):
                placeholders = ",".join("?" * len(batch))
                rows = self._conn.execute(
                    f"SELECT item_id FROM embeddings WHERE model = ? AND item_id IN ({placeholders})",
                    [model, *batch],
                ).fetchall()
                found.update(r[0] for r in rows)
        return found

    def delete_embeddings(self, item_ids: Iterable[str]) -> int:
        ids = list(dict.fromkeys(item_ids))
        deleted = 0
        with self._lock:
            for batch in _batches(ids):
                placeholders = ",".join("?" * len(batch))
                cur = self._conn.execute(
                    f"DELETE FROM embeddings WHERE item_id IN ({placeholders})", batch
                )
                deleted += cur.rowcount
            self._conn.commit()
        return deleted

    def count_embeddings(self, project_id: str, model: str | None = None) -> int:
        sql = "SELECT COUNT(*) FROM embeddings WHERE project_id = ?"
        params: list[str] = [project_id]
        if model is not None:
            sql += " AND model = ?"
            params.append(model)
        with self._lock:
            return self._conn.execute(sql, params).fetchone()[0]

    # ------------------------------------------------------------------
    # Model calls (provenance)
    # ------------------------------------------------------------------

    def add_model_call(self, record: ModelCallRecord) -> None:
        """Append a provenance row. Raises sqlite3.IntegrityError on a duplicate call_id."""
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO model_calls (call_id, session_id, model, phase, status, prompt_tokens,
                                         completion_tokens, chunk_ids, timestamp, error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.call_id,
                    record.session_id,
                    record.model,
                    record.phase,
                    record.status,
                    record.prompt_tokens,
                    record.completion_tokens,
                    json.dumps(sorted(record.chunk_ids_used)),
                    record.timestamp,
                    record.error,
                ),
            )
            self._conn.commit()

    def get_model_call(self, call_id: str) -> ModelCallRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM model_calls WHERE call_id = ?", (call_id,)
            ).fetchone()
        return _row_to_call(row) if row else None

    def list_model_calls(self, session_id: str) -> list[ModelCallRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM model_calls WHERE session_id = ? ORDER BY timestamp, rowid",
                (session_id,),
            ).fetchall()
        return [_row_to_call(r) for r in rows]

    def model_call_stats(self, session_id: str | None = None) -> dict[str, int]:
        sql = """
            SELECT COUNT(*) AS calls,
                   COALESCE(SUM(prompt_tokens), 0) AS prompt_tokens,
                   COALESCE(SUM(completion_tokens), 0) AS completion_tokens
            FROM model_calls
        """
        params: tuple[str, ...] = ()
        if session_id is not None:
            sql += " WHERE session_id = ?"
            params = (session_id,)
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        return {
            "calls": row["calls"],
            "prompt_tokens": row["prompt_tokens"],
            "completion_tokens": row["completion_tokens"],
        }

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def delete_project(self, project_id: str) -> None:
        """Remove every row owned by *project_id* (chunks, summaries, vectors, artifacts)."""
        with self._lock:
            for table in ("embeddings", "chunk_refs", "chunks", "summaries", "artifacts"):
                self._conn.execute(
                    f"DELETE FROM {table} WHERE project_id = ?",  # noqa: S608
                    (project_id,),
                )
            self._conn.commit()

    def purge_superseded(self, cutoff: str) -> int:
        """Delete superseded refs/summaries older than *cutoff* and unreferenced chunks.

        Returns the number of chunks and summaries removed.
        """
        with self._lock:
            self._conn.execute(
                "DELETE FROM chunk_refs WHERE superseded_at IS NOT NULL AND superseded_at < ?",
                (cutoff,),
            )
            orphan_chunks = [
                r[0]
                for r in self._conn.execute(
                    """
                    SELECT chunk_id FROM chunks
                    WHERE chunk_id NOT IN (SELECT chunk_id FROM chunk_refs)
                    """
                ).fetchall()
            ]
            old_summaries = [
                r[0]
                for r in self._conn.execute(
                    "SELECT summary_id FROM summaries WHERE superseded_at IS NOT NULL AND superseded_at < ?",
                    (cutoff,),
                ).fetchall()
            ]
            doomed = orphan_chunks + old_summaries
            for batch in _batches(doomed):
                placeholders = ",".join("?" * len(batch))
                self._conn.execute(
                    f"DELETE FROM embeddings WHERE item_id IN ({placeholders})", batch
                )
                self._conn.execute(
                    f"DELETE FROM chunks WHERE chunk_id IN ({placeholders})", batch
                )
                self._conn.execute(
                    f"DELETE FROM summaries WHERE summary_id IN ({placeholders})", batch
                )
            self._conn.commit()
        return len(doomed)


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------

_BATCH = 500


def _batches(items: list[str]) -> Iterable[list[str]]:
    for i in range(0, len(items), _BATCH):
        yield items[i : i + _BATCH]


def _row_to_artifact(row: sqlite3.Row) -> Artifact:
    return Artifact(
        project_id=row["project_id"],
        path=row["path"],
        size_bytes=row["size_bytes"],
        content_hash=row["content_hash"],
        mime_type=row["mime_type"],
        language=row["language"],
        is_binary=bool(row["is_binary"]),
        ingested_at=row["ingested_at"],
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        chunk_id=row["chunk_id"],
        project_id=row["project_id"],
        source_path=row["source_path"],
        byte_offset=row["byte_offset"],
        token_count=row["token_count"],
        fingerprint=row["fingerprint"],
        type=row["type"],
        text=row["text"],
        language=row["language"],
        created_at=row["created_at"],
    )


def _row_to_summary(row: sqlite3.Row) -> Summary:
    return Summary(
        summary_id=row["summary_id"],
        project_id=row["project_id"],
        scope_path=row["scope_path"],
        level=row["level"],
        text=row["text"],
        token_count=row["token_count"],
        source_ids=tuple(json.loads(row["source_ids"])),
        created_at=row["created_at"],
        superseded_at=row["superseded_at"],
    )


def _row_to_call(row: sqlite3.Row) -> ModelCallRecord:
    return ModelCallRecord(
        call_id=row["call_id"],
        session_id=row["session_id"],
        model=row["model"],
        phase=row["phase"],
        status=row["status"],
        prompt_tokens=row["prompt_tokens"],
        completion_tokens=row["completion_tokens"],
        chunk_ids_used=frozenset(json.loads(row["chunk_ids"])),
        timestamp=row["timestamp"],
        error=row["error"],
    )
