"""Forward-only migration runner for the contextkit schema.

Embedding vectors live in the ``embeddings`` table as sqlite-vec float32 blobs,
one row per (item, embedding model).
"""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS artifacts (
    project_id      TEXT NOT NULL,
    path            TEXT NOT NULL,
    size_bytes      INTEGER NOT NULL,
    content_hash    TEXT NOT NULL,
    mime_type       TEXT NOT NULL DEFAULT 'text/plain',
    language        TEXT NOT NULL DEFAULT 'text',
    is_binary       INTEGER NOT NULL DEFAULT 0,
    ingested_at     TEXT NOT NULL,
    PRIMARY KEY (project_id, path)
);

CREATE TABLE IF NOT EXISTS chunks (
    chunk_id        TEXT PRIMARY KEY,
    project_id      TEXT NOT NULL,
    source_path     TEXT NOT NULL,
    byte_offset     INTEGER NOT NULL,
    token_count     INTEGER NOT NULL,
    fingerprint     TEXT NOT NULL,
    type            TEXT NOT NULL,
    language        TEXT NOT NULL DEFAULT 'text',
    text            TEXT NOT NULL,
    created_at      TEXT NOT NULL,
    UNIQUE (project_id, fingerprint)
);

CREATE TABLE IF NOT EXISTS chunk_refs (
    project_id      TEXT NOT NULL,
    path            TEXT NOT NULL,
    ordinal         INTEGER NOT NULL,
    chunk_id        TEXT NOT NULL REFERENCES chunks(chunk_id) ON DELETE CASCADE,
    byte_offset     INTEGER NOT NULL,
    created_at      TEXT NOT NULL,
    superseded_at   TEXT
);

CREATE INDEX IF NOT EXISTS idx_chunk_refs_path
    ON chunk_refs (project_id, path, superseded_at);
CREATE INDEX IF NOT EXISTS idx_chunk_refs_chunk
    ON chunk_refs (chunk_id, superseded_at);

CREATE TABLE IF NOT EXISTS summaries (
    summary_id      TEXT PRIMARY KEY,
    project_id      TEXT NOT NULL,
    scope_path      TEXT NOT NULL,
    level           TEXT NOT NULL,
    text            TEXT NOT NULL,
    token_count     INTEGER NOT NULL,
    source_ids      TEXT NOT NULL DEFAULT '[]',
    created_at      TEXT NOT NULL,
    superseded_at   TEXT
);

CREATE INDEX IF NOT EXISTS idx_summaries_scope
    ON summaries (project_id, level, scope_path, superseded_at);

CREATE TABLE IF NOT EXISTS embeddings (
    item_id         TEXT NOT NULL,
    model           TEXT NOT NULL,
    project_id      TEXT NOT NULL,
    kind            TEXT NOT NULL,
    dimensions      INTEGER NOT NULL,
    created_at      TEXT NOT NULL,
    embedding       BLOB NOT NULL,
    PRIMARY KEY (item_id, model)
);

CREATE INDEX IF NOT EXISTS idx_embeddings_project
    ON embeddings (project_id, model, kind);

CREATE TABLE IF NOT EXISTS model_calls (
    call_id             TEXT PRIMARY KEY,
    session_id          TEXT,
    model               TEXT NOT NULL,
    phase               TEXT NOT NULL,
    status              TEXT NOT NULL,
    prompt_tokens       INTEGER NOT NULL DEFAULT 0,
    completion_tokens   INTEGER NOT NULL DEFAULT 0,
    chunk_ids           TEXT NOT NULL DEFAULT '[]',
    timestamp           TEXT NOT NULL,
    error               TEXT
);

CREATE INDEX IF NOT EXISTS idx_model_calls_session
    ON model_calls (session_id, timestamp);
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
]


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row[0] is not None else 0

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            conn.commit()


def initialize(conn: sqlite3.Connection) -> None:
    """Initialize the database schema via the migration runner (idempotent)."""
    run_migrations(conn)
