"""SQLite connection layer: one file per store, sqlite-vec functions loaded.

The CLI and a long-running engine may open the same file, so writers wait on
the lock for up to ``BUSY_TIMEOUT_MS`` instead of failing immediately.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

import sqlite_vec

BUSY_TIMEOUT_MS = 5_000


class Database:
    """Per-store SQLite database with sqlite-vec vector functions loaded."""

    def __init__(self, db_path: Path | str) -> None:
        """Store the database path. Call connect() to open the connection.

        Args:
            db_path: Path to the SQLite database file (created if missing),
                or ``":memory:"``.
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path)
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        """Open a connection, load sqlite-vec, and return the connection.

        The connection may be shared across threads; the repository serialises
        access with its own lock.
        """
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
        if self.db_path != ":memory:":
            conn.execute("PRAGMA journal_mode = WAL")
        return conn

    def __enter__(self) -> sqlite3.Connection:
        """Open the database and return the connection (context manager support)."""
        self._conn = self.connect()
        return self._conn

    def __exit__(self, *args: object) -> None:
        """Close the connection when leaving the context manager."""
        if self._conn:
            self._conn.close()
            self._conn = None
