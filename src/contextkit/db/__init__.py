"""contextkit database layer."""

from contextkit.db.connection import Database
from contextkit.db.migrations import MIGRATIONS, initialize, run_migrations
from contextkit.db.repository import Repository
from contextkit.db.store import ChunkStore
from contextkit.db.vectors import encode_vector

__all__ = [
    "ChunkStore",
    "Database",
    "Repository",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "encode_vector",
]
