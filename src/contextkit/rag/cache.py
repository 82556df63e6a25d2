"""Hot-window cache: the last bundle assembled per (session, project).

Entries are validated against current piece fingerprints on every read, never
by age alone. A mismatch invalidates the entry and the caller falls back to a
full assembly. Each entry has its own lock; the LRU map itself is guarded by a
short structural lock that is never held while an entry is validated.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from contextkit.db.models import ContextBundle, ContextPiece
from contextkit.errors import CacheInconsistencyError

log = logging.getLogger("contextkit.cache")

CacheKey = tuple[str, str]


@dataclass
class _Entry:
    bundle: ContextBundle
    signature: str
    fingerprints: dict[str, str]
    expires_at: float
    lock: threading.Lock = field(default_factory=threading.Lock)
    valid: bool = True


class HotWindowCache:
    """LRU + TTL cache of assembled bundles keyed by ``(session_id, project_id)``.

    Args:
        max_entries: Entries kept before the least recently used is evicted.
        ttl_seconds: Lifetime of an entry; matches the session lifetime.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        max_entries: int = 256,
        ttl_seconds: float = 3_600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[CacheKey, _Entry] = OrderedDict()
        self._guard = threading.Lock()
        self._stats = {"hits": 0, "misses": 0, "invalidations": 0, "evictions": 0}

    def put(self, key: CacheKey, bundle: ContextBundle, signature: str) -> None:
        """Store *bundle* as the latest for *key*, replacing any previous entry."""
        entry = _Entry(
            bundle=bundle,
            signature=signature,
            fingerprints={p.ref_id: p.fingerprint for p in bundle.pieces},
            expires_at=self._clock() + self.ttl_seconds,
        )
        with self._guard:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._stats["evictions"] += 1
                log.debug("evicted hot window %s", evicted)

    def get(self, key: CacheKey) -> ContextBundle | None:
        """Latest bundle for *key* without fingerprint validation."""
        entry = self._lookup(key)
        return entry.bundle if entry is not None else None

    def valid_pieces(
        self,
        key: CacheKey,
        current_fingerprints: Mapping[str, str],
        signature: str | None = None,
    ) -> list[ContextPiece] | None:
        """Cached pieces whose fingerprints still match the current ones.

        Returns None on a miss, an expired entry, a *signature* mismatch, or a
        fingerprint mismatch; the last also invalidates the entry.
        """
        entry = self._lookup(key)
        if entry is None or (signature is not None and entry.signature != signature):
            self._count("misses")
            return None
        with entry.lock:
            if not entry.valid:
                self._count("misses")
                return None
            try:
                self._check(entry, current_fingerprints)
            except CacheInconsistencyError as exc:
                entry.valid = False
                log.info("hot window %s invalidated: %s", key, exc)
                self._count("invalidations")
                self.invalidate(key, entry)
                return None
            self._count("hits")
            return list(entry.bundle.pieces)

    def invalidate(self, key: CacheKey, entry: _Entry | None = None) -> None:
        """Drop *key*; when *entry* is given, only if it is still the stored one."""
        with self._guard:
            current = self._entries.get(key)
            if current is not None and (entry is None or current is entry):
                del self._entries[key]

    def expire_session(self, session_id: str) -> int:
        with self._guard:
            doomed = [k for k in self._entries if k[0] == session_id]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def clear_project(self, project_id: str) -> int:
        """Drop every entry for *project_id*. Returns the number removed."""
        with self._guard:
            doomed = [k for k in self._entries if k[1] == project_id]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def stats(self) -> dict[str, int]:
        with self._guard:
            return {"entries": len(self._entries), **self._stats}

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lookup(self, key: CacheKey) -> _Entry | None:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return entry

    def _count(self, name: str) -> None:
        with self._guard:
            self._stats[name] += 1

    @staticmethod
    def _check(entry: _Entry, current: Mapping[str, str]) -> None:
        for ref_id, fingerprint in entry.fingerprints.items():
            if current.get(ref_id) != fingerprint:
                raise CacheInconsistencyError(ref_id)
