"""Tests for HotWindowCache: fingerprint validation, LRU, TTL."""

from __future__ import annotations

import threading

import pytest

from contextkit.db.models import ContextBundle, ContextPiece
from contextkit.rag.cache import HotWindowCache


def _piece(ref_id: str, fingerprint: str = "f") -> ContextPiece:
    return ContextPiece(
        ref_id=ref_id,
        kind="chunk",
        token_count=3,
        relevance_score=1.0,
        rank=0,
        source_path="a.py",
        text="x y z",
        fingerprint=fingerprint,
        piece_type="code",
    )


def _bundle(*pieces: ContextPiece) -> ContextBundle:
    return ContextBundle(
        session_id="se_1",
        project_id="p1",
        token_budget=100,
        safety_margin=0,
        tokens_used=sum(p.token_count for p in pieces),
        pieces=pieces,
    )


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


KEY = ("se_1", "p1")


def test_valid_pieces_hit_when_fingerprints_match():
    cache = HotWindowCache()
    cache.put(KEY, _bundle(_piece("a", "fa"), _piece("b", "fb")), "sig")
    pieces = cache.valid_pieces(KEY, {"a": "fa", "b": "fb"}, "sig")
    assert [p.ref_id for p in pieces] == ["a", "b"]
    assert cache.stats()["hits"] == 1


def test_fingerprint_mismatch_invalidates_entry():
    cache = HotWindowCache()
    cache.put(KEY, _bundle(_piece("a", "fa")), "sig")
    assert cache.valid_pieces(KEY, {"a": "changed"}, "sig") is None
    assert cache.get(KEY) is None
    assert cache.stats()["invalidations"] == 1


def test_missing_piece_invalidates_entry():
    cache = HotWindowCache()
    cache.put(KEY, _bundle(_piece("a", "fa")), "sig")
    assert cache.valid_pieces(KEY, {}, "sig") is None
    assert cache.get(KEY) is None


def test_signature_mismatch_is_a_miss_without_invalidation():
    cache = HotWindowCache()
    cache.put(KEY, _bundle(_piece("a", "fa")), "sig")
    assert cache.valid_pieces(KEY, {"a": "fa"}, "other") is None
    assert cache.get(KEY) is not None
    assert cache.stats()["misses"] == 1


def test_unknown_key_is_a_miss():
    cache = HotWindowCache()
    assert cache.valid_pieces(KEY, {}) is None


def test_entries_expire_after_ttl():
    clock = _Clock()
    cache = HotWindowCache(ttl_seconds=10, clock=clock)
    cache.put(KEY, _bundle(_piece("a")), "sig")
    clock.now = 9.0
    assert cache.get(KEY) is not None
    clock.now = 10.0
    assert cache.get(KEY) is None


def test_lru_eviction():
    cache = HotWindowCache(max_entries=2)
    cache.put(("s1", "p"), _bundle(), "x")
    cache.put(("s2", "p"), _bundle(), "x")
    cache.get(("s1", "p"))
    cache.put(("s3", "p"), _bundle(), "x")
    assert cache.get(("s2", "p")) is None
    assert cache.get(("s1", "p")) is not None
    assert cache.stats()["evictions"] == 1


def test_expire_session_and_clear_project():
    cache = HotWindowCache()
    cache.put(("s1", "p1"), _bundle(), "x")
    cache.put(("s1", "p2"), _bundle(), "x")
    cache.put(("s2", "p1"), _bundle(), "x")
    assert cache.expire_session("s1") == 2
    assert cache.clear_project("p1") == 1
    assert cache.stats()["entries"] == 0


def test_invalidate_ignores_replaced_entry():
    cache = HotWindowCache()
    cache.put(KEY, _bundle(_piece("a")), "old")
    stale = cache._entries[KEY]
    cache.put(KEY, _bundle(_piece("b")), "new")
    cache.invalidate(KEY, stale)
    assert cache.get(KEY).pieces[0].ref_id == "b"


def test_rejects_zero_capacity():
    with pytest.raises(ValueError):
        HotWindowCache(max_entries=0)


def test_concurrent_validation_counts_one_invalidation():
    cache = HotWindowCache()
    cache.put(KEY, _bundle(_piece("a", "fa")), "sig")
    results: list[object] = []

    def worker():
        results.append(cache.valid_pieces(KEY, {"a": "changed"}, "sig"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results == [None] * 8
    assert cache.stats()["invalidations"] == 1
