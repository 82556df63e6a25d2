"""Tests for EmbeddingWriter."""

from __future__ import annotations

import pytest
from conftest import FakeEmbedder

from contextkit.db.models import Chunk, Summary, fingerprint_text, make_chunk_id
from contextkit.ingest.embedding_writer import EmbeddingWriter
from contextkit.rag.index import EmbeddingIndex


def _chunk(text: str) -> Chunk:
    fp = fingerprint_text(text)
    return Chunk(make_chunk_id("p1", fp), "p1", "a.py", 0, 1, fp, "code", text)


@pytest.fixture
def index(repo):
    return EmbeddingIndex(repo, "fake/embed")


@pytest.fixture
def writer(index, embedder):
    return EmbeddingWriter(index, embedder)


def test_model_mismatch_rejected(repo, embedder):
    with pytest.raises(ValueError, match="does not match"):
        EmbeddingWriter(EmbeddingIndex(repo, "other/model"), embedder)


def test_write_chunks_indexes_new_chunks(writer, index):
    chunks = [_chunk("login token"), _chunk("cache render")]
    assert writer.write_chunks(chunks) == 2
    assert index.count("p1") == 2


def test_write_chunks_skips_already_embedded(writer, embedder):
    a, b = _chunk("login token"), _chunk("cache render")
    writer.write_chunks([a])
    assert writer.write_chunks([a, b, b]) == 1
    assert embedder.calls == [["login token"], ["cache render"]]


def test_write_chunks_all_known_makes_no_call(writer, embedder):
    a = _chunk("login token")
    writer.write_chunks([a])
    assert writer.write_chunks([a]) == 0
    assert len(embedder.calls) == 1


def test_write_summary_indexes_under_level_and_drops_old(writer, index):
    old = Summary("su_old", "p1", "a.py", "file", "old auth summary", 3)
    new = Summary("su_new", "p1", "a.py", "file", "new auth summary", 3)
    writer.write_summary(old)
    writer.write_summary(new, replaces=old)
    hits = index.query(FakeEmbedder().vector("auth"), "p1", type_filter=["file"])
    assert [i for i, _ in hits] == ["su_new"]


def test_remove(writer, index):
    writer.write_chunks([_chunk("login")])
    assert writer.remove([_chunk("login").chunk_id]) == 1
    assert index.count("p1") == 0
