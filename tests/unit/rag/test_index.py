"""Tests for EmbeddingIndex and the batching Embedder."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from conftest import axis

from contextkit.rag.index import Embedder, EmbeddingIndex


@pytest.fixture
def index(repo):
    return EmbeddingIndex(repo, "fake/embed")


def test_query_orders_by_similarity(index):
    index.index("near", axis(0), "p1", "code")
    index.index("mid", [1.0, 1.0, 0, 0, 0, 0, 0, 0, 0], "p1", "code")
    index.index("far", axis(1), "p1", "code")
    hits = index.query(axis(0), "p1")
    assert [i for i, _ in hits] == ["near", "mid", "far"]
    assert hits[0][1] == pytest.approx(1.0)
    assert hits[2][1] == pytest.approx(0.0, abs=1e-6)


def test_query_is_scoped_to_project_and_model(repo, index):
    index.index("mine", axis(0), "p1", "code")
    index.index("other-project", axis(0), "p2", "code")
    EmbeddingIndex(repo, "other/model").index("other-model", axis(0), "p1", "code")
    assert [i for i, _ in index.query(axis(0), "p1")] == ["mine"]


def test_query_type_filter(index):
    index.index("chunk", axis(0), "p1", "code")
    index.index("summary", axis(0), "p1", "file")
    assert [i for i, _ in index.query(axis(0), "p1", type_filter=["file"])] == ["summary"]


def test_query_top_k(index):
    for i in range(5):
        index.index(f"c{i}", axis(i), "p1", "code")
    assert len(index.query(axis(0), "p1", top_k=2)) == 2
    assert index.query(axis(0), "p1", top_k=0) == []


def test_query_empty_project(index):
    assert index.query(axis(0), "nothing") == []


def test_score_named_items(index):
    index.index("near", axis(0), "p1", "code")
    index.index("far", axis(1), "p1", "code")
    index.index("elsewhere", axis(0), "p2", "code")
    scores = index.score(axis(0), "p1", ["far", "near", "elsewhere", "missing", "far"])
    assert set(scores) == {"near", "far"}
    assert scores["near"] == pytest.approx(1.0)
    assert scores["far"] == pytest.approx(0.0, abs=1e-6)
    assert index.score(axis(0), "p1", []) == {}


def test_reindex_replaces_vector(index):
    index.index("c", axis(0), "p1", "code")
    index.index("c", axis(1), "p1", "code")
    hits = index.query(axis(1), "p1")
    assert hits[0][0] == "c"
    assert hits[0][1] == pytest.approx(1.0)
    assert index.count("p1") == 1


def test_remove(index):
    index.index("a", axis(0), "p1", "code")
    index.index("b", axis(1), "p1", "code")
    assert index.remove(["a"]) == 1
    assert [i for i, _ in index.query(axis(0), "p1")] == ["b"]


def test_index_rejects_zero_vector(index):
    with pytest.raises(ValueError):
        index.index("z", [0.0] * 9, "p1", "code")


# ------------------------------------------------------------------
# Embedder
# ------------------------------------------------------------------


def _embedding_response(n: int, dims: int = 3):
    response = MagicMock()
    response.data = [{"embedding": [float(i + 1)] * dims} for i in range(n)]
    return response


def test_embedder_batches_requests():
    calls: list[list[str]] = []

    def fake_embedding(**kwargs):
        calls.append(kwargs["input"])
        return _embedding_response(len(kwargs["input"]))

    with patch("litellm.embedding", side_effect=fake_embedding):
        vectors = Embedder("openai/text-embedding-3-small", batch_size=2).embed(["a", "b", "c"])

    assert calls == [["a", "b"], ["c"]]
    assert len(vectors) == 3


def test_embedder_count_mismatch_raises():
    with patch("litellm.embedding", return_value=_embedding_response(1)):
        with pytest.raises(RuntimeError, match="returned 1 vectors"):
            Embedder("openai/text-embedding-3-small").embed(["a", "b"])


def test_embedder_empty_input_makes_no_call():
    with patch("litellm.embedding") as mock_embedding:
        assert Embedder("openai/text-embedding-3-small").embed([]) == []
    mock_embedding.assert_not_called()


def test_embedder_rejects_bad_batch_size():
    with pytest.raises(ValueError):
        Embedder("openai/text-embedding-3-small", batch_size=0)
