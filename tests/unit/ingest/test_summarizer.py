"""Tests for HierarchicalSummarizer: file → directory → project cascade."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from conftest import FakeEmbedder

from contextkit.db.models import Chunk, fingerprint_text, make_chunk_id
from contextkit.ingest.embedding_writer import EmbeddingWriter
from contextkit.ingest.summarizer import (
    PROJECT_SCOPE,
    HierarchicalSummarizer,
    directory_of,
    extractive_summary,
)
from contextkit.rag.index import EmbeddingIndex


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return _Clock()


@pytest.fixture
def index(repo):
    return EmbeddingIndex(repo, "fake/embed")


@pytest.fixture
def summarizer(repo, tokenizer, index, clock):
    writer = EmbeddingWriter(index, FakeEmbedder())
    return HierarchicalSummarizer(
        repo, tokenizer, writer, debounce_seconds=30.0, token_model="fake/words", clock=clock
    )


def _chunk(text: str, path: str = "src/a.py", project: str = "p1") -> Chunk:
    fp = fingerprint_text(text)
    return Chunk(
        chunk_id=make_chunk_id(project, fp),
        project_id=project,
        source_path=path,
        byte_offset=0,
        token_count=len(text.split()),
        fingerprint=fp,
        type="code",
        text=text,
        created_at="2026-01-01T00:00:00.000000Z",
    )


def _mock_completion(text: str):
    mock = MagicMock()
    mock.choices[0].message.content = text
    mock.usage.prompt_tokens = 10
    mock.usage.completion_tokens = 5
    return patch("litellm.completion", return_value=mock)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


@pytest.mark.parametrize(
    "path, directory",
    [("src/a.py", "src"), ("a.py", "."), ("/src/pkg/b.py", "src/pkg")],
)
def test_directory_of(path, directory):
    assert directory_of(path) == directory


def test_extractive_summary_takes_first_sentences():
    text = "Parses tokens. Handles login!  Caches sessions. Extra."
    assert extractive_summary(text) == "Parses tokens. Handles login!"


def test_extractive_summary_adds_period():
    assert extractive_summary("def login user") == "def login user."
    assert extractive_summary("   ") == ""


# ------------------------------------------------------------------
# Cascade
# ------------------------------------------------------------------


def test_file_change_writes_file_and_directory_summaries(repo, summarizer):
    chunks = [_chunk("def login(): return token"), _chunk("def logout(): pass")]
    with _mock_completion("Authentication helpers."):
        written = summarizer.on_file_changed("p1", "src/a.py", chunks)

    assert [s.level for s in written] == ["file", "directory"]
    file_summary = repo.current_summary("p1", "file", "src/a.py")
    assert file_summary.text == "Authentication helpers."
    assert file_summary.source_ids == tuple(c.chunk_id for c in chunks)
    assert file_summary.token_count == 2
    directory = repo.current_summary("p1", "directory", "src")
    assert directory.source_ids == (file_summary.summary_id,)
    assert summarizer.pending() == ["p1"]


def test_regeneration_supersedes_previous(repo, summarizer, index):
    with _mock_completion("First."):
        first = summarizer.summarize_file("p1", "src/a.py", [_chunk("v1")])
    with _mock_completion("Second."):
        second = summarizer.summarize_file("p1", "src/a.py", [_chunk("v2")])

    assert repo.get_summary(first.summary_id).superseded_at is not None
    assert repo.current_summary("p1", "file", "src/a.py").summary_id == second.summary_id
    assert repo.embedded_ids([first.summary_id, second.summary_id], "fake/embed") == {
        second.summary_id
    }


def test_empty_chunks_retire_file_summary(repo, summarizer):
    with _mock_completion("Summary."):
        summarizer.on_file_changed("p1", "src/a.py", [_chunk("code")])
        summarizer.on_file_changed("p1", "src/a.py", [])
    assert repo.current_summary("p1", "file", "src/a.py") is None
    assert repo.current_summary("p1", "directory", "src") is None


def test_directory_summary_covers_only_direct_children(repo, summarizer):
    with _mock_completion("Summary."):
        summarizer.summarize_file("p1", "src/a.py", [_chunk("a", "src/a.py")])
        summarizer.summarize_file("p1", "src/sub/b.py", [_chunk("b", "src/sub/b.py")])
        directory = summarizer.summarize_directory("p1", "src")
    a = repo.current_summary("p1", "file", "src/a.py")
    assert directory.source_ids == (a.summary_id,)


def test_rejects_chunks_from_other_project(summarizer):
    with pytest.raises(ValueError, match="cannot cover"):
        summarizer.summarize_file("p1", "src/a.py", [_chunk("x", project="p2")])


def test_model_failure_falls_back_to_extractive(repo, summarizer):
    chunk = _chunk("Validates the login token. Refreshes the cache. More text here.")
    summary = summarizer.summarize_file("p1", "src/a.py", [chunk])
    assert summary.text == "Validates the login token. Refreshes the cache."


def test_empty_model_output_falls_back(summarizer):
    with _mock_completion("   "):
        summary = summarizer.summarize_file("p1", "src/a.py", [_chunk("Loads config.")])
    assert summary.text == "Loads config."


# ------------------------------------------------------------------
# Project debounce
# ------------------------------------------------------------------


def test_project_summary_waits_for_debounce(repo, summarizer, clock):
    with _mock_completion("Summary."):
        summarizer.on_file_changed("p1", "src/a.py", [_chunk("code")])
        clock.now = 29.0
        assert summarizer.run_due() == []
        clock.now = 30.0
        built = summarizer.run_due()
    assert [s.level for s in built] == ["project"]
    assert built[0].scope_path == PROJECT_SCOPE
    assert summarizer.pending() == []


def test_new_change_restarts_debounce(summarizer, clock):
    with _mock_completion("Summary."):
        summarizer.on_file_changed("p1", "src/a.py", [_chunk("one")])
        clock.now = 20.0
        summarizer.on_file_changed("p1", "src/b.py", [_chunk("two", "src/b.py")])
        clock.now = 35.0
        assert summarizer.run_due() == []
        clock.now = 50.0
        assert len(summarizer.run_due()) == 1


def test_flush_ignores_debounce(repo, summarizer):
    with _mock_completion("Summary."):
        summarizer.on_file_changed("p1", "src/a.py", [_chunk("code")])
        built = summarizer.flush("p1")
    assert len(built) == 1
    project = repo.current_summary("p1", "project", PROJECT_SCOPE)
    directory = repo.current_summary("p1", "directory", "src")
    assert project.source_ids == (directory.summary_id,)


def test_flush_unknown_project_is_noop(summarizer):
    assert summarizer.flush("nothing") == []


def test_expensive_model_warns(repo, tokenizer):
    with pytest.warns(UserWarning, match="may be expensive"):
        HierarchicalSummarizer(repo, tokenizer, model="openai/gpt-4o")
