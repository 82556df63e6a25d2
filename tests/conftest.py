"""Shared pytest fixtures."""

from __future__ import annotations

from collections.abc import Callable
from unittest.mock import patch

import pytest

from contextkit.config import ContextKitConfig
from contextkit.db.connection import Database
from contextkit.db.migrations import initialize
from contextkit.db.repository import Repository
from contextkit.engine import ContextEngine
from contextkit.generate.sandbox import TestReport

VOCAB = ("auth", "token", "login", "cache", "parser", "render", "database", "retry")


class FakeTokenizer:
    """Whitespace word count; ``fake/double`` counts every word twice."""

    default_model = "fake/words"

    def family(self, model_id: str) -> str:
        return "fake"

    def count_tokens(self, text: str, model_id: str | None = None) -> int:
        words = len(text.split())
        return words * 2 if model_id == "fake/double" else words

    def counter(self, model_id: str | None = None) -> Callable[[str], int]:
        return lambda text: self.count_tokens(text, model_id)


class FakeEmbedder:
    """Keyword-count vectors over VOCAB plus a small constant component."""

    model = "fake/embed"

    def __init__(self) -> None:
        self.calls: list[list[str]] = []

    def vector(self, text: str) -> list[float]:
        lowered = text.lower()
        return [float(lowered.count(word)) for word in VOCAB] + [0.1]

    def embed(self, texts: list[str], cancel=None) -> list[list[float]]:
        self.calls.append(list(texts))
        return [self.vector(t) for t in texts]

    def embed_one(self, text: str, cancel=None) -> list[float]:
        return self.embed([text], cancel=cancel)[0]


class FakeSandbox:
    """Returns queued reports in order, repeating the last one."""

    def __init__(self, *reports: TestReport) -> None:
        self.reports = list(reports) or [TestReport(passed=True)]
        self.snapshots: list[dict[str, str]] = []

    def run_tests(self, snapshot):
        self.snapshots.append(dict(snapshot))
        index = min(len(self.snapshots) - 1, len(self.reports) - 1)
        return self.reports[index]


def axis(i: int, dims: int = 9, weight: float = 1.0) -> list[float]:
    """Vector of length *dims* with *weight* at index *i*."""
    v = [0.0] * dims
    v[i] = weight
    return v


@pytest.fixture(autouse=True)
def _no_network():
    """Model and embedding calls fail unless a test patches them explicitly."""
    with (
        patch("litellm.completion", side_effect=RuntimeError("network disabled in tests")),
        patch("litellm.embedding", side_effect=RuntimeError("network disabled in tests")),
    ):
        yield


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / "contextkit.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db)


@pytest.fixture
def tokenizer():
    return FakeTokenizer()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def sandbox():
    return FakeSandbox()


@pytest.fixture
def engine(tmp_db, tokenizer, embedder, sandbox):
    cfg = ContextKitConfig()
    cfg.chunking.chunk_size = 200
    cfg.chunking.overlap = 128
    cfg.orchestrator.retry_backoff = 0.0
    return ContextEngine(tmp_db, cfg, tokenizer=tokenizer, embedder=embedder, sandbox=sandbox)


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Run CLI commands inside *tmp_path* against an engine built on the fakes.

    Yields the FakeSandbox the generate command verifies against.
    """
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    for var in (
        "CONTEXTKIT_GENERATION_MODEL",
        "CONTEXTKIT_EMBEDDING_MODEL",
        "CONTEXTKIT_TOKENIZER_MODEL",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr("contextkit.config._GLOBAL_CONFIG_PATH", tmp_path / "global.yaml")

    sandbox = FakeSandbox()
    real_open = ContextEngine.open

    def open_with_fakes(db_path, config=None, **kwargs):
        return real_open(
            db_path,
            config,
            tokenizer=FakeTokenizer(),
            embedder=FakeEmbedder(),
            sandbox=sandbox,
        )

    monkeypatch.setattr(ContextEngine, "open", open_with_fakes)
    yield sandbox
