"""ContextEngine: the request/response surface over the whole pipeline.

Wires the store, index, summarizer, assembler, cache, orchestrator and audit
log from one ContextKitConfig around a single sqlite connection.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

from contextkit.audit.provenance import ProvenanceLog
from contextkit.config import ContextKitConfig
from contextkit.db.connection import Database
from contextkit.db.migrations import initialize
from contextkit.db.models import TIMESTAMP_FORMAT
from contextkit.db.repository import Repository
from contextkit.db.store import ChunkStore
from contextkit.generate.orchestrator import (
    GenerationRequest,
    GenerationResult,
    ModelOrchestrator,
)
from contextkit.generate.sandbox import CommandSandbox, Sandbox
from contextkit.generate.session import MAX_TURNS, Session, SessionManager
from contextkit.ingest.embedding_writer import EmbeddingWriter
from contextkit.ingest.pipeline import IngestPipeline
from contextkit.ingest.summarizer import HierarchicalSummarizer
from contextkit.rag.assembler import ContextAssembler
from contextkit.rag.cache import HotWindowCache
from contextkit.rag.calls import CancelToken
from contextkit.rag.index import Embedder, EmbeddingIndex
from contextkit.rag.tokenizer import TokenizerAdapter

log = logging.getLogger("contextkit.engine")


@dataclass(frozen=True)
class PieceView:
    id: str
    token_count: int
    source_path: str
    score: float
    preview: str
    kind: str = "chunk"


@dataclass(frozen=True)
class AssembleResponse:
    pieces: list[PieceView]
    tokens_used: int
    warnings: list[str] = field(default_factory=list)
    budget_exceeded: bool = False


@dataclass(frozen=True)
class GenerateResponse:
    plan_summary: str
    diffs_or_files: list[dict]
    sources: list[str]
    warnings: list[str]
    state: str
    failure_logs: list[str] = field(default_factory=list)
    request_id: str = ""
    call_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class IngestResponse:
    chunk_ids: list[str]


class ContextEngine:
    """High-level API: ingest, assemble, generate, sessions.

    Args:
        conn: Open connection with the schema initialised.
        config: Loaded configuration.
        tokenizer / embedder / sandbox: Optional replacements for the
            configured collaborators.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: ContextKitConfig | None = None,
        *,
        tokenizer: TokenizerAdapter | None = None,
        embedder: Embedder | None = None,
        sandbox: Sandbox | None = None,
    ) -> None:
        cfg = config or ContextKitConfig()
        self.config = cfg
        self.conn = conn
        self.repo = Repository(conn)
        self.tokenizer = tokenizer or TokenizerAdapter(default_model=cfg.chunking.tokenizer_model)
        self.embedder = embedder or Embedder(
            cfg.embedding.model,
            batch_size=cfg.embedding.batch_size,
            timeout=cfg.timeouts.embedding,
        )
        self.index = EmbeddingIndex(self.repo, self.embedder.model)
        self.store = ChunkStore(
            self.repo,
            self.tokenizer,
            model_id=cfg.chunking.tokenizer_model,
            max_chunk_tokens=cfg.chunking.max_chunk_tokens,
        )
        writer = EmbeddingWriter(self.index, self.embedder)
        self.summarizer = HierarchicalSummarizer(
            self.repo,
            self.tokenizer,
            writer,
            model=cfg.summaries.model,
            max_tokens=cfg.summaries.max_tokens,
            debounce_seconds=cfg.summaries.project_debounce_seconds,
            token_model=cfg.chunking.tokenizer_model,
            timeout=cfg.timeouts.completion,
        )
        self.pipeline = IngestPipeline(
            self.store,
            writer,
            self.summarizer,
            chunk_size=cfg.chunking.chunk_size,
            overlap=cfg.chunking.overlap,
            binary_size_limit=cfg.chunking.binary_size_limit,
        )
        self.cache = HotWindowCache(cfg.cache.max_entries, cfg.cache.ttl_seconds)
        self.sessions = SessionManager(
            cfg.cache.ttl_seconds,
            on_expire=[self.cache.expire_session],
            max_turns=max(MAX_TURNS, cfg.assembly.conversation_turns),
        )
        self.assembler = ContextAssembler(
            self.repo,
            self.index,
            self.embedder,
            self.tokenizer,
            cfg.assembly,
            cache=self.cache,
            token_model=cfg.chunking.tokenizer_model,
        )
        self.provenance = ProvenanceLog(self.repo)
        self.orchestrator = ModelOrchestrator(
            self.assembler,
            self.provenance,
            cfg.generation.model,
            sandbox=sandbox
            or CommandSandbox(cfg.sandbox.command, cfg.sandbox.timeout_seconds),
            config=cfg.orchestrator,
            fallback_model=cfg.generation.fallback_model or None,
            max_output_tokens=cfg.generation.max_output_tokens,
            temperature=cfg.generation.temperature,
            timeout=cfg.timeouts.completion,
        )

    @classmethod
    def open(
        cls, db_path: Path | str, config: ContextKitConfig | None = None, **kwargs: object
    ) -> ContextEngine:
        """Open (creating if needed) the database at *db_path* and build an engine."""
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = Database(db_path).connect()
        initialize(conn)
        return cls(conn, config, **kwargs)

    def close(self) -> None:
        """Flush pending project summaries and close the connection."""
        try:
            self.summarizer.flush()
        finally:
            self.conn.close()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest(
        self,
        project_id: str,
        path: str,
        raw_text: str | bytes,
        type: str = "code",  # noqa: A002
    ) -> IngestResponse:
        changed = True
        try:
            result = self.pipeline.ingest(project_id, path, raw_text, type)
            changed = result.changed
        finally:
            # a failed ingest may already have made new refs live
            if changed:
                self.cache.clear_project(project_id)
        return IngestResponse(chunk_ids=list(result.chunk_ids))

    def flush_summaries(self, project_id: str | None = None) -> int:
        return len(self.summarizer.flush(project_id))

    def delete_project(self, project_id: str) -> None:
        self.pipeline.delete_project(project_id)
        self.cache.clear_project(project_id)

    def purge_superseded(self, older_than_seconds: float) -> int:
        """Drop content superseded more than *older_than_seconds* ago."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)
        removed = self.repo.purge_superseded(cutoff.strftime(TIMESTAMP_FORMAT))
        log.info("purged %d superseded item(s)", removed)
        return removed

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, project_id: str) -> Session:
        return self.sessions.create(project_id)

    def expire_session(self, session_id: str) -> bool:
        return self.sessions.expire(session_id)

    # ------------------------------------------------------------------
    # Assembly + generation
    # ------------------------------------------------------------------

    def assemble(
        self,
        project_id: str,
        prompt: str,
        token_budget: int | None = None,
        hot_paths: Iterable[str] = (),
        session_id: str | None = None,
        cancel: CancelToken | None = None,
    ) -> AssembleResponse:
        """Raises NotFoundError for an unknown or expired *session_id*."""
        session = self.sessions.get(session_id) if session_id else None
        bundle = self.assembler.assemble(
            prompt,
            project_id,
            token_budget=token_budget,
            hot_paths=hot_paths,
            session=session,
            cancel=cancel,
        )
        return AssembleResponse(
            pieces=[
                PieceView(
                    p.ref_id, p.token_count, p.source_path, p.relevance_score, p.preview, p.kind
                )
                for p in bundle.pieces
            ],
            tokens_used=bundle.tokens_used,
            warnings=list(bundle.warnings),
            budget_exceeded=bundle.budget_exceeded,
        )

    def generate(
        self,
        project_id: str,
        prompt: str,
        session_id: str,
        max_context_tokens: int | None = None,
        request_id: str | None = None,
        hot_paths: Iterable[str] = (),
        workspace: Mapping[str, str] | None = None,
        cancel: CancelToken | None = None,
    ) -> GenerateResponse:
        """Run the orchestrator. Raises NotFoundError for an unknown session."""
        session = self.sessions.get(session_id)
        result = self.orchestrator.run(
            GenerationRequest(
                project_id=project_id,
                prompt=prompt,
                session=session,
                max_context_tokens=max_context_tokens or self.config.assembly.token_budget,
                hot_paths=tuple(hot_paths),
                workspace=dict(workspace or {}),
                request_id=request_id,
                cancel=cancel,
            )
        )
        return _to_response(result)

    def status(self, project_id: str) -> dict[str, object]:
        """Corpus, summary, index, cache and audit counters for *project_id*."""
        return {
            "chunks": self.store.stats(project_id),
            "artifacts": len(self.repo.list_artifacts(project_id)),
            "summaries": len(self.repo.list_current_summaries(project_id)),
            "vectors": self.index.count(project_id),
            "project_summary_pending": project_id in self.summarizer.pending(),
            "cache": self.cache.stats(),
            "calls": self.provenance.stats(),
        }


def _to_response(result: GenerationResult) -> GenerateResponse:
    changes: list[dict] = []
    if result.output is not None:
        changes = [{"path": f.path, "content": f.content} for f in result.output.files]
        changes += [{"path": d.path, "diff": d.diff} for d in result.output.diffs]
    return GenerateResponse(
        plan_summary=result.plan.summary if result.plan else "",
        diffs_or_files=changes,
        sources=list(result.sources),
        warnings=list(result.warnings),
        state=result.state.value,
        failure_logs=list(result.failure_logs),
        request_id=result.request_id,
        call_ids=list(result.call_ids),
    )
