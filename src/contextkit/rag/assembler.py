"""Context assembler: retrieval, priority scoring, token budget, summary backfill.

Pipeline:
  1. Embed the query with the indexing embedding model.
  2. Retrieve up to ``top_k`` chunk candidates for the project; keep live chunks.
  3. Priority = w_sim*similarity + w_recency*recency + w_hot*hot + w_conv*conversation.
     Candidates under ``min_similarity`` are dropped unless on a hot path.
     Ties: most recent created_at, then chunk_id.
  4. Greedy selection in priority order against budget - safety margin.
     A candidate that does not fit is skipped, not a stop signal.
  5. Backfill remaining room with live summaries: file, directory, then project,
     each level ordered by similarity. Same skip rule.
  6. Recount with the target model when it differs from the ingestion
     tokenizer; trim the last piece at a line boundary if the total overflows.

The assembler only reads chunk, summary and index state. Its one write is the
hot-window cache entry for the session.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from contextkit.config import AssemblyCfg
from contextkit.db.models import (
    RETRIEVABLE_TYPES,
    SUMMARY_LEVELS,
    Chunk,
    ContextBundle,
    ContextPiece,
    Summary,
    parse_ts,
    utcnow,
)
from contextkit.db.repository import Repository
from contextkit.errors import BudgetExceededError
from contextkit.rag.cache import HotWindowCache
from contextkit.rag.calls import CancelToken
from contextkit.rag.index import Embedder, EmbeddingIndex
from contextkit.rag.tokenizer import TokenizerAdapter

if TYPE_CHECKING:
    from contextkit.generate.session import Session

log = logging.getLogger("contextkit.assembler")


@dataclass(frozen=True)
class ScoredCandidate:
    """A live chunk with its similarity and composite priority."""

    chunk: Chunk
    similarity: float
    priority: float
    hot: bool = False


class ContextAssembler:
    """Build budgeted, provenance-tagged context bundles.

    Args:
        repo:      Open repository (read only).
        index:     Embedding index for the indexing model.
        embedder:  Client for the same embedding model, used for queries.
        tokenizer: Adapter used for the recount/trim step.
        config:    Budget, pool size and priority weights.
        cache:     Optional hot-window cache; used only when a session is given.
        token_model: Tokenizer model the stored token counts were measured with.
    """

    def __init__(
        self,
        repo: Repository,
        index: EmbeddingIndex,
        embedder: Embedder,
        tokenizer: TokenizerAdapter,
        config: AssemblyCfg | None = None,
        cache: HotWindowCache | None = None,
        token_model: str | None = None,
    ) -> None:
        self.repo = repo
        self.index = index
        self.embedder = embedder
        self.tokenizer = tokenizer
        self.config = config or AssemblyCfg()
        self.cache = cache
        self.token_model = token_model or tokenizer.default_model

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def assemble(
        self,
        query: str,
        project_id: str,
        token_budget: int | None = None,
        hot_paths: Iterable[str] = (),
        session: Session | None = None,
        now: datetime | None = None,
        *,
        query_vector: list[float] | None = None,
        safety_margin: int | None = None,
        top_k: int | None = None,
        target_model: str | None = None,
        summary_levels: tuple[str, ...] = SUMMARY_LEVELS,
        cancel: CancelToken | None = None,
    ) -> ContextBundle:
        """Assemble a bundle for *query* within *token_budget*.

        Args:
            query:        Natural-language request.
            project_id:   Corpus to search.
            token_budget: Nominal budget; defaults to ``assembly.token_budget``.
            hot_paths:    Files open or edited in the client; boosted and exempt
                          from the similarity floor.
            session:      Active session; enables the conversation boost and the
                          hot-window cache.
            now:          Reference time for recency. Pass it for reproducible
                          output.
            query_vector: Pre-computed query embedding; skips step 1.
            target_model: Model that will read the prompt; triggers the recount.
            summary_levels: Summary levels used for backfill, in order; () disables it.

        Raises:
            ValueError: Negative budget or margin.
        """
        cfg = self.config
        budget = cfg.token_budget if token_budget is None else token_budget
        margin = cfg.safety_margin if safety_margin is None else safety_margin
        if budget < 0 or margin < 0:
            raise ValueError("token_budget and safety_margin must be >= 0")
        hot = tuple(sorted(set(hot_paths)))
        pool = cfg.top_k if top_k is None else top_k
        session_id = session.session_id if session is not None else None
        available = max(0, budget - margin)

        cache_key = (session_id, project_id) if session_id and self.cache else None
        signature = _signature(query, hot, budget, margin, pool, target_model, summary_levels)
        if cache_key is not None:
            reused = self._from_cache(cache_key, signature, project_id, budget, margin)
            if reused is not None:
                return reused

        if query_vector is None:
            query_vector = self.embedder.embed_one(query, cancel=cancel)
        when = now or datetime.now(timezone.utc)

        hits = self._retrieve(query_vector, project_id, pool)
        hits += self._pinned(query_vector, project_id, hot, session, {c.chunk_id for c, _ in hits})
        candidates = self.score_candidates(hits, set(hot), session, when)
        pieces, used = _select(
            [_chunk_piece(c) for c in candidates], available, start_tokens=0
        )

        summary_pieces: list[ContextPiece] = []
        if summary_levels:
            summary_pieces = self._summary_candidates(query_vector, project_id, summary_levels)
            extra, used = _select(summary_pieces, available, start_tokens=used)
            pieces.extend(extra)

        warnings: list[str] = []
        if target_model and target_model != self.token_model:
            pieces, used = self._recount(pieces, available, target_model, warnings)

        budget_exceeded = False
        pool_pieces = [_chunk_piece(c) for c in candidates] + summary_pieces
        if not pieces and pool_pieces:
            smallest = min(p.token_count for p in pool_pieces)
            if smallest > available:
                budget_exceeded = True
                warnings.append(str(BudgetExceededError(available, smallest)))
                log.warning("assembly for %s: %s", project_id, warnings[-1])

        bundle = ContextBundle(
            session_id=session_id,
            project_id=project_id,
            token_budget=budget,
            safety_margin=margin,
            tokens_used=used,
            pieces=tuple(replace(p, rank=i) for i, p in enumerate(pieces)),
            created_at=utcnow(),
            warnings=tuple(warnings),
            budget_exceeded=budget_exceeded,
        )
        if cache_key is not None:
            self.cache.put(cache_key, bundle, signature)
        log.debug(
            "assembled %d piece(s), %d/%d tokens for %s",
            len(bundle.pieces), used, available, project_id,
        )
        return bundle

    def score_candidates(
        self,
        hits: list[tuple[Chunk, float]],
        hot_paths: set[str],
        session: Session | None,
        now: datetime,
    ) -> list[ScoredCandidate]:
        """Composite priority for each retrieved chunk, best first."""
        cfg = self.config
        recent = session.recent_chunk_ids(cfg.conversation_turns) if session is not None else set()
        window = float(cfg.recency_window_seconds)
        scored: list[ScoredCandidate] = []
        for chunk, similarity in hits:
            is_hot = chunk.source_path in hot_paths
            if similarity < cfg.min_similarity and not is_hot:
                continue
            age = max(0.0, (now - parse_ts(chunk.created_at)).total_seconds())
            recency = max(0.0, 1.0 - age / window) if window > 0 else 0.0
            priority = (
                cfg.similarity_weight * similarity
                + cfg.recency_weight * recency
                + cfg.hot_path_weight * (1.0 if is_hot else 0.0)
                + cfg.conversation_weight * (1.0 if chunk.chunk_id in recent else 0.0)
            )
            scored.append(ScoredCandidate(chunk, similarity, round(priority, 9), is_hot))
        scored.sort(key=lambda c: c.chunk.chunk_id)
        scored.sort(key=lambda c: (c.priority, c.chunk.created_at), reverse=True)
        return scored

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def _retrieve(
        self, vector: list[float], project_id: str, top_k: int
    ) -> list[tuple[Chunk, float]]:
        hits = self.index.query(vector, project_id, top_k, type_filter=RETRIEVABLE_TYPES)
        if not hits:
            return []
        live = self.repo.live_chunk_ids(item_id for item_id, _ in hits)
        chunks = self.repo.get_chunks(live)
        return [(chunks[i], score) for i, score in hits if i in chunks]

    def _pinned(
        self,
        vector: list[float],
        project_id: str,
        hot_paths: tuple[str, ...],
        session: Session | None,
        seen: set[str],
    ) -> list[tuple[Chunk, float]]:
        """Live chunks of hot paths and recent turns that retrieval did not return."""
        extra: dict[str, Chunk] = {}
        for path in hot_paths:
            for chunk in self.repo.list_chunks_for_path(project_id, path):
                extra.setdefault(chunk.chunk_id, chunk)
        if session is not None:
            recent = self.repo.live_chunk_ids(
                session.recent_chunk_ids(self.config.conversation_turns)
            )
            for chunk_id, chunk in sorted(self.repo.get_chunks(recent).items()):
                if chunk.project_id == project_id:
                    extra.setdefault(chunk_id, chunk)
        missing = [cid for cid in extra if cid not in seen]
        scores = self.index.score(vector, project_id, missing)
        return [(extra[cid], scores.get(cid, 0.0)) for cid in missing]

    def _summary_candidates(
        self, vector: list[float], project_id: str, levels: tuple[str, ...]
    ) -> list[ContextPiece]:
        """Live summaries as pieces, level by level; by similarity within a level."""
        current = [s for s in self.repo.list_current_summaries(project_id) if s.level in levels]
        if not current:
            return []
        pool = max(len(current), self.config.top_k)
        hits = dict(self.index.query(vector, project_id, pool, type_filter=levels))
        ordered: list[ContextPiece] = []
        for level in levels:
            at_level = [s for s in current if s.level == level]
            at_level.sort(key=lambda s: s.summary_id)
            at_level.sort(key=lambda s: (hits.get(s.summary_id, 0.0), s.created_at), reverse=True)
            ordered.extend(_summary_piece(s, hits.get(s.summary_id, 0.0)) for s in at_level)
        return ordered

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _from_cache(
        self,
        key: tuple[str, str],
        signature: str,
        project_id: str,
        budget: int,
        margin: int,
    ) -> ContextBundle | None:
        assert self.cache is not None
        cached = self.cache.get(key)
        if cached is None:
            return None
        current = self._current_fingerprints(cached.pieces)
        pieces = self.cache.valid_pieces(key, current, signature)
        if pieces is None:
            return None
        return ContextBundle(
            session_id=key[0],
            project_id=project_id,
            token_budget=budget,
            safety_margin=margin,
            tokens_used=sum(p.token_count for p in pieces),
            pieces=tuple(pieces),
            created_at=utcnow(),
            warnings=cached.warnings,
            budget_exceeded=cached.budget_exceeded,
            cached_piece_ids=tuple(p.ref_id for p in pieces),
        )

    def _current_fingerprints(self, pieces: Iterable[ContextPiece]) -> dict[str, str]:
        """Fingerprints of the live records behind *pieces*; dead ones are absent."""
        pieces = list(pieces)
        chunk_ids = [p.ref_id for p in pieces if p.kind == "chunk"]
        summary_ids = [p.ref_id for p in pieces if p.kind == "summary"]
        live = self.repo.live_chunk_ids(chunk_ids)
        current = {cid: c.fingerprint for cid, c in self.repo.get_chunks(live).items()}
        for sid, s in self.repo.get_summaries(summary_ids).items():
            if s.superseded_at is None:
                current[sid] = s.fingerprint
        return current

    # ------------------------------------------------------------------
    # Recount / trim
    # ------------------------------------------------------------------

    def _recount(
        self,
        pieces: list[ContextPiece],
        available: int,
        model: str,
        warnings: list[str],
    ) -> tuple[list[ContextPiece], int]:
        counted = [
            replace(p, token_count=self.tokenizer.count_tokens(p.text, model)) for p in pieces
        ]
        total = sum(p.token_count for p in counted)
        while counted and total > available:
            last = counted.pop()
            total -= last.token_count
            trimmed = self._trim_to(last, available - total, model)
            if trimmed is not None:
                counted.append(trimmed)
                total += trimmed.token_count
                warnings.append(f"Trimmed {last.ref_id} to {trimmed.token_count} tokens for {model}")
            else:
                warnings.append(f"Dropped {last.ref_id}: no line fits the remaining budget")
        return counted, total

    def _trim_to(self, piece: ContextPiece, room: int, model: str) -> ContextPiece | None:
        """Longest line-prefix of *piece* that fits in *room* tokens, or None."""
        if room <= 0:
            return None
        lines = piece.text.splitlines(keepends=True)
        lo, hi = 0, len(lines) - 1
        best: tuple[str, int] | None = None
        while lo <= hi:
            mid = (lo + hi) // 2
            text = "".join(lines[: mid + 1]).rstrip("\n")
            tokens = self.tokenizer.count_tokens(text, model)
            if text and tokens <= room:
                best = (text, tokens)
                lo = mid + 1
            else:
                hi = mid - 1
        if best is None:
            return None
        return replace(piece, text=best[0], token_count=best[1], truncated=True)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _select(
    pieces: list[ContextPiece], available: int, start_tokens: int
) -> tuple[list[ContextPiece], int]:
    """Greedy skip-not-abort selection. Returns (accepted, running total)."""
    accepted: list[ContextPiece] = []
    total = start_tokens
    for piece in pieces:
        if total + piece.token_count > available:
            continue
        accepted.append(piece)
        total += piece.token_count
    return accepted, total


def _chunk_piece(candidate: ScoredCandidate) -> ContextPiece:
    c = candidate.chunk
    return ContextPiece(
        ref_id=c.chunk_id,
        kind="chunk",
        token_count=c.token_count,
        relevance_score=candidate.priority,
        rank=0,
        source_path=c.source_path,
        text=c.text,
        fingerprint=c.fingerprint,
        piece_type=c.type,
    )


def _summary_piece(summary: Summary, similarity: float) -> ContextPiece:
    return ContextPiece(
        ref_id=summary.summary_id,
        kind="summary",
        token_count=summary.token_count,
        relevance_score=similarity,
        rank=0,
        source_path=summary.scope_path,
        text=summary.text,
        fingerprint=summary.fingerprint,
        piece_type=summary.level,
    )


def _signature(*parts: object) -> str:
    return hashlib.sha256(json.dumps(parts, sort_keys=True, default=str).encode()).hexdigest()
