"""Hierarchical summarizer: file, directory, and project summaries via LiteLLM.

File summaries are regenerated whenever a file's live chunk list changes and
cascade into the parent directory summary. The single project summary is
debounced: changes mark the project dirty and it is rebuilt once the debounce
window has passed without further changes, or immediately on flush().

Every regeneration writes a new Summary row and supersedes the previous one;
summaries are never edited in place.
"""

from __future__ import annotations

import logging
import posixpath
import re
import threading
import time
import uuid
import warnings
from collections import defaultdict
from collections.abc import Callable

from contextkit.db.models import Chunk, Summary, utcnow
from contextkit.db.repository import Repository
from contextkit.ingest.embedding_writer import EmbeddingWriter
from contextkit.rag import llm_client
from contextkit.rag.tokenizer import TokenizerAdapter

log = logging.getLogger("contextkit.summarizer")

_PROMPTS: dict[str, str] = {
    "file": (
        "You are a code assistant. Summarize the file '{scope}' in 1-3 sentences "
        "for a retrieval system: what it defines and what it is for.\n\n"
        "File excerpt:\n{text}\n\nSummary:"
    ),
    "directory": (
        "You are a code assistant. Summarize the directory '{scope}' in 1-3 sentences "
        "from the summaries of the files it contains.\n\n"
        "File summaries:\n{text}\n\nSummary:"
    ),
    "project": (
        "You are a code assistant. Summarize the whole project in 1-3 sentences "
        "from the summaries of its directories.\n\n"
        "Directory summaries:\n{text}\n\nSummary:"
    ),
}

_SOURCE_CHAR_LIMIT = 8_000
_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]*")
_CHEAP_SUFFIXES = ("-mini", "-small", "-nano", "-haiku", ":free", "local")

PROJECT_SCOPE = "/"


def directory_of(path: str) -> str:
    """Parent directory of *path*; ``"."`` for top-level files."""
    return posixpath.dirname(path.strip("/")) or "."


def extractive_summary(text: str, sentences: int = 2) -> str:
    """First *sentences* sentences of *text*, used when the model is unavailable."""
    found = [s.strip() for s in _SENTENCE_RE.findall(" ".join(text.split())) if s.strip()]
    if not found:
        return ""
    picked = " ".join(found[:sentences])
    return picked if picked[-1] in ".!?" else picked + "."


class HierarchicalSummarizer:
    """Maintain file → directory → project summaries for a repository.

    Args:
        repo:        Open repository.
        tokenizer:   Adapter used to record each summary's token count.
        writer:      Embedding writer; summaries are indexed on creation. May be
                     None to skip indexing.
        model:       LiteLLM model used to write summaries.
        max_tokens:  Output cap per summary.
        debounce_seconds: Quiet period before the project summary is rebuilt.
        token_model: Tokenizer model for stored token counts.
        timeout:     Per-call deadline for the summary model.
        clock:       Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        repo: Repository,
        tokenizer: TokenizerAdapter,
        writer: EmbeddingWriter | None = None,
        model: str = "openai/gpt-4o-mini",
        max_tokens: int = 200,
        debounce_seconds: float = 30.0,
        token_model: str | None = None,
        timeout: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repo = repo
        self._tokenizer = tokenizer
        self._writer = writer
        self._model = model
        self._max_tokens = max_tokens
        self._debounce = debounce_seconds
        self._token_model = token_model
        self._timeout = timeout
        self._clock = clock
        self._pending: dict[str, float] = {}
        self._pending_lock = threading.Lock()
        self._scope_locks: defaultdict[tuple[str, str, str], threading.Lock] = defaultdict(
            threading.Lock
        )
        self._scope_locks_guard = threading.Lock()
        self._warn_if_expensive()

    # ------------------------------------------------------------------
    # Cascade entry point
    # ------------------------------------------------------------------

    def on_file_changed(self, project_id: str, path: str, chunks: list[Chunk]) -> list[Summary]:
        """Regenerate the file summary and its directory summary; schedule the project.

        An empty *chunks* list retires the file summary.
        """
        written: list[Summary] = []
        file_summary = self.summarize_file(project_id, path, chunks)
        if file_summary is not None:
            written.append(file_summary)
        dir_summary = self.summarize_directory(project_id, directory_of(path))
        if dir_summary is not None:
            written.append(dir_summary)
        self.schedule_project(project_id)
        return written

    # ------------------------------------------------------------------
    # Levels
    # ------------------------------------------------------------------

    def summarize_file(self, project_id: str, path: str, chunks: list[Chunk]) -> Summary | None:
        """Write a new file summary over *chunks* (in document order)."""
        with self._scope_lock(project_id, "file", path):
            previous = self._repo.current_summary(project_id, "file", path)
            if not chunks:
                if previous is not None:
                    self._retire(previous)
                return None
            _check_same_project(project_id, [c.project_id for c in chunks])
            source = "\n".join(c.text for c in chunks)
            return self._store(
                project_id, path, "file", source, [c.chunk_id for c in chunks], previous
            )

    def summarize_directory(self, project_id: str, directory: str) -> Summary | None:
        """Rebuild the summary of *directory* from its immediate child file summaries."""
        with self._scope_lock(project_id, "directory", directory):
            previous = self._repo.current_summary(project_id, "directory", directory)
            children = [
                s
                for s in self._repo.list_current_summaries(project_id, "file")
                if directory_of(s.scope_path) == directory
            ]
            if not children:
                if previous is not None:
                    self._retire(previous)
                return None
            source = "\n".join(f"- {s.scope_path}: {s.text}" for s in children)
            return self._store(
                project_id,
                directory,
                "directory",
                source,
                [s.summary_id for s in children],
                previous,
            )

    def summarize_project(self, project_id: str) -> Summary | None:
        """Rebuild the rolling project summary from the directory summaries."""
        with self._pending_lock:
            self._pending.pop(project_id, None)
        with self._scope_lock(project_id, "project", PROJECT_SCOPE):
            previous = self._repo.current_summary(project_id, "project", PROJECT_SCOPE)
            dirs = self._repo.list_current_summaries(project_id, "directory")
            if not dirs:
                if previous is not None:
                    self._retire(previous)
                return None
            source = "\n".join(f"- {s.scope_path}: {s.text}" for s in dirs)
            return self._store(
                project_id,
                PROJECT_SCOPE,
                "project",
                source,
                [s.summary_id for s in dirs],
                previous,
            )

    # ------------------------------------------------------------------
    # Debounce
    # ------------------------------------------------------------------

    def schedule_project(self, project_id: str) -> None:
        """Mark the project summary stale; each call restarts the debounce window."""
        with self._pending_lock:
            self._pending[project_id] = self._clock() + self._debounce

    def pending(self) -> list[str]:
        with self._pending_lock:
            return sorted(self._pending)

    def run_due(self) -> list[Summary]:
        """Rebuild project summaries whose debounce window has elapsed."""
        now = self._clock()
        with self._pending_lock:
            due = sorted(p for p, at in self._pending.items() if at <= now)
        return [s for p in due if (s := self.summarize_project(p)) is not None]

    def flush(self, project_id: str | None = None) -> list[Summary]:
        """Rebuild pending project summaries now, ignoring the debounce."""
        with self._pending_lock:
            targets = sorted(self._pending) if project_id is None else (
                [project_id] if project_id in self._pending else []
            )
        return [s for p in targets if (s := self.summarize_project(p)) is not None]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _scope_lock(self, project_id: str, level: str, scope: str) -> threading.Lock:
        with self._scope_locks_guard:
            return self._scope_locks[(project_id, level, scope)]

    def _store(
        self,
        project_id: str,
        scope: str,
        level: str,
        source: str,
        source_ids: list[str],
        previous: Summary | None,
    ) -> Summary:
        text = self._generate(level, scope, source)
        summary = Summary(
            summary_id=f"su_{uuid.uuid4().hex}",
            project_id=project_id,
            scope_path=scope,
            level=level,
            text=text,
            token_count=self._tokenizer.count_tokens(text, self._token_model),
            source_ids=tuple(source_ids),
            created_at=utcnow(),
        )
        if previous is not None:
            self._repo.supersede_summary(previous.summary_id, summary.created_at)
        self._repo.add_summary(summary)
        if self._writer is not None:
            self._writer.write_summary(summary, replaces=previous)
        log.debug("%s summary for %s/%s -> %s", level, project_id, scope, summary.summary_id)
        return summary

    def _retire(self, summary: Summary) -> None:
        self._repo.supersede_summary(summary.summary_id, utcnow())
        if self._writer is not None:
            self._writer.remove([summary.summary_id])

    def _generate(self, level: str, scope: str, source: str) -> str:
        """Model-written summary, or the extractive fallback when the call fails."""
        prompt = _PROMPTS[level].format(scope=scope, text=source[:_SOURCE_CHAR_LIMIT])
        try:
            result = llm_client.complete(
                self._model,
                [{"role": "user", "content": prompt}],
                max_tokens=self._max_tokens,
                temperature=0.0,
                timeout=self._timeout,
            )
            text = result.text.strip()
        except Exception as exc:
            log.warning("summary model %s failed for %s %r: %s", self._model, level, scope, exc)
            text = ""
        return text or extractive_summary(source) or f"Summary of {level} {scope}."

    def _warn_if_expensive(self) -> None:
        """Warn if the summary model is not a known cheap model."""
        model = self._model.lower()
        if not any(model.endswith(suffix) or suffix in model for suffix in _CHEAP_SUFFIXES):
            warnings.warn(
                f"summary model '{self._model}' may be expensive. "
                "Consider using 'openai/gpt-4o-mini' to reduce ingest costs.",
                UserWarning,
                stacklevel=3,
            )


def _check_same_project(project_id: str, source_projects: list[str]) -> None:
    strangers = sorted({p for p in source_projects if p != project_id})
    if strangers:
        raise ValueError(
            f"Summary for project {project_id!r} cannot cover sources from {strangers}"
        )
