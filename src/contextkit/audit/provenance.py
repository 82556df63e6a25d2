"""Provenance log: append-only record of every model call and the pieces it saw.

record_call() never raises into the generation path. A failed write is logged
and counted; the caller continues.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterable

from contextkit.db.models import ModelCallRecord, utcnow
from contextkit.db.repository import Repository
from contextkit.errors import NotFoundError

log = logging.getLogger("contextkit.audit")

CALL_STATUSES: tuple[str, ...] = ("ok", "error", "cancelled", "fallback")


class ProvenanceLog:
    """Write and read ModelCallRecords through the repository."""

    def __init__(self, repo: Repository) -> None:
        self._repo = repo
        self._failures = 0
        self._lock = threading.Lock()

    def record_call(
        self,
        *,
        session_id: str | None,
        model: str,
        phase: str,
        status: str,
        chunk_ids_used: Iterable[str] = (),
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        error: str | None = None,
        call_id: str | None = None,
    ) -> ModelCallRecord:
        """Append a record and return it, whether or not the write succeeded."""
        record = ModelCallRecord(
            call_id=call_id or f"mc_{uuid.uuid4().hex}",
            session_id=session_id,
            model=model,
            phase=phase,
            status=status if status in CALL_STATUSES else "error",
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            chunk_ids_used=frozenset(chunk_ids_used),
            timestamp=utcnow(),
            error=error,
        )
        try:
            self._repo.add_model_call(record)
        except Exception:
            with self._lock:
                self._failures += 1
            log.exception("failed to write provenance record %s", record.call_id)
        return record

    def get_provenance(self, call_id: str) -> ModelCallRecord:
        """Raises NotFoundError for an unknown call id."""
        record = self._repo.get_model_call(call_id)
        if record is None:
            raise NotFoundError("model call", call_id)
        return record

    def calls_for_session(self, session_id: str) -> list[ModelCallRecord]:
        return self._repo.list_model_calls(session_id)

    def stats(self, session_id: str | None = None) -> dict[str, int]:
        stats = self._repo.model_call_stats(session_id)
        with self._lock:
            stats["write_failures"] = self._failures
        return stats

    @property
    def write_failures(self) -> int:
        with self._lock:
            return self._failures
