"""Explicit session entity for generation requests.

A session carries the conversation turns of one client against one project.
It is created and expired through SessionManager and passed by id into every
assemble/generate call; there is no process-wide conversation state.
"""

from __future__ import annotations

import threading
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from contextkit.db.models import utcnow
from contextkit.errors import NotFoundError


MAX_TURNS = 100


@dataclass(frozen=True)
class Turn:
    role: str
    text: str
    chunk_ids: frozenset[str] = frozenset()
    at: str = field(default_factory=utcnow)


@dataclass
class Session:
    """Conversation turns of one client; only the last *max_turns* are kept."""

    session_id: str
    project_id: str
    created_at: str = field(default_factory=utcnow)
    max_turns: int = MAX_TURNS
    turns: deque[Turn] = field(default_factory=deque)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.max_turns < 1:
            raise ValueError("max_turns must be >= 1")
        self.turns = deque(self.turns, maxlen=self.max_turns)

    def add_turn(
        self, role: str, text: str, chunk_ids: frozenset[str] | set[str] = frozenset()
    ) -> Turn:
        """Record a turn and the chunk ids it referenced; the oldest turn drops out at the cap."""
        turn = Turn(role=role, text=text, chunk_ids=frozenset(chunk_ids))
        with self._lock:
            self.turns.append(turn)
        return turn

    def recent_chunk_ids(self, turns: int = 10) -> set[str]:
        """Chunk ids referenced in the last *turns* turns."""
        with self._lock:
            window = list(self.turns)[-turns:] if turns > 0 else []
        return {cid for t in window for cid in t.chunk_ids}


class SessionManager:
    """Create, look up and expire sessions.

    Args:
        ttl_seconds: Idle lifetime; every successful get() extends it.
        on_expire: Callbacks run with the session id when a session ends.
        clock: Monotonic time source, injectable for tests.
        max_turns: Turn history kept per session.
    """

    def __init__(
        self,
        ttl_seconds: float = 3_600,
        on_expire: list[Callable[[str], object]] | None = None,
        clock: Callable[[], float] = time.monotonic,
        max_turns: int = MAX_TURNS,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_turns = max_turns
        self._on_expire = list(on_expire or [])
        self._clock = clock
        self._sessions: dict[str, tuple[Session, float]] = {}
        self._lock = threading.Lock()

    def create(self, project_id: str) -> Session:
        session = Session(
            session_id=f"se_{uuid.uuid4().hex}", project_id=project_id, max_turns=self.max_turns
        )
        with self._lock:
            self._sessions[session.session_id] = (session, self._clock() + self.ttl_seconds)
        return session

    def get(self, session_id: str) -> Session:
        """Return the live session.

        Raises:
            NotFoundError: Unknown or expired session.
        """
        with self._lock:
            found = self._sessions.get(session_id)
            if found is not None and found[1] > self._clock():
                self._sessions[session_id] = (found[0], self._clock() + self.ttl_seconds)
                return found[0]
        if found is not None:
            self.expire(session_id)
        raise NotFoundError("session", session_id)

    def expire(self, session_id: str) -> bool:
        """End a session. Returns False when it did not exist."""
        with self._lock:
            removed = self._sessions.pop(session_id, None)
        if removed is None:
            return False
        for callback in self._on_expire:
            callback(session_id)
        return True

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            doomed = [sid for sid, (_, at) in self._sessions.items() if at <= now]
        return sum(1 for sid in doomed if self.expire(sid))

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
