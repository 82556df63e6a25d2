"""Exception taxonomy for the context assembly engine.

Recovery rules:
  - UnsupportedModelError / model call failures retry once with backoff before surfacing.
  - PlanningError / GenerationError are raised only after degrading to a smaller context.
  - CacheInconsistencyError never reaches the caller; the hot window invalidates itself.
  - BudgetExceededError is a warning carried on the bundle, not a hard failure.
"""

from __future__ import annotations


class ContextKitError(Exception):
    """Base exception for all contextkit errors."""


class NotFoundError(ContextKitError, KeyError):
    """A chunk, summary, session or call record does not exist."""

    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key!r}")

    def __str__(self) -> str:
        return f"{self.kind} not found: {self.key!r}"


class BudgetExceededError(ContextKitError):
    """Caller-supplied budget is below the smallest viable bundle."""

    def __init__(self, available: int, smallest: int) -> None:
        self.available = available
        self.smallest = smallest
        super().__init__(
            f"Token budget leaves {available:,} tokens after the safety margin; "
            f"the smallest candidate needs {smallest:,}."
        )


class UnsupportedModelError(ContextKitError, ValueError):
    """No tokenizer / provider is known for the model identifier."""

    def __init__(self, model: str) -> None:
        self.model = model
        super().__init__(f"Unsupported model identifier: {model!r}")


class ChunkTooLargeError(ContextKitError, ValueError):
    """A chunk exceeds the maximum chunk size; callers must pre-split."""

    def __init__(self, tokens: int, limit: int) -> None:
        self.tokens = tokens
        self.limit = limit
        super().__init__(f"Chunk has {tokens:,} tokens; the limit is {limit:,}.")


class PlanningError(ContextKitError):
    """Model output could not be decoded into a plan after the retry."""


class GenerationError(ContextKitError):
    """Model call or output decoding failed after retry and fallback."""


class VerificationFailed(ContextKitError):
    """Sandbox still reports failing tests after all repair cycles."""

    def __init__(self, failure_logs: list[str]) -> None:
        self.failure_logs = failure_logs
        super().__init__(f"Verification failed after {len(failure_logs)} attempt(s).")


class CacheInconsistencyError(ContextKitError):
    """A hot-window entry references a chunk whose fingerprint changed."""

    def __init__(self, ref_id: str) -> None:
        self.ref_id = ref_id
        super().__init__(f"Fingerprint mismatch for cached piece {ref_id!r}")


class CallTimeoutError(ContextKitError, TimeoutError):
    """An external call (model, embedding, sandbox) exceeded its timeout."""


class CallCancelledError(ContextKitError):
    """An external call was cancelled by the caller."""
