"""Model-specific token counting.

Budget math is only exact when tokens are counted with the tokenizer of the
model that will receive the prompt, so every count names its model. Model
families are resolved through LiteLLM's provider table; identifiers LiteLLM
cannot place raise UnsupportedModelError instead of silently falling back to a
character estimate.
"""

from __future__ import annotations

import hashlib
import threading
from collections import OrderedDict
from collections.abc import Callable

import litellm

from contextkit.errors import UnsupportedModelError
from contextkit.rag.calls import with_retry


class TokenizerAdapter:
    """Count tokens per model with a bounded memo.

    Args:
        default_model: Model used when ``count_tokens`` is called without one.
        cache_size: Maximum memoised ``(model, text digest)`` entries.
        backoff: Seconds to wait before the single retry on a tokenizer error.
    """

    def __init__(
        self,
        default_model: str = "openai/gpt-4o",
        cache_size: int = 8_192,
        backoff: float = 0.2,
    ) -> None:
        self.default_model = default_model
        self._cache_size = cache_size
        self._backoff = backoff
        self._memo: OrderedDict[tuple[str, str], int] = OrderedDict()
        self._families: dict[str, str] = {}
        self._lock = threading.Lock()

    def family(self, model_id: str) -> str:
        """Return the provider family for *model_id*.

        Raises:
            UnsupportedModelError: LiteLLM cannot resolve the identifier.
        """
        with self._lock:
            cached = self._families.get(model_id)
        if cached is not None:
            return cached
        if not model_id or not model_id.strip():
            raise UnsupportedModelError(model_id)
        try:
            _, provider, _, _ = litellm.get_llm_provider(model=model_id)
        except Exception as exc:
            raise UnsupportedModelError(model_id) from exc
        with self._lock:
            self._families[model_id] = provider
        return provider

    def count_tokens(self, text: str, model_id: str | None = None) -> int:
        """Deterministic token count of *text* for *model_id*."""
        model = model_id or self.default_model
        self.family(model)
        if not text:
            return 0

        key = (model, hashlib.sha256(text.encode("utf-8")).hexdigest())
        with self._lock:
            if key in self._memo:
                self._memo.move_to_end(key)
                return self._memo[key]

        count = with_retry(
            lambda: litellm.token_counter(model=model, text=text),
            retries=1,
            backoff=self._backoff,
        )

        with self._lock:
            self._memo[key] = count
            if len(self._memo) > self._cache_size:
                self._memo.popitem(last=False)
        return count

    def counter(self, model_id: str | None = None) -> Callable[[str], int]:
        """Return a one-argument counter bound to *model_id*."""
        model = model_id or self.default_model
        self.family(model)
        return lambda text: self.count_tokens(text, model)
