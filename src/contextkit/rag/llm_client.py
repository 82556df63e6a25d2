"""LiteLLM client wrapper with retry, timeouts, and API key validation.

All completion + embedding calls route through this module. LiteLLM's built-in
retry handles one backoff retry per call; the caller-supplied timeout and
CancelToken are enforced by contextkit.rag.calls.run_call.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

import litellm

from contextkit.rag.calls import CancelToken, run_call

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True
litellm.set_verbose = False  # type: ignore[assignment]


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,  # Local, no key required
    "ollama_chat": None,
}


@dataclass(frozen=True)
class Completion:
    """Text of the first choice plus provider-reported usage."""

    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    provider = model.split("/")[0].lower() if "/" in model else "openai"
    env_var = _PROVIDER_ENV.get(provider, f"{provider.upper()}_API_KEY")

    if env_var is None:
        return  # No key required (e.g. ollama)

    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


def complete(
    model: str,
    messages: list[dict],
    max_tokens: int = 4096,
    temperature: float = 0.0,
    num_retries: int = 1,
    timeout: float = 120.0,
    cancel: CancelToken | None = None,
    response_format: dict | None = None,
) -> Completion:
    """Call litellm.completion() with retry/backoff and a hard deadline.

    Args:
        model: LiteLLM model string (provider/model format).
        messages: OpenAI-style message list.
        max_tokens: Maximum output tokens.
        temperature: Sampling temperature (0 = deterministic).
        num_retries: Retries on transient errors (LiteLLM exponential backoff).
        timeout: Seconds before the call is abandoned.
        cancel: Optional token that aborts the wait when fired.
        response_format: Passed through, e.g. ``{"type": "json_object"}``.

    Raises:
        CallTimeoutError / CallCancelledError: Deadline or cancellation hit.
        litellm.exceptions.APIError: On persistent API failure after retries.
    """
    kwargs: dict = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
        "temperature": temperature,
        "num_retries": num_retries,
        "timeout": timeout,
    }
    if response_format is not None:
        kwargs["response_format"] = response_format

    response = run_call(litellm.completion, timeout=timeout, cancel=cancel, **kwargs)
    usage = getattr(response, "usage", None)
    return Completion(
        text=response.choices[0].message.content or "",
        prompt_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
        completion_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
    )


def embed(
    model: str,
    texts: list[str],
    num_retries: int = 1,
    timeout: float = 30.0,
    cancel: CancelToken | None = None,
) -> list[list[float]]:
    """Call litellm.embedding() for a batch. Returns one vector per input text."""
    if not texts:
        return []
    response = run_call(
        litellm.embedding,
        timeout=timeout,
        cancel=cancel,
        model=model,
        input=texts,
        num_retries=num_retries,
    )
    return [item["embedding"] for item in response.data]

