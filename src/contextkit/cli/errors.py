"""Rich error messages with actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from contextkit.cli.errors import err_no_db
    console.print(err_no_db(".contextkit/contextkit.db"))
    raise typer.Exit(1)
"""

from __future__ import annotations


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_map = {
        "openai": "OPENAI_API_KEY",
        "anthropic": "ANTHROPIC_API_KEY",
        "cohere": "COHERE_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "mistral": "MISTRAL_API_KEY",
        "azure": "AZURE_API_KEY",
    }
    env_var = env_map.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_no_db(db_path: str) -> str:
    """No database at *db_path*."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  contextkit init"
    )


def err_config(message: str) -> str:
    """Configuration failed validation."""
    return (
        f"[red]Error:[/] Invalid configuration: {message}\n"
        "  Fix contextkit.yaml or ~/.contextkit/config.yaml and retry."
    )


def err_unknown_project(project_id: str, known: list[str]) -> str:
    """Project has no ingested content."""
    known_list = ", ".join(known) if known else "(none)"
    return (
        f"[red]Error:[/] Project '{project_id}' has no ingested content.\n"
        f"  Known projects: {known_list}\n"
        f"  Run:  contextkit ingest --project {project_id} <path>"
    )


def err_call_not_found(call_id: str) -> str:
    """Model call id not in the provenance log."""
    return (
        f"[red]Error:[/] No model call recorded with id '{call_id}'.\n"
        "  Call ids are printed by:  contextkit generate"
    )


def err_chunk_too_large(path: str, tokens: int, limit: int) -> str:
    """A chunk exceeded the hard per-chunk limit."""
    return (
        f"[red]Error:[/] A chunk of '{path}' has {tokens:,} tokens (limit {limit:,}).\n"
        "  Lower chunking.chunk_size in contextkit.yaml and re-ingest."
    )


def warn_budget_exceeded(budget: int) -> str:
    """Shown when the budget is below the smallest candidate."""
    return (
        f"[yellow]⚠[/] Token budget {budget:,} is smaller than the smallest candidate piece.\n"
        "  Raise --budget or lower assembly.safety_margin."
    )
