"""contextkit configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site, not in this module)
  2. Environment variables  (CONTEXTKIT_GENERATION_MODEL, CONTEXTKIT_EMBEDDING_MODEL,
                             CONTEXTKIT_TOKENIZER_MODEL)
  3. Per-project contextkit.yaml
  4. Global ~/.contextkit/config.yaml  (model defaults only, no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import dataclasses
import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".contextkit"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "contextkit.yaml"

# Key names that suggest a credential are forbidden in global config.
# Does NOT match legitimate keys like token_budget, max_tokens, max_chunk_tokens.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

MIN_OVERLAP_TOKENS = 128
MAX_OVERLAP_TOKENS = 512
MAX_CHUNK_TOKENS = 8_000


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class EmbeddingCfg:
    """Embedding model used for both indexing and query embedding."""

    model: str = "openai/text-embedding-3-small"
    batch_size: int = 64


@dataclass
class GenerationCfg:
    """Generative model used by the orchestrator."""

    model: str = "openai/gpt-4o"
    fallback_model: str = ""
    max_output_tokens: int = 4_096
    temperature: float = 0.0


@dataclass
class ChunkingCfg:
    """Sliding-window chunking parameters (tokens)."""

    tokenizer_model: str = "openai/gpt-4o"
    chunk_size: int = 1_024
    overlap: int = 256
    max_chunk_tokens: int = MAX_CHUNK_TOKENS
    binary_size_limit: int = 1_048_576


@dataclass
class AssemblyCfg:
    """Context assembly: budget, candidate pool, and priority weights."""

    token_budget: int = 500_000
    safety_margin: int = 2_000
    top_k: int = 500
    min_similarity: float = 0.3
    similarity_weight: float = 1.0
    recency_weight: float = 0.15
    hot_path_weight: float = 0.5
    conversation_weight: float = 0.25
    recency_window_seconds: int = 86_400
    conversation_turns: int = 10


@dataclass
class SummariesCfg:
    """Hierarchical summarizer."""

    model: str = "openai/gpt-4o-mini"
    max_tokens: int = 200
    project_debounce_seconds: float = 30.0


@dataclass
class CacheCfg:
    """Hot-window cache bounds."""

    max_entries: int = 256
    ttl_seconds: int = 3_600


@dataclass
class OrchestratorCfg:
    """Plan → expand → verify/repair protocol."""

    max_repair_cycles: int = 2
    plan_top_k: int = 5
    repair_top_k: int = 20
    plan_budget: int = 16_000
    fallback_fraction: float = 0.25
    retry_backoff: float = 1.0


@dataclass
class SandboxCfg:
    """External test runner invoked in the verifying state."""

    command: list[str] = field(default_factory=lambda: ["pytest", "-q"])
    timeout_seconds: int = 600


@dataclass
class TimeoutsCfg:
    """Per-call deadlines (seconds) for external services."""

    embedding: float = 30.0
    completion: float = 120.0


@dataclass
class ContextKitConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    generation: GenerationCfg = field(default_factory=GenerationCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    assembly: AssemblyCfg = field(default_factory=AssemblyCfg)
    summaries: SummariesCfg = field(default_factory=SummariesCfg)
    cache: CacheCfg = field(default_factory=CacheCfg)
    orchestrator: OrchestratorCfg = field(default_factory=OrchestratorCfg)
    sandbox: SandboxCfg = field(default_factory=SandboxCfg)
    timeouts: TimeoutsCfg = field(default_factory=TimeoutsCfg)


_KNOWN_SECTIONS: frozenset[str] = frozenset(f.name for f in dataclasses.fields(ContextKitConfig))


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}'; ignored.",
                UserWarning,
                stacklevel=4,
            )


def validate_config(cfg: ContextKitConfig) -> None:
    """Raise ConfigError for values the engine cannot honour."""
    ch = cfg.chunking
    if not MIN_OVERLAP_TOKENS <= ch.overlap <= MAX_OVERLAP_TOKENS:
        raise ConfigError(
            f"chunking.overlap must be between {MIN_OVERLAP_TOKENS} and "
            f"{MAX_OVERLAP_TOKENS} tokens, got {ch.overlap}"
        )
    if ch.overlap >= ch.chunk_size:
        raise ConfigError("chunking.overlap must be smaller than chunking.chunk_size")
    if not 0 < ch.chunk_size <= ch.max_chunk_tokens <= MAX_CHUNK_TOKENS:
        raise ConfigError(
            f"chunking.chunk_size must be in (0, max_chunk_tokens] and "
            f"max_chunk_tokens at most {MAX_CHUNK_TOKENS:,}"
        )
    a = cfg.assembly
    if a.safety_margin < 0 or a.token_budget < 0:
        raise ConfigError("assembly.token_budget and assembly.safety_margin must be >= 0")
    if a.top_k < 1:
        raise ConfigError("assembly.top_k must be >= 1")
    if cfg.orchestrator.max_repair_cycles < 0:
        raise ConfigError("orchestrator.max_repair_cycles must be >= 0")
    if not 0.0 < cfg.orchestrator.fallback_fraction <= 1.0:
        raise ConfigError("orchestrator.fallback_fraction must be in (0, 1]")


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _build_section(defaults: Any, raw: dict[str, Any], section: str) -> Any:
    """Overlay *raw* onto a section dataclass, coercing to the default's type."""
    if not isinstance(raw, dict):
        raise ConfigError(f"Config section '{section}' must be a mapping")
    values: dict[str, Any] = {}
    for f in dataclasses.fields(defaults):
        current = getattr(defaults, f.name)
        if f.name not in raw:
            values[f.name] = current
            continue
        value = raw[f.name]
        try:
            if isinstance(current, bool):
                values[f.name] = bool(value)
            elif isinstance(current, list):
                values[f.name] = [str(v) for v in value] if isinstance(value, list) else str(value).split()
            else:
                values[f.name] = type(current)(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid value for {section}.{f.name}: {value!r}") from exc
    return type(defaults)(**values)


def _cfg_from_dict(data: dict[str, Any]) -> ContextKitConfig:
    """Build a *ContextKitConfig* from a merged raw YAML dict."""
    cfg = ContextKitConfig()
    for name in _KNOWN_SECTIONS:
        if name in data:
            setattr(cfg, name, _build_section(getattr(cfg, name), data[name] or {}, name))
    return cfg


def _apply_env_overrides(cfg: ContextKitConfig) -> ContextKitConfig:
    """Apply CONTEXTKIT_* environment variable overrides (layer 2)."""
    if model := os.environ.get("CONTEXTKIT_GENERATION_MODEL"):
        cfg.generation.model = model
    if model := os.environ.get("CONTEXTKIT_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if model := os.environ.get("CONTEXTKIT_TOKENIZER_MODEL"):
        cfg.chunking.tokenizer_model = model
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> ContextKitConfig:
    """Load and return a merged *ContextKitConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Raises:
        ConfigError: If global config contains API-key-like fields or any value
            fails validation.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _apply_env_overrides(_cfg_from_dict(merged))
    validate_config(cfg)
    return cfg


def write_project_config(project_dir: Path, *, overwrite: bool = False) -> Path:
    """Write a commented ``contextkit.yaml`` with defaults into *project_dir*.

    Returns the path; an existing file is left untouched unless *overwrite*.
    """
    target = project_dir / _PROJECT_CONFIG_NAME
    if target.exists() and not overwrite:
        return target
    content = (
        "# contextkit project configuration.\n"
        "# API keys belong in environment variables, e.g.:\n"
        "#   export OPENAI_API_KEY=sk-...\n"
        "\n"
        + yaml.safe_dump(dataclasses.asdict(ContextKitConfig()), sort_keys=False)
    )
    target.write_text(content, encoding="utf-8")
    return target


def ensure_global_config(global_config_path: Path | None = None) -> Path:
    """Create ``~/.contextkit/config.yaml`` with model defaults if it does not exist.

    Creates the parent directory with mode 0o700 and the file with mode 0o600.
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# contextkit global configuration: model defaults only.\n"
            "# NEVER store API keys here. Use environment variables:\n"
            "#   export OPENAI_API_KEY=sk-...\n"
            "\n"
            "embedding:\n"
            "  model: openai/text-embedding-3-small\n"
            "\n"
            "generation:\n"
            "  model: openai/gpt-4o\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target
