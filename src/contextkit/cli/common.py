"""Helpers shared by the CLI commands: config loading and engine construction."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from contextkit.cli.errors import err_config, err_no_db
from contextkit.config import ConfigError, ContextKitConfig, load_config
from contextkit.engine import ContextEngine

DEFAULT_DB = Path(".contextkit") / "contextkit.db"


def default_project_id() -> str:
    return Path.cwd().name or "default"


def load_config_or_exit(console: Console) -> ContextKitConfig:
    try:
        return load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)


def open_engine(db: Path, console: Console, *, create: bool = False) -> ContextEngine:
    """Open the engine over *db*; exits with an actionable error when it is missing."""
    if not create and not db.exists():
        console.print(err_no_db(str(db)))
        raise typer.Exit(1)
    cfg = load_config_or_exit(console)
    return ContextEngine.open(db, cfg)
