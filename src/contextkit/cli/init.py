"""contextkit init: scaffold a project.

Creates:
  .contextkit/contextkit.db   empty store with schema
  contextkit.yaml             project config with every default spelled out
  ~/.contextkit/config.yaml   global model config (created once, mode 0o600)

and adds ``.contextkit/`` to ``.gitignore``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from contextkit.config import ensure_global_config, write_project_config
from contextkit.db.connection import Database
from contextkit.db.migrations import initialize

console = Console()

_DEFAULT_PROJECT_DIR = Path(".")
_DB_RELATIVE = Path(".contextkit") / "contextkit.db"
_GITIGNORE_ENTRY = ".contextkit/"


def init_cmd(
    project_dir: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = _DEFAULT_PROJECT_DIR,
    force: Annotated[
        bool,
        typer.Option("--force", help="Overwrite an existing contextkit.yaml."),
    ] = False,
    global_config: Annotated[
        Path | None,
        typer.Option("--global-config", hidden=True, help="Override global config path."),
    ] = None,
) -> None:
    """Initialize a contextkit project in PROJECT_DIR."""
    project_dir = project_dir.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)

    console.print(f"\n[bold]Initializing {project_dir} …[/]\n")

    db_path = project_dir / _DB_RELATIVE
    existed = db_path.exists()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with Database(db_path) as conn:
        initialize(conn)
    if existed:
        console.print(f"  [dim]↷ {_DB_RELATIVE} already exists, schema up to date[/]")
    else:
        console.print(f"  [green]✓[/] {_DB_RELATIVE}")

    cfg_existed = (project_dir / "contextkit.yaml").exists()
    cfg_path = write_project_config(project_dir, overwrite=force)
    if cfg_existed and not force:
        console.print(f"  [dim]↷ {cfg_path.name} kept (use --force to overwrite)[/]")
    else:
        console.print(f"  [green]✓[/] {cfg_path.name}")

    if _update_gitignore(project_dir):
        console.print("  [green]✓[/] .gitignore")

    global_path = ensure_global_config(global_config)
    console.print(f"  [green]✓[/] {global_path} (global config)")

    console.print(f"\n[bold green]✓ Project '{project_dir.name}' initialized.[/]")
    console.print("\nNext steps:")
    console.print("  1. contextkit ingest <path> [--recursive]   (index the corpus)")
    console.print("  2. contextkit assemble \"<prompt>\"           (inspect a context bundle)")
    console.print("  3. contextkit generate \"<prompt>\"           (plan, generate, verify)")


def _update_gitignore(project_dir: Path) -> bool:
    """Append the store directory to .gitignore. Returns True when the file changed."""
    gitignore = project_dir / ".gitignore"
    existing = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
    if _GITIGNORE_ENTRY in existing.splitlines():
        return False
    prefix = "" if not existing or existing.endswith("\n") else "\n"
    gitignore.write_text(f"{existing}{prefix}{_GITIGNORE_ENTRY}\n", encoding="utf-8")
    return True
