"""contextkit status: store overview per project.

Shows database size, then for each project (or just ``--project``) the chunk
statistics, summary and vector counts, and model call totals.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from contextkit.cli.common import DEFAULT_DB, open_engine
from contextkit.cli.errors import err_unknown_project
from contextkit.engine import ContextEngine

console = Console()


def status_cmd(
    project: Annotated[
        str | None,
        typer.Option("--project", "-p", help="Only show this project."),
    ] = None,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to the contextkit database."),
    ] = DEFAULT_DB,
) -> None:
    """Show store status: chunks, summaries, vectors and model calls."""
    if not db.exists():
        console.print(
            Panel(
                "[yellow]No database found.[/]\n"
                "  Run:  contextkit init",
                title="[bold]Store[/]",
                expand=False,
            )
        )
        return

    engine = open_engine(db, console)
    try:
        size_mb = db.stat().st_size / (1024 * 1024)
        projects = engine.repo.list_projects()
        console.print(
            Panel(
                f"Database:  {db} ({size_mb:.1f} MB)\n"
                f"Projects:  [bold]{len(projects)}[/]\n"
                f"Embedding: {engine.config.embedding.model}\n"
                f"Tokenizer: {engine.config.chunking.tokenizer_model}",
                title="[bold]Store[/]",
                expand=False,
            )
        )

        if project is not None:
            if project not in projects:
                console.print(err_unknown_project(project, projects))
                raise typer.Exit(1)
            projects = [project]

        if not projects:
            console.print("[dim]Nothing ingested yet.[/]")
            return

        for project_id in projects:
            _show_project_panel(engine, project_id)
    finally:
        engine.conn.close()


def _show_project_panel(engine: ContextEngine, project_id: str) -> None:
    status = engine.status(project_id)
    chunks = status["chunks"]
    calls = status["calls"]

    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("Chunks", f"{int(chunks['total_chunks']):,}")
    table.add_row("Tokens", f"{int(chunks['total_tokens']):,}")
    table.add_row("Paths", f"{int(chunks['unique_files']):,}")
    table.add_row("Avg chunk", f"{chunks['avg_chunk_size']:.0f} tokens")
    table.add_row("Artifacts", str(status["artifacts"]))
    table.add_row("Summaries", str(status["summaries"]))
    table.add_row("Vectors", str(status["vectors"]))
    table.add_row(
        "Model calls",
        f"{calls['calls']:,} "
        f"({calls['prompt_tokens']:,} in / {calls['completion_tokens']:,} out)",
    )

    console.print(Panel(table, title=f"[bold]{project_id}[/]", expand=False))
