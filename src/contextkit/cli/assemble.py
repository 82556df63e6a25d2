"""contextkit assemble: build a context bundle for a prompt and show what was selected."""

from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from contextkit.cli.common import DEFAULT_DB, default_project_id, open_engine
from contextkit.cli.errors import err_no_api_key, warn_budget_exceeded
from contextkit.errors import CallTimeoutError, UnsupportedModelError
from contextkit.rag.llm_client import validate_api_key

console = Console()


def assemble_cmd(
    prompt: Annotated[str, typer.Argument(help="Prompt to assemble context for.")],
    project: Annotated[
        str | None,
        typer.Option("--project", "-p", help="Project id (default: current directory name)."),
    ] = None,
    budget: Annotated[
        int | None,
        typer.Option("--budget", "-b", help="Token budget (default: assembly.token_budget)."),
    ] = None,
    hot: Annotated[
        list[str] | None,
        typer.Option("--hot", help="Hot path to prioritise (repeatable)."),
    ] = None,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to the contextkit database."),
    ] = DEFAULT_DB,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the bundle as JSON."),
    ] = False,
) -> None:
    """Assemble a token-budgeted context bundle for PROMPT."""
    engine = open_engine(db, console)
    try:
        try:
            validate_api_key(engine.config.embedding.model)
        except EnvironmentError:
            console.print(err_no_api_key(engine.config.embedding.model.split("/")[0]))
            raise typer.Exit(1)

        try:
            response = engine.assemble(
                project or default_project_id(),
                prompt,
                token_budget=budget,
                hot_paths=hot or (),
            )
        except (ValueError, UnsupportedModelError, CallTimeoutError) as exc:
            console.print(f"[red]Error:[/] {exc}")
            raise typer.Exit(1)
    finally:
        engine.conn.close()

    if as_json:
        typer.echo(json.dumps(asdict(response), indent=2))
        return

    if response.budget_exceeded:
        console.print(warn_budget_exceeded(budget or engine.config.assembly.token_budget))

    table = Table(title=f"Context bundle ({response.tokens_used:,} tokens)")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Kind")
    table.add_column("Path")
    table.add_column("Tokens", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Id", style="dim")
    for i, piece in enumerate(response.pieces, start=1):
        table.add_row(
            str(i),
            piece.kind,
            piece.source_path,
            f"{piece.token_count:,}",
            f"{piece.score:.3f}",
            piece.id,
        )
    console.print(table)

    for warning in response.warnings:
        console.print(f"[yellow]⚠[/] {warning}")
