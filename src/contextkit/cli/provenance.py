"""contextkit provenance: show which pieces a model call saw."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from contextkit.audit.provenance import ProvenanceLog
from contextkit.cli.common import DEFAULT_DB
from contextkit.cli.errors import err_call_not_found, err_no_db
from contextkit.db.connection import Database
from contextkit.db.migrations import initialize
from contextkit.db.repository import Repository
from contextkit.errors import NotFoundError

console = Console()


def provenance_cmd(
    call_id: Annotated[str, typer.Argument(help="Model call id (mc_…).")],
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to the contextkit database."),
    ] = DEFAULT_DB,
) -> None:
    """Show the record of one model call and the chunks it used."""
    if not db.exists():
        console.print(err_no_db(str(db)))
        raise typer.Exit(1)

    with Database(db) as conn:
        initialize(conn)
        repo = Repository(conn)
        try:
            record = ProvenanceLog(repo).get_provenance(call_id)
        except NotFoundError:
            console.print(err_call_not_found(call_id))
            raise typer.Exit(1)
        chunks = repo.get_chunks(record.chunk_ids_used)
        summaries = repo.get_summaries(set(record.chunk_ids_used) - set(chunks))

    status_style = "green" if record.status in ("ok", "fallback") else "red"
    lines = [
        f"Call:     {record.call_id}",
        f"Session:  {record.session_id or '-'}",
        f"Model:    {record.model}",
        f"Phase:    {record.phase}",
        f"Status:   [{status_style}]{record.status}[/]",
        f"Tokens:   {record.prompt_tokens:,} in / {record.completion_tokens:,} out",
        f"At:       [dim]{record.timestamp}[/]",
    ]
    if record.error:
        lines.append(f"Error:    [red]{record.error}[/]")
    console.print(Panel("\n".join(lines), title="[bold]Model call[/]", expand=False))

    table = Table(title=f"Pieces used ({len(record.chunk_ids_used)})")
    table.add_column("Id", style="dim")
    table.add_column("Kind")
    table.add_column("Path")
    table.add_column("Tokens", justify="right")
    for ref_id in sorted(record.chunk_ids_used):
        if ref_id in chunks:
            c = chunks[ref_id]
            table.add_row(ref_id, c.type, c.source_path, f"{c.token_count:,}")
        elif ref_id in summaries:
            s = summaries[ref_id]
            table.add_row(ref_id, f"{s.level} summary", s.scope_path, f"{s.token_count:,}")
        else:
            table.add_row(ref_id, "[dim]unknown[/]", "", "")
    console.print(table)
