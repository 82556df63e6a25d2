"""contextkit ingest: index files, conversations and logs into the store.

Paths are stored relative to the current directory in POSIX form. Directories
expand to their files (``--recursive`` for subdirectories); dot-directories
such as ``.git`` and ``.contextkit`` are always skipped. ``--type conversation``
or ``--type log`` appends each file as a new stream block instead of
replacing earlier content.
"""

from __future__ import annotations

import fnmatch
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn

from contextkit.cli.common import DEFAULT_DB, default_project_id, open_engine
from contextkit.cli.errors import err_chunk_too_large, err_no_api_key
from contextkit.errors import CallTimeoutError, ChunkTooLargeError
from contextkit.ingest.pipeline import INGEST_TYPES
from contextkit.rag.llm_client import validate_api_key

console = Console()

_MAX_DEPTH = 10


def ingest_cmd(
    paths: Annotated[
        list[Path],
        typer.Argument(help="Files or directories to ingest."),
    ],
    project: Annotated[
        str | None,
        typer.Option("--project", "-p", help="Project id (default: current directory name)."),
    ] = None,
    kind: Annotated[
        str,
        typer.Option("--type", "-t", help="Content type: code, conversation or log."),
    ] = "code",
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to the contextkit database (created if missing)."),
    ] = DEFAULT_DB,
    recursive: Annotated[
        bool,
        typer.Option("--recursive", "-r", help="Recurse into subdirectories (max 10 levels)."),
    ] = False,
    exclude: Annotated[
        list[str] | None,
        typer.Option("--exclude", help="Glob pattern to exclude (repeatable)."),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="List the files that would be ingested."),
    ] = False,
) -> None:
    """Ingest files into the context store."""
    if kind not in INGEST_TYPES:
        console.print(
            f"[red]Error:[/] Unknown --type {kind!r}. Use one of: {', '.join(INGEST_TYPES)}."
        )
        raise typer.Exit(1)

    files = expand_paths(paths, recursive=recursive, exclude=exclude or [])
    if not files:
        console.print("[yellow]No files found to ingest.[/]")
        raise typer.Exit(0)

    if dry_run:
        for f in files:
            console.print(f"  {_relative(f)}")
        console.print(f"\n[dim]Dry run: {len(files)} file(s), nothing written.[/]")
        return

    engine = open_engine(db, console, create=True)
    try:
        validate_api_key(engine.config.embedding.model)
    except EnvironmentError:
        console.print(err_no_api_key(engine.config.embedding.model.split("/")[0]))
        engine.conn.close()
        raise typer.Exit(1)

    project_id = project or default_project_id()
    items = [(_relative(f), f.read_bytes(), kind) for f in files]

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
            console=console,
        ) as prog:
            prog.add_task(f"Ingesting {len(items)} file(s) into '{project_id}'…", total=None)
            results = engine.pipeline.ingest_many(project_id, items)
    except ChunkTooLargeError as exc:
        console.print(err_chunk_too_large("input", exc.tokens, exc.limit))
        engine.conn.close()
        raise typer.Exit(1)
    except (CallTimeoutError, RuntimeError) as exc:
        console.print(f"[red]Error:[/] {exc}")
        engine.conn.close()
        raise typer.Exit(1)

    if any(r.changed for r in results):
        engine.cache.clear_project(project_id)

    for r in results:
        if r.is_binary:
            console.print(f"  [dim]◆ {r.path}: binary, metadata only[/]")
        elif not r.changed:
            console.print(f"  [dim]↷ {r.path}: unchanged ({len(r.chunk_ids)} chunks)[/]")
        else:
            console.print(
                f"  [green]✓[/] {r.path}: {len(r.chunk_ids)} chunks "
                f"([green]+{len(r.added)}[/] / [red]-{len(r.removed)}[/])"
            )

    stats = engine.store.stats(project_id)
    engine.close()
    console.print(
        f"\n[bold]{project_id}[/]: {int(stats['total_chunks']):,} chunks, "
        f"{int(stats['total_tokens']):,} tokens across {int(stats['unique_files'])} path(s)"
    )


def expand_paths(paths: list[Path], recursive: bool, exclude: list[str]) -> list[Path]:
    """Expand directories to files, keeping order and dropping duplicates."""
    seen: set[Path] = set()
    result: list[Path] = []
    for p in paths:
        if p.is_dir():
            candidates = _scan_dir(p, recursive=recursive, exclude=exclude, depth=0)
        elif p.is_file():
            candidates = [p]
        else:
            console.print(f"[yellow]Skipping missing path:[/] {p}")
            continue
        for f in candidates:
            key = f.resolve()
            if key not in seen:
                seen.add(key)
                result.append(f)
    return result


def _scan_dir(directory: Path, recursive: bool, exclude: list[str], depth: int) -> list[Path]:
    if depth > _MAX_DEPTH:
        return []
    files: list[Path] = []
    try:
        entries = sorted(directory.iterdir())
    except PermissionError:
        return []
    for entry in entries:
        if entry.name.startswith(".") or any(fnmatch.fnmatch(entry.name, pat) for pat in exclude):
            continue
        if entry.is_file():
            files.append(entry)
        elif entry.is_dir() and recursive and depth < _MAX_DEPTH:
            files.extend(_scan_dir(entry, recursive=recursive, exclude=exclude, depth=depth + 1))
    return files


def _relative(path: Path) -> str:
    resolved = path.resolve()
    try:
        return resolved.relative_to(Path.cwd().resolve()).as_posix()
    except ValueError:
        return resolved.as_posix()
