"""contextkit generate: plan → generate → verify → repair for one prompt.

Usage:
  contextkit generate "add retry to the http client" [--workspace .] [--apply]

Flags:
  --workspace DIR   Files under DIR form the snapshot the sandbox tests against
  --apply           Write the resulting files / diffs into --workspace
  --hot PATH        Paths to prioritise during assembly (repeatable)
  --budget N        Max context tokens per model call

Each invocation opens a fresh session; the printed call ids can be passed to
``contextkit provenance`` to see exactly which pieces each model call saw.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn

from contextkit.cli.common import DEFAULT_DB, default_project_id, open_engine
from contextkit.cli.errors import err_no_api_key
from contextkit.cli.ingest import expand_paths
from contextkit.engine import GenerateResponse
from contextkit.errors import CallCancelledError, CallTimeoutError, UnsupportedModelError
from contextkit.generate.sandbox import apply_unified_diff, materialize
from contextkit.rag.llm_client import validate_api_key

console = Console()

_STATE_STYLE = {"done": "green", "failed": "red"}


def generate_cmd(
    prompt: Annotated[str, typer.Argument(help="What to build or change.")],
    project: Annotated[
        str | None,
        typer.Option("--project", "-p", help="Project id (default: current directory name)."),
    ] = None,
    budget: Annotated[
        int | None,
        typer.Option("--budget", "-b", help="Max context tokens per model call."),
    ] = None,
    hot: Annotated[
        list[str] | None,
        typer.Option("--hot", help="Hot path to prioritise (repeatable)."),
    ] = None,
    workspace: Annotated[
        Path | None,
        typer.Option("--workspace", "-w", help="Directory whose files the sandbox tests against."),
    ] = None,
    apply: Annotated[
        bool,
        typer.Option("--apply", help="Write the generated changes into --workspace."),
    ] = False,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to the contextkit database."),
    ] = DEFAULT_DB,
) -> None:
    """Plan, generate and verify a change for PROMPT."""
    if apply and workspace is None:
        console.print("[red]Error:[/] --apply needs --workspace DIR.")
        raise typer.Exit(1)

    engine = open_engine(db, console)
    try:
        for model in (engine.config.embedding.model, engine.config.generation.model):
            try:
                validate_api_key(model)
            except EnvironmentError:
                console.print(err_no_api_key(model.split("/")[0]))
                raise typer.Exit(1)

        snapshot = _read_workspace(workspace) if workspace is not None else {}
        project_id = project or default_project_id()
        session = engine.create_session(project_id)

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
            console=console,
        ) as prog:
            prog.add_task(f"Generating with {engine.config.generation.model}…", total=None)
            try:
                response = engine.generate(
                    project_id,
                    prompt,
                    session.session_id,
                    max_context_tokens=budget,
                    hot_paths=hot or (),
                    workspace=snapshot,
                )
            except (CallTimeoutError, CallCancelledError, UnsupportedModelError) as exc:
                console.print(f"[red]Error:[/] {exc}")
                raise typer.Exit(1)
    finally:
        engine.conn.close()

    _show_result(response)

    if apply and response.state == "done":
        assert workspace is not None
        try:
            written = _apply_changes(workspace, response)
        except ValueError as exc:
            console.print(f"[red]Error:[/] could not apply changes: {exc}")
            raise typer.Exit(1)
        for path in written:
            console.print(f"  [green]✓[/] wrote {path}")

    if response.state != "done":
        raise typer.Exit(2)


def _read_workspace(root: Path) -> dict[str, str]:
    snapshot: dict[str, str] = {}
    for f in expand_paths([root], recursive=True, exclude=[]):
        try:
            snapshot[f.relative_to(root).as_posix()] = f.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            continue
    return snapshot


def _apply_changes(root: Path, response: GenerateResponse) -> list[str]:
    updates: dict[str, str] = {}
    for change in response.diffs_or_files:
        path = change["path"]
        if "content" in change:
            updates[path] = change["content"]
        else:
            target = root / path
            original = updates.get(path)
            if original is None:
                original = target.read_text(encoding="utf-8") if target.exists() else ""
            updates[path] = apply_unified_diff(original, change["diff"])
    materialize(updates, root)
    return sorted(updates)


def _show_result(response: GenerateResponse) -> None:
    style = _STATE_STYLE.get(response.state, "yellow")
    lines = [
        f"State:    [{style}]{response.state}[/]",
        f"Request:  [dim]{response.request_id}[/]",
    ]
    if response.plan_summary:
        lines.append(f"Plan:     {response.plan_summary}")
    console.print(Panel("\n".join(lines), title="[bold]Generation[/]", expand=False))

    for change in response.diffs_or_files:
        marker = "~" if "diff" in change else "+"
        console.print(f"  [bold]{marker}[/] {change['path']}")

    if response.sources:
        console.print(f"\n[dim]Sources ({len(response.sources)}):[/]")
        for source in response.sources:
            console.print(f"  [dim]{source}[/]")

    if response.call_ids:
        console.print(f"\n[dim]Provenance records: {', '.join(response.call_ids)}[/]")

    for warning in response.warnings:
        console.print(f"[yellow]⚠[/] {warning}")

    if response.failure_logs:
        console.print("\n[red]Last failing test output:[/]")
        console.print(response.failure_logs[-1][-2000:], markup=False, highlight=False)
