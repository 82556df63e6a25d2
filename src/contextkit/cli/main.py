"""contextkit CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from contextkit.cli.assemble import assemble_cmd
from contextkit.cli.generate import generate_cmd
from contextkit.cli.ingest import ingest_cmd
from contextkit.cli.init import init_cmd
from contextkit.cli.provenance import provenance_cmd
from contextkit.cli.status import status_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("contextkit")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"contextkit {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="contextkit",
    help=(
        "contextkit: token-budgeted context assembly over a code corpus.\n\n"
        "  contextkit assemble  Inspect the bundle a prompt would receive.\n"
        "  contextkit generate  Plan, generate and verify a change."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """contextkit: token-budgeted context assembly over a code corpus."""


app.command("init")(init_cmd)
app.command("ingest")(ingest_cmd)
app.command("assemble")(assemble_cmd)
app.command("generate")(generate_cmd)
app.command("provenance")(provenance_cmd)
app.command("status")(status_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed contextkit version."""
    typer.echo(f"contextkit {_installed_version()}")


if __name__ == "__main__":
    app()
