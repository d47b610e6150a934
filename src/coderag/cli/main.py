"""coderag CLI entry point."""

from __future__ import annotations

import importlib.metadata
import logging
from typing import Annotated

import typer

from coderag.cli.clear import clear_cmd
from coderag.cli.index import index_cmd
from coderag.cli.query import query_cmd
from coderag.cli.status import status_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("coderag")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"coderag {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="coderag",
    help=(
        "coderag: retrieval-augmented answers over a Python codebase.\n\n"
        "  coderag index PATH      Build (or --incremental update) the index.\n"
        "  coderag query QUESTION  Answer a question from the indexed code."
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
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log progress to stderr."),
    ] = False,
) -> None:
    """coderag: retrieval-augmented answers over a Python codebase."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


app.command("index")(index_cmd)
app.command("query")(query_cmd)
app.command("status")(status_cmd)
app.command("clear")(clear_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed coderag version."""
    typer.echo(f"coderag {_installed_version()}")


if __name__ == "__main__":
    app()
