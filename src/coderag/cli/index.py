"""coderag index: build or incrementally update a project index.

Usage:
  coderag index .
  coderag index ~/src/myproject --store /tmp/myproject-index
  coderag index . --incremental
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from coderag.cli.errors import (
    err_config,
    err_corrupt_index,
    err_indexing_failed,
    err_no_api_key,
    err_no_source_files,
)
from coderag.config import ConfigError, load_config
from coderag.db.models import IndexMetadata
from coderag.db.store import IndexFormatError
from coderag.rag.pipeline import IndexingError, NoSourceFilesError, RAGPipeline
from coderag.rag.providers import LiteLLMEmbeddingProvider, validate_api_key

console = Console()


def index_cmd(
    path: Annotated[
        Path,
        typer.Argument(help="Project root to index."),
    ] = Path("."),
    store: Annotated[
        Path | None,
        typer.Option("--store", help="Index directory (default: <PATH>/.coderag)."),
    ] = None,
    incremental: Annotated[
        bool,
        typer.Option("--incremental", "-i", help="Only re-index files changed since the last run."),
    ] = False,
) -> None:
    """Index a Python project for querying."""
    if not path.is_dir():
        console.print(f"[red]Error:[/] Not a directory: '{path}'.")
        raise typer.Exit(1)

    try:
        cfg = load_config(path)
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)

    model = cfg.embedding.model
    try:
        validate_api_key(model)
    except EnvironmentError:
        console.print(err_no_api_key(model))
        raise typer.Exit(1)

    store_dir = store if store is not None else path / cfg.index.store_path
    pipeline = RAGPipeline(cfg.rag)
    provider = LiteLLMEmbeddingProvider(model)

    try:
        if incremental and pipeline.load_index(store_dir) is not None and pipeline.has_manifest():
            with _spinner("Updating index…"):
                result = pipeline.index_incremental(path, provider, store_dir)
            stats = result.stats
            console.print(
                f"[green]✓[/] Changes: +{stats['added']} ~{stats['modified']} "
                f"-{stats['deleted']} ={stats['unchanged']}"
            )
            _show_metadata(result.metadata, store_dir)
            return

        if incremental:
            console.print("[yellow]No usable index found, running a full index.[/]")
        with _spinner("Indexing…"):
            metadata = pipeline.index(path, provider, store_dir)
    except NoSourceFilesError:
        console.print(err_no_source_files(str(path)))
        raise typer.Exit(1)
    except IndexingError as exc:
        console.print(err_indexing_failed(str(exc)))
        raise typer.Exit(1)
    except IndexFormatError as exc:
        console.print(err_corrupt_index(str(store_dir), str(exc)))
        raise typer.Exit(1)

    _show_metadata(metadata, store_dir)


def _spinner(description: str) -> Progress:
    progress = Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        transient=True,
        console=console,
    )
    progress.add_task(description, total=None)
    return progress


def _show_metadata(metadata: IndexMetadata, store_dir: Path) -> None:
    table = Table(show_header=False, box=None)
    table.add_column("key", style="dim")
    table.add_column("value")
    table.add_row("Project", metadata.project_path)
    table.add_row("Chunks", f"{metadata.total_chunks:,}")
    table.add_row("Tokens", f"{metadata.total_tokens:,}")
    table.add_row("Indexed at", metadata.indexed_at)
    table.add_row("Index", str(store_dir))
    console.print(table)
