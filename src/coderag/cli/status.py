"""coderag status: show what the saved index contains."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel

from coderag.cli.errors import err_corrupt_index
from coderag.config import CoderagConfig, ConfigError, load_config
from coderag.db.store import IndexFormatError, VectorStore
from coderag.rag.pipeline import RAGPipeline, index_file_path

console = Console()


def status_cmd(
    store: Annotated[
        Path | None,
        typer.Option("--store", help="Index directory (default: ./.coderag)."),
    ] = None,
) -> None:
    """Show index status: project, chunk counts, models."""
    # Status works even with a broken coderag.yaml
    try:
        cfg = load_config()
    except ConfigError:
        cfg = CoderagConfig()

    store_dir = store if store is not None else Path(cfg.index.store_path)
    index_path = index_file_path(store_dir)

    if not VectorStore.exists(index_path):
        console.print(
            Panel(
                f"[yellow]No index found in '{store_dir}'.[/]\n"
                "  Run:  coderag index PATH",
                title="[bold]Index[/]",
                expand=False,
            )
        )
        return

    pipeline = RAGPipeline(cfg.rag)
    try:
        metadata = pipeline.load_index(store_dir)
    except IndexFormatError as exc:
        console.print(err_corrupt_index(str(store_dir), str(exc)))
        raise typer.Exit(1)

    if metadata is None:
        console.print(
            Panel(
                "[yellow]Index was built by an incompatible version.[/]\n"
                "  Rebuild it:  coderag index PATH",
                title="[bold]Index[/]",
                expand=False,
            )
        )
        return

    manifest = pipeline.store.get_manifest()
    size_mb = index_path.stat().st_size / (1024 * 1024)
    lines = [
        f"Project:     [bold]{metadata.project_path}[/]",
        f"Index:       {index_path} ({size_mb:.1f} MB)",
        f"Chunks:      [bold]{pipeline.get_chunk_count():,}[/]  |  "
        f"Tokens: [bold]{metadata.total_tokens:,}[/]",
        f"Files:       {len(manifest.files) if manifest else 0}",
        f"Dimensions:  {pipeline.store.embedding_dimension}",
        f"Indexed at:  {metadata.indexed_at}",
        f"Version:     {metadata.version}",
        "",
        f"Embedding:   {cfg.embedding.model}",
        f"Generation:  {cfg.generation.model}  (rerank: {cfg.generation.rerank_model})",
    ]
    console.print(Panel("\n".join(lines), title="[bold]Index[/]", expand=False))
