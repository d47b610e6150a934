"""coderag query: answer a question from a saved index."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from coderag.cli.errors import (
    err_config,
    err_corrupt_index,
    err_dimension_mismatch,
    err_empty_index,
    err_no_api_key,
    err_no_index,
    err_stale_index,
)
from coderag.config import ConfigError, load_config
from coderag.db.models import SearchResult
from coderag.db.store import EmbeddingDimensionError, IndexFormatError, VectorStore
from coderag.rag.embedding_cache import EmbeddingCache
from coderag.rag.pipeline import EmptyIndexError, RAGPipeline, index_file_path
from coderag.rag.providers import (
    LiteLLMCompletionProvider,
    LiteLLMEmbeddingProvider,
    validate_api_key,
)

console = Console()


def query_cmd(
    question: Annotated[str, typer.Argument(help="Question about the indexed code.")],
    store: Annotated[
        Path | None,
        typer.Option("--store", help="Index directory (default: ./.coderag)."),
    ] = None,
    show_sources: Annotated[
        bool,
        typer.Option("--show-sources", help="List the ranked source chunks after the answer."),
    ] = False,
) -> None:
    """Ask a question about the indexed project."""
    try:
        cfg = load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)

    for model in (cfg.embedding.model, cfg.generation.model, cfg.generation.rerank_model):
        try:
            validate_api_key(model)
        except EnvironmentError:
            console.print(err_no_api_key(model))
            raise typer.Exit(1)

    store_dir = store if store is not None else Path(cfg.index.store_path)
    pipeline = RAGPipeline(cfg.rag, EmbeddingCache(cfg.embedding.cache_size))
    try:
        metadata = pipeline.load_index(store_dir)
    except IndexFormatError as exc:
        console.print(err_corrupt_index(str(store_dir), str(exc)))
        raise typer.Exit(1)
    if metadata is None:
        if VectorStore.exists(index_file_path(store_dir)):
            console.print(err_stale_index(str(store_dir)))
        else:
            console.print(err_no_index(str(store_dir)))
        raise typer.Exit(1)

    try:
        with console.status("Thinking…"):
            result = pipeline.query(
                question,
                LiteLLMEmbeddingProvider(cfg.embedding.model),
                LiteLLMCompletionProvider(cfg.generation.model),
                rerank_provider=LiteLLMCompletionProvider(cfg.generation.rerank_model),
            )
    except EmptyIndexError:
        console.print(err_empty_index(str(store_dir)))
        raise typer.Exit(1)
    except EmbeddingDimensionError as exc:
        console.print(err_dimension_mismatch(str(store_dir), exc.expected, exc.found))
        raise typer.Exit(1)

    console.print(Markdown(result.answer))
    if show_sources and result.sources:
        _show_sources(result.sources)


def _show_sources(sources: list[SearchResult]) -> None:
    table = Table(title="Sources", show_lines=False)
    table.add_column("#", justify="right")
    table.add_column("Chunk")
    table.add_column("Location")
    table.add_column("Vector", justify="right")
    table.add_column("LLM", justify="right")
    table.add_column("Score", justify="right")
    for i, s in enumerate(sources, start=1):
        llm = f"{s.llm_score:.2f}" if s.llm_score is not None else "-"
        table.add_row(
            str(i),
            f"{s.chunk.type.value} {s.chunk.name}",
            f"{s.chunk.file_path}:{s.chunk.start_line}",
            f"{s.vector_score:.2f}",
            llm,
            f"{s.final_score:.2f}",
        )
    console.print(table)
