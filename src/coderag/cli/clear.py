"""coderag clear: delete the saved index.

Usage:
  coderag clear
  coderag clear --store /tmp/myproject-index --yes
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from coderag.config import CoderagConfig, ConfigError, load_config
from coderag.rag.pipeline import index_file_path

console = Console()


def clear_cmd(
    store: Annotated[
        Path | None,
        typer.Option("--store", help="Index directory (default: ./.coderag)."),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompt."),
    ] = False,
) -> None:
    """Delete the saved index so the next run starts from scratch."""
    try:
        cfg = load_config()
    except ConfigError:
        cfg = CoderagConfig()

    store_dir = store if store is not None else Path(cfg.index.store_path)
    index_path = index_file_path(store_dir)

    if not index_path.exists():
        console.print(f"[dim]No index at '{index_path}'. Nothing to clear.[/]")
        raise typer.Exit(0)

    if not yes:
        if not typer.confirm(f"Delete index '{index_path}'?", default=False):
            console.print("[dim]Cancelled.[/]")
            raise typer.Exit(0)

    index_path.unlink()
    console.print(f"[green]✓[/] Removed {index_path}")
