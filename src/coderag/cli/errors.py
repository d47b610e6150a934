"""coderag rich error messages.

Every error shown to the user contains what went wrong and the exact
command or setting that fixes it.

Usage:
    from coderag.cli.errors import err_no_index
    console.print(err_no_index(".coderag"))
    raise typer.Exit(1)
"""

from __future__ import annotations

from coderag.rag.providers import api_key_env_var, provider_of


def err_no_api_key(model: str) -> str:
    """No API key for the provider of *model*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    provider = provider_of(model)
    env_var = api_key_env_var(model) or f"{provider.upper()}_API_KEY"
    return (
        f"[red]Error:[/] No API key for '{provider}' (model '{model}').\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_no_index(store_path: str) -> str:
    """No index file in *store_path*."""
    return (
        f"[red]Error:[/] No index found in '{store_path}'.\n"
        "  Run:  coderag index PATH"
    )


def err_stale_index(store_path: str) -> str:
    """Index file was written by a different index version."""
    return (
        f"[red]Error:[/] The index in '{store_path}' was built by an incompatible version.\n"
        "  Rebuild it:  coderag index PATH"
    )


def err_no_source_files(path: str) -> str:
    return (
        f"[red]Error:[/] No Python source files found in '{path}'.\n"
        "  Check the path, or that files are not only tests or inside skipped folders "
        "(venv, build, dist, hidden)."
    )


def err_config(detail: str) -> str:
    return (
        f"[red]Error:[/] Invalid configuration: {detail}\n"
        "  Fix coderag.yaml, ~/.coderag/config.yaml or the CODERAG_* environment variables."
    )


def err_indexing_failed(detail: str) -> str:
    return f"[red]Error:[/] Indexing failed: {detail}"


def err_corrupt_index(store_path: str, detail: str) -> str:
    return (
        f"[red]Error:[/] The index in '{store_path}' is unreadable: {detail}\n"
        "  Remove it and rebuild:  coderag clear --yes && coderag index PATH"
    )


def err_empty_index(store_path: str) -> str:
    """The saved index holds no chunks (e.g. every file was deleted)."""
    return (
        f"[red]Error:[/] The index in '{store_path}' contains no chunks.\n"
        "  Rebuild it:  coderag index PATH"
    )


def err_dimension_mismatch(store_path: str, expected: int, found: int) -> str:
    """The embedding model no longer matches the one the index was built with."""
    return (
        f"[red]Error:[/] The index in '{store_path}' holds {expected}-dimensional "
        f"embeddings but the configured embedding model returns {found}.\n"
        "  Rebuild it with the current model:  coderag index PATH"
    )
