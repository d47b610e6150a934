"""Tests for coderag query."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from unittest.mock import patch

from typer.testing import CliRunner

from coderag.cli.main import app
from coderag.db.models import IndexMetadata
from coderag.db.schema import INDEX_VERSION
from coderag.db.store import VectorStore
from coderag.rag.pipeline import index_file_path
from fakes import FakeCompletionProvider, FakeEmbeddingProvider

runner = CliRunner()

_ANSWER = "PI is defined in calc.py [1]."


def _fake_llm(model: str) -> FakeCompletionProvider:
    def reply(prompt: str) -> str:
        return _ANSWER if prompt.startswith("You are a code analysis assistant.") else "7"

    return FakeCompletionProvider(reply=reply)


def _invoke(args: list[str], embed_dim: int = 16):
    with (
        patch(
            "coderag.cli.query.LiteLLMEmbeddingProvider",
            side_effect=lambda m: FakeEmbeddingProvider(dim=embed_dim),
        ),
        patch("coderag.cli.query.LiteLLMCompletionProvider", side_effect=_fake_llm) as llm_cls,
    ):
        result = runner.invoke(app, args)
    return result, llm_cls


def test_query_prints_answer(built_index: Path) -> None:
    result, llm_cls = _invoke(["query", "where is PI defined?", "--store", str(built_index)])

    assert result.exit_code == 0, result.output
    assert "PI is defined in calc.py" in result.output
    models = [c.args[0] for c in llm_cls.call_args_list]
    assert models == ["openai/gpt-4o", "openai/gpt-4o-mini"]


def test_query_show_sources_lists_chunks(built_index: Path) -> None:
    result, _ = _invoke(
        ["query", "where is PI defined?", "--store", str(built_index), "--show-sources"]
    )

    assert result.exit_code == 0, result.output
    assert "Sources" in result.output


def test_query_without_index_exits_1(tmp_path: Path) -> None:
    result, _ = _invoke(["query", "anything", "--store", str(tmp_path / "none")])
    assert result.exit_code == 1
    assert "No index found" in result.output
    assert "coderag index" in result.output


def test_query_stale_index_exits_1(built_index: Path) -> None:
    conn = sqlite3.connect(index_file_path(built_index))
    conn.execute("UPDATE index_metadata SET version = '0.0.1'")
    conn.commit()
    conn.close()

    result, _ = _invoke(["query", "anything", "--store", str(built_index)])
    assert result.exit_code == 1
    assert "Rebuild it" in result.output


def test_query_corrupt_index_exits_1(tmp_path: Path) -> None:
    store_dir = tmp_path / "store"
    store_dir.mkdir()
    index_file_path(store_dir).write_text("garbage", encoding="utf-8")

    result, _ = _invoke(["query", "anything", "--store", str(store_dir)])
    assert result.exit_code == 1
    assert "unreadable" in result.output


def test_query_missing_api_key_exits_1(built_index: Path, monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY")
    result, _ = _invoke(["query", "anything", "--store", str(built_index)])
    assert result.exit_code == 1
    assert "OPENAI_API_KEY" in result.output


def test_query_with_other_embedding_dimension_exits_1(built_index: Path) -> None:
    result, _ = _invoke(["query", "anything", "--store", str(built_index)], embed_dim=8)

    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)
    assert "16-dimensional" in result.output
    assert "coderag index" in result.output


def test_query_empty_index_exits_1(tmp_path: Path) -> None:
    store_dir = tmp_path / "store"
    store = VectorStore()
    store.set_metadata(
        IndexMetadata(
            project_path=str(tmp_path),
            total_chunks=0,
            total_tokens=0,
            indexed_at="2026-01-01T00:00:00+00:00",
            version=INDEX_VERSION,
        )
    )
    store.save(index_file_path(store_dir))

    result, _ = _invoke(["query", "anything", "--store", str(store_dir)])

    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)
    assert "Rebuild it" in result.output
