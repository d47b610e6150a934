"""CLI test isolation: no real global config, no CODERAG_* overrides, fake keys."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from coderag.rag.pipeline import RAGPipeline
from fakes import FakeEmbeddingProvider


@pytest.fixture(autouse=True)
def _isolated_cli(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    for var in list(os.environ):
        if var.startswith("CODERAG_"):
            monkeypatch.delenv(var)
    monkeypatch.setattr("coderag.config._GLOBAL_CONFIG_PATH", tmp_path / "global" / "config.yaml")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def built_index(sample_project: Path, tmp_path: Path) -> Path:
    """A saved index of ``sample_project``; returns the store directory."""
    store_dir = tmp_path / "store"
    RAGPipeline().index(sample_project, FakeEmbeddingProvider(), store_dir)
    return store_dir
