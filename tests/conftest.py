"""Shared pytest fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from coderag.config import RAGConfig
from fakes import FakeCompletionProvider, FakeEmbeddingProvider


@pytest.fixture
def embedder() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def llm() -> FakeCompletionProvider:
    return FakeCompletionProvider()


@pytest.fixture
def sequential_config() -> RAGConfig:
    """Default retrieval config with rerank calls made in candidate order."""
    return RAGConfig(rerank_concurrency=1)


_CALC_PY = '''\
"""Arithmetic helpers."""

PI = 3.14159


def add(a, b):
    """Add two numbers."""
    return a + b


def multiply(a, b):
    return a * b


class Calculator:
    """Keeps a running total."""

    def __init__(self):
        self.total = 0

    def push(self, value):
        self.total = add(self.total, value)
        return self.total
'''

_SHAPES_PY = '''\
from dataclasses import dataclass
from typing import Protocol


class Shape(Protocol):
    def area(self) -> float: ...


@dataclass
class Circle:
    radius: float

    def area(self) -> float:
        return 3.14159 * self.radius ** 2
'''

_TEST_CALC_PY = '''\
from pkg.calc import add


def test_add():
    assert add(1, 2) == 3
'''

_ADR_MD = '''\
---
title: Storage
---
# ADR 001: Storage

We store the index in a single SQLite file.

## Consequences

Loading is one read; saving rewrites the whole file.
'''


@pytest.fixture
def sample_project(tmp_path: Path) -> Path:
    """A small Python project with one test file and one ADR under ai-docs/."""
    root = tmp_path / "proj"
    (root / "pkg").mkdir(parents=True)
    (root / "pkg" / "calc.py").write_text(_CALC_PY, encoding="utf-8")
    (root / "pkg" / "shapes.py").write_text(_SHAPES_PY, encoding="utf-8")
    (root / "tests").mkdir()
    (root / "tests" / "test_calc.py").write_text(_TEST_CALC_PY, encoding="utf-8")
    (root / "ai-docs" / "adr").mkdir(parents=True)
    (root / "ai-docs" / "adr" / "001-storage.md").write_text(_ADR_MD, encoding="utf-8")
    return root
