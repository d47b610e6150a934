"""Tests for Python source parsing and source file discovery."""

from __future__ import annotations

from pathlib import Path

import pytest

from coderag.db.models import ChunkType
from coderag.ingest.parser import (
    ParseError,
    find_source_files,
    is_test_file,
    parse_python_file,
)


def _write(tmp_path: Path, name: str, source: str) -> Path:
    path = tmp_path / name
    path.write_text(source, encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# parse_python_file
# ---------------------------------------------------------------------------


def test_top_level_entities(sample_project: Path):
    entities = parse_python_file(sample_project / "pkg" / "calc.py")

    assert [(e.name, e.type) for e in entities] == [
        ("PI", ChunkType.CONSTANT),
        ("add", ChunkType.FUNCTION),
        ("multiply", ChunkType.FUNCTION),
        ("Calculator", ChunkType.CLASS),
    ]
    add = entities[1]
    assert (add.start_line, add.end_line) == (6, 8)
    assert add.code.startswith("def add(a, b):")
    assert add.code.endswith("return a + b")


def test_methods_stay_inside_class(sample_project: Path):
    entities = parse_python_file(sample_project / "pkg" / "calc.py")
    calculator = entities[-1]
    assert "def push(self, value):" in calculator.code
    assert "push" not in [e.name for e in entities]


def test_protocol_is_interface_and_decorators_included(sample_project: Path):
    entities = parse_python_file(sample_project / "pkg" / "shapes.py")
    by_name = {e.name: e for e in entities}

    assert by_name["Shape"].type is ChunkType.INTERFACE
    circle = by_name["Circle"]
    assert circle.type is ChunkType.CLASS
    assert circle.start_line == 9
    assert circle.code.startswith("@dataclass")


def test_abc_base_and_type_aliases(tmp_path: Path):
    path = _write(
        tmp_path,
        "types_mod.py",
        "import abc\n"
        "from typing import TypeAlias\n"
        "\n"
        "class Store(abc.ABC):\n"
        "    pass\n"
        "\n"
        "Vector: TypeAlias = list[float]\n"
        "type Matrix = list[Vector]\n"
        "limit: int = 3\n",
    )
    types = {e.name: e.type for e in parse_python_file(path)}
    assert types == {
        "Store": ChunkType.INTERFACE,
        "Vector": ChunkType.TYPE,
        "Matrix": ChunkType.TYPE,
        "limit": ChunkType.CONSTANT,
    }


def test_async_function(tmp_path: Path):
    path = _write(tmp_path, "aio.py", "async def fetch():\n    return 1\n")
    [entity] = parse_python_file(path)
    assert entity.type is ChunkType.FUNCTION
    assert entity.name == "fetch"


def test_module_without_definitions_becomes_file_entity(tmp_path: Path):
    path = _write(tmp_path, "script.py", "import sys\nprint(sys.argv)\n")
    [entity] = parse_python_file(path)

    assert entity.type is ChunkType.FILE
    assert entity.name == "script.py"
    assert (entity.start_line, entity.end_line) == (1, 2)
    assert entity.code == "import sys\nprint(sys.argv)"


def test_empty_module_yields_nothing(tmp_path: Path):
    assert parse_python_file(_write(tmp_path, "empty.py", "\n\n")) == []


def test_syntax_error_raises_parse_error(tmp_path: Path):
    path = _write(tmp_path, "broken.py", "def broken(:\n    pass\n")
    with pytest.raises(ParseError, match="broken.py"):
        parse_python_file(path)


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("test_calc.py", True),
        ("calc_test.py", True),
        ("conftest.py", True),
        ("calc.py", False),
        ("testing.py", False),
    ],
)
def test_is_test_file(name: str, expected: bool):
    assert is_test_file(name) is expected


def test_find_source_files_skips_tests_and_hidden(sample_project: Path):
    (sample_project / ".venv" / "lib").mkdir(parents=True)
    (sample_project / ".venv" / "lib" / "site.py").write_text("x = 1\n", encoding="utf-8")
    (sample_project / "node_modules").mkdir()
    (sample_project / "node_modules" / "gen.py").write_text("x = 1\n", encoding="utf-8")
    (sample_project / "pkg" / "stubs.pyi").write_text("def f() -> int: ...\n", encoding="utf-8")

    found = find_source_files(sample_project)

    pkg = (sample_project / "pkg").resolve()
    assert found == [str(pkg / "calc.py"), str(pkg / "shapes.py"), str(pkg / "stubs.pyi")]


def test_find_source_files_respects_max_depth(tmp_path: Path):
    deep = tmp_path / "a" / "b"
    deep.mkdir(parents=True)
    (tmp_path / "top.py").write_text("x = 1\n", encoding="utf-8")
    (deep / "deep.py").write_text("y = 2\n", encoding="utf-8")

    found = find_source_files(tmp_path, max_depth=1)
    assert [Path(p).name for p in found] == ["top.py"]


def test_find_source_files_missing_root_raises(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        find_source_files(tmp_path / "missing")
