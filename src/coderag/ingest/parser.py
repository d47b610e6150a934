"""Python source parsing: top-level entities via the stdlib ``ast`` module."""

from __future__ import annotations

import ast
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from coderag.db.models import ChunkType

logger = logging.getLogger(__name__)

_SOURCE_SUFFIXES = (".py", ".pyi")

_SKIP_DIRS = frozenset(
    [
        "__pycache__",
        "node_modules",
        "venv",
        "env",
        "build",
        "dist",
        "site-packages",
        "htmlcov",
    ]
)

# Base classes that mark a class as an interface.
_INTERFACE_BASES = frozenset(["Protocol", "ABC"])


class ParseError(ValueError):
    """Raised when a source file cannot be parsed."""


@dataclass(frozen=True)
class ParsedEntity:
    """A top-level definition extracted from a source file."""

    name: str
    type: ChunkType
    code: str
    file_path: str
    start_line: int
    end_line: int


def parse_python_file(path: str | Path) -> list[ParsedEntity]:
    """Extract top-level functions, classes, type aliases and constants.

    Bodies are not descended: methods are part of their class entity.
    Decorators are included in the entity's line range. A module with code
    but no top-level definitions yields a single ``file`` entity; an empty
    module yields nothing.

    Raises:
        ParseError: If the file is not valid Python.
        OSError / UnicodeDecodeError: If the file cannot be read.
    """
    file_path = str(path)
    source = Path(path).read_text(encoding="utf-8")
    if not source.strip():
        return []

    try:
        tree = ast.parse(source, filename=file_path)
    except SyntaxError as exc:
        raise ParseError(f"{file_path}:{exc.lineno}: {exc.msg}") from exc

    lines = source.splitlines()
    entities: list[ParsedEntity] = []

    for node in tree.body:
        classified = _classify(node)
        if classified is None:
            continue
        name, chunk_type = classified
        start = _start_line(node)
        end = node.end_lineno or start
        entities.append(
            ParsedEntity(
                name=name,
                type=chunk_type,
                code="\n".join(lines[start - 1 : end]),
                file_path=file_path,
                start_line=start,
                end_line=end,
            )
        )

    if not entities:
        entities.append(
            ParsedEntity(
                name=Path(file_path).name,
                type=ChunkType.FILE,
                code=source.rstrip("\n"),
                file_path=file_path,
                start_line=1,
                end_line=max(1, len(lines)),
            )
        )
    return entities


def _classify(node: ast.stmt) -> tuple[str, ChunkType] | None:
    if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
        return node.name, ChunkType.FUNCTION
    if isinstance(node, ast.ClassDef):
        if any(_base_name(b) in _INTERFACE_BASES for b in node.bases):
            return node.name, ChunkType.INTERFACE
        return node.name, ChunkType.CLASS
    if isinstance(node, ast.TypeAlias):
        return node.name.id, ChunkType.TYPE
    if isinstance(node, ast.AnnAssign) and isinstance(node.target, ast.Name):
        if _base_name(node.annotation) == "TypeAlias":
            return node.target.id, ChunkType.TYPE
        return node.target.id, ChunkType.CONSTANT
    if isinstance(node, ast.Assign):
        # One entity per statement: the first simple name wins.
        for target in node.targets:
            if isinstance(target, ast.Name):
                return target.id, ChunkType.CONSTANT
    return None


def _base_name(expr: ast.expr) -> str | None:
    """Return the trailing identifier of ``Name``, ``mod.Name`` or ``Name[...]``."""
    if isinstance(expr, ast.Subscript):
        expr = expr.value
    if isinstance(expr, ast.Name):
        return expr.id
    if isinstance(expr, ast.Attribute):
        return expr.attr
    return None


def _start_line(node: ast.stmt) -> int:
    decorators = getattr(node, "decorator_list", None) or []
    return min([node.lineno, *(d.lineno for d in decorators)])


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def is_test_file(name: str) -> bool:
    return name.startswith("test_") or name.endswith("_test.py") or name == "conftest.py"


def find_source_files(root: str | Path, max_depth: int = 20) -> list[str]:
    """Return sorted absolute paths of Python source files under *root*.

    Hidden entries, virtualenv/build/cache directories and test files are
    skipped. Directories deeper than *max_depth* are not descended (a
    warning is logged).

    Raises:
        FileNotFoundError: If *root* is not a directory.
    """
    base = Path(root).resolve()
    if not base.is_dir():
        raise FileNotFoundError(f"Not a directory: {root}")

    found: list[str] = []

    def _walk(current: Path, depth: int) -> None:
        if depth > max_depth:
            logger.warning("Max directory depth (%d) reached at %s", max_depth, current)
            return
        try:
            entries = list(os.scandir(current))
        except OSError as exc:
            logger.warning("Cannot read directory %s: %s", current, exc)
            return
        for entry in entries:
            if entry.name.startswith("."):
                continue
            if entry.is_dir(follow_symlinks=False):
                if entry.name not in _SKIP_DIRS:
                    _walk(Path(entry.path), depth + 1)
            elif (
                entry.is_file()
                and entry.name.endswith(_SOURCE_SUFFIXES)
                and not is_test_file(entry.name)
            ):
                found.append(entry.path)

    _walk(base, 0)
    found.sort()
    return found
