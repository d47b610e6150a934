"""Markdown documentation parsing: frontmatter, heading sections, doc type."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from coderag.db.models import DocType

logger = logging.getLogger(__name__)

_FRONTMATTER_RE = re.compile(r"\A---\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+)$")

_DEFAULT_HEADING = "Introduction"

# Checked in order against the lower-cased path.
_FOLDER_TYPES: tuple[tuple[tuple[str, ...], DocType], ...] = (
    (("/prd/", "/prds/"), DocType.PRD),
    (("/adr/", "/adrs/"), DocType.ADR),
    (("/api/", "/specs/"), DocType.API),
)
_PREFIX_TYPES: tuple[tuple[tuple[str, ...], DocType], ...] = (
    (("prd-",), DocType.PRD),
    (("adr-",), DocType.ADR),
    (("api-", "spec-"), DocType.API),
    (("analysis-", "research-", "notes-"), DocType.NOTES),
)


@dataclass(frozen=True)
class DocSection:
    heading: str
    level: int
    content: str
    start_line: int
    end_line: int


@dataclass(frozen=True)
class ParsedDocument:
    file_path: str
    title: str
    doc_type: DocType
    sections: tuple[DocSection, ...]
    frontmatter: dict[str, Any] = field(default_factory=dict)


def parse_frontmatter(content: str) -> tuple[dict[str, Any], str, int]:
    """Split a leading ``---`` YAML block from *content*.

    Returns ``(frontmatter, body, body_line_offset)``. Malformed YAML is
    logged and treated as an empty mapping.
    """
    match = _FRONTMATTER_RE.match(content)
    if not match:
        return {}, content, 0

    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        logger.warning("Invalid frontmatter ignored: %s", exc)
        data = None
    offset = content[: match.end()].count("\n")
    return (data if isinstance(data, dict) else {}), content[match.end() :], offset


def extract_sections(body: str, line_offset: int = 0) -> list[DocSection]:
    """Split *body* into sections at ``#``..``######`` headings.

    Text before the first heading becomes an "Introduction" section. Sections
    with no content are dropped, except a trailing heading.
    """
    lines = body.split("\n")
    sections: list[DocSection] = []

    heading = ""
    level = 0
    buf: list[str] = []
    start = 1

    def _flush(end: int, keep_empty: bool) -> None:
        if not heading and not buf:
            return
        text = "\n".join(buf).strip()
        if text or (keep_empty and heading):
            sections.append(
                DocSection(
                    heading=heading or _DEFAULT_HEADING,
                    level=level or 1,
                    content=text,
                    start_line=start + line_offset,
                    end_line=max(start, end) + line_offset,
                )
            )

    for i, line in enumerate(lines):
        match = _HEADING_RE.match(line)
        if match is None:
            buf.append(line)
            continue
        _flush(end=i, keep_empty=False)
        heading = match.group(2).strip()
        level = len(match.group(1))
        buf = []
        start = i + 1

    _flush(end=len(lines), keep_empty=True)
    return sections


def detect_document_type(file_path: str | Path, frontmatter: dict[str, Any]) -> DocType:
    """Classify a document.

    Priority: frontmatter ``type`` > folder name > filename prefix > notes.
    """
    declared = frontmatter.get("type")
    if isinstance(declared, str):
        try:
            return DocType(declared.strip().lower())
        except ValueError:
            logger.debug("Unknown frontmatter type %r in %s", declared, file_path)

    path_lower = Path(file_path).as_posix().lower()
    for markers, doc_type in _FOLDER_TYPES:
        if any(m in path_lower for m in markers):
            return doc_type

    name = Path(file_path).name.lower()
    for prefixes, doc_type in _PREFIX_TYPES:
        if name.startswith(prefixes):
            return doc_type

    return DocType.NOTES


def parse_markdown_file(path: str | Path) -> ParsedDocument:
    """Read and parse a markdown document."""
    content = Path(path).read_text(encoding="utf-8")
    frontmatter, body, offset = parse_frontmatter(content)

    title = Path(path).stem
    for line in body.split("\n"):
        match = _HEADING_RE.match(line)
        if match and len(match.group(1)) == 1:
            title = match.group(2).strip()
            break

    return ParsedDocument(
        file_path=str(path),
        title=title,
        doc_type=detect_document_type(path, frontmatter),
        sections=tuple(extract_sections(body, offset)),
        frontmatter=frontmatter,
    )


def find_document_files(docs_dir: str | Path, max_depth: int = 20) -> list[str]:
    """Return sorted paths of ``*.md`` files under *docs_dir*.

    Hidden entries and ``_``-prefixed files are skipped. A missing directory
    yields an empty list.
    """
    base = Path(docs_dir)
    if not base.is_dir():
        return []

    found: list[str] = []

    def _walk(current: Path, depth: int) -> None:
        if depth > max_depth:
            logger.warning("Max directory depth (%d) reached at %s", max_depth, current)
            return
        for entry in os.scandir(current):
            if entry.name.startswith("."):
                continue
            if entry.is_dir(follow_symlinks=False):
                _walk(Path(entry.path), depth + 1)
            elif entry.is_file() and entry.name.endswith(".md") and not entry.name.startswith("_"):
                found.append(entry.path)

    _walk(base.resolve(), 0)
    found.sort()
    return found
