"""Code and documentation chunkers.

Entities (functions, classes, ...) and doc sections that fit in
``chunk_size`` estimated tokens become one chunk verbatim. Larger ones are
split greedily on natural boundaries (lines for code, paragraphs for docs)
with overlap; split chunks are named ``name[i]`` and carry the entity name
as ``parent_id``.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path

from coderag.config import RAGConfig
from coderag.db.models import Chunk
from coderag.ingest.base import BaseChunker
from coderag.ingest.doc_parser import DocSection, ParsedDocument, parse_markdown_file
from coderag.ingest.parser import ParsedEntity, ParseError, parse_python_file

logger = logging.getLogger(__name__)

_PARAGRAPH_SPLIT_RE = re.compile(r"\n\n+")


def _new_id() -> str:
    return uuid.uuid4().hex


class CodeChunker(BaseChunker):
    """Chunk parsed source entities, splitting large ones by line."""

    separator = "\n"

    def chunk(self, item: ParsedEntity) -> list[Chunk]:
        entity = item
        if self.count_tokens(entity.code) <= self.config.chunk_size:
            return [self._make_chunk(entity, entity.code)]

        lines = entity.code.split("\n")
        if len(lines) == 1:
            return [self._make_chunk(entity, entity.code)]

        windows = self._split_units(lines)
        if len(windows) == 1:
            return [self._make_chunk(entity, entity.code)]

        return [
            self._make_chunk(
                entity,
                self.separator.join(w.units),
                index=i,
                start_line=entity.start_line + w.start,
                end_line=entity.start_line + w.start + len(w.units) - 1,
            )
            for i, w in enumerate(windows)
        ]

    def _make_chunk(
        self,
        entity: ParsedEntity,
        content: str,
        index: int | None = None,
        start_line: int | None = None,
        end_line: int | None = None,
    ) -> Chunk:
        split = index is not None
        return Chunk(
            id=_new_id(),
            content=content,
            type=entity.type,
            name=f"{entity.name}[{index}]" if split else entity.name,
            file_path=entity.file_path,
            start_line=start_line if start_line is not None else entity.start_line,
            end_line=end_line if end_line is not None else entity.end_line,
            token_count=self.count_tokens(content),
            parent_id=entity.name if split else None,
        )


class DocChunker(BaseChunker):
    """Chunk the sections of a parsed markdown document, splitting by paragraph."""

    separator = "\n\n"

    def chunk(self, item: ParsedDocument) -> list[Chunk]:
        doc = item
        chunks: list[Chunk] = []
        for section in doc.sections:
            if not section.content.strip() and not section.heading.strip():
                continue
            chunks.extend(self._chunk_section(doc, section))
        return chunks

    def _chunk_section(self, doc: ParsedDocument, section: DocSection) -> list[Chunk]:
        if self.count_tokens(_render(section.heading, section.content)) <= self.config.chunk_size:
            return [self._make_chunk(doc, section, section.content)]

        paragraphs = [p for p in _PARAGRAPH_SPLIT_RE.split(section.content) if p.strip()]
        heading_tokens = self.count_tokens(_render(section.heading, ""))
        windows = self._split_units(paragraphs, reserved_tokens=heading_tokens)
        if len(windows) <= 1:
            return [self._make_chunk(doc, section, section.content)]

        return [
            self._make_chunk(doc, section, self.separator.join(w.units), index=i)
            for i, w in enumerate(windows)
        ]

    def _make_chunk(
        self,
        doc: ParsedDocument,
        section: DocSection,
        body: str,
        index: int | None = None,
    ) -> Chunk:
        split = index is not None
        content = _render(section.heading, body)
        return Chunk(
            id=_new_id(),
            content=content,
            type=doc.doc_type.chunk_type,
            name=f"{section.heading}[{index}]" if split else section.heading,
            file_path=doc.file_path,
            start_line=section.start_line,
            end_line=section.end_line,
            token_count=self.count_tokens(content),
            parent_id=section.heading if split else None,
            doc_type=doc.doc_type,
        )


def _render(heading: str, body: str) -> str:
    return f"# {heading}\n\n{body}"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def chunk_entities(
    entities: Iterable[ParsedEntity],
    config: RAGConfig | None = None,
) -> list[Chunk]:
    """Convert parsed entities to chunks, splitting those over ``chunk_size``."""
    chunker = CodeChunker(config)
    chunks: list[Chunk] = []
    for entity in entities:
        chunks.extend(chunker.chunk(entity))
    return chunks


def chunk_document_sections(
    doc: ParsedDocument,
    config: RAGConfig | None = None,
) -> list[Chunk]:
    """Convert the sections of *doc* to chunks."""
    return DocChunker(config).chunk(doc)


def chunk_codebase(
    files: Sequence[str],
    config: RAGConfig | None = None,
    parse: Callable[[str], list[ParsedEntity]] = parse_python_file,
) -> list[Chunk]:
    """Parse and chunk every file in *files*.

    A file that fails to read or parse is logged and skipped.
    """
    chunker = CodeChunker(config)
    chunks: list[Chunk] = []
    for path in files:
        try:
            entities = parse(path)
        except (ParseError, OSError, UnicodeDecodeError) as exc:
            logger.warning("Failed to parse %s: %s", path, exc)
            continue
        for entity in entities:
            chunks.extend(chunker.chunk(entity))
    return chunks


def chunk_documents(
    files: Sequence[str],
    config: RAGConfig | None = None,
) -> list[Chunk]:
    """Parse and chunk every markdown file in *files*, skipping unreadable ones."""
    chunker = DocChunker(config)
    chunks: list[Chunk] = []
    for path in files:
        try:
            doc = parse_markdown_file(path)
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Failed to parse document %s: %s", Path(path).name, exc)
            continue
        chunks.extend(chunker.chunk(doc))
    return chunks
