"""coderag ingest pipeline: source and markdown parsers, chunkers."""

from coderag.ingest.base import BaseChunker, estimate_tokens
from coderag.ingest.chunker import (
    CodeChunker,
    DocChunker,
    chunk_codebase,
    chunk_document_sections,
    chunk_documents,
    chunk_entities,
)
from coderag.ingest.doc_parser import (
    DocSection,
    ParsedDocument,
    detect_document_type,
    find_document_files,
    parse_markdown_file,
)
from coderag.ingest.parser import ParsedEntity, ParseError, find_source_files, parse_python_file

__all__ = [
    "BaseChunker",
    "CodeChunker",
    "DocChunker",
    "DocSection",
    "ParsedDocument",
    "ParsedEntity",
    "ParseError",
    "chunk_codebase",
    "chunk_document_sections",
    "chunk_documents",
    "chunk_entities",
    "detect_document_type",
    "estimate_tokens",
    "find_document_files",
    "find_source_files",
    "parse_markdown_file",
    "parse_python_file",
]
