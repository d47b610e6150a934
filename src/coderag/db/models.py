"""Domain models for the coderag index."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class ChunkType(str, Enum):
    FUNCTION = "function"
    CLASS = "class"
    INTERFACE = "interface"
    TYPE = "type"
    CONSTANT = "constant"
    FILE = "file"
    DOC_SECTION = "doc_section"
    DOC_PRD = "doc_prd"
    DOC_ADR = "doc_adr"
    DOC_API = "doc_api"
    DOC_NOTES = "doc_notes"


class DocType(str, Enum):
    PRD = "prd"
    ADR = "adr"
    API = "api"
    NOTES = "notes"

    @property
    def chunk_type(self) -> ChunkType:
        return ChunkType(f"doc_{self.value}")


@dataclass(frozen=True)
class Chunk:
    """An independently embeddable unit of code or documentation.

    ``parent_id`` holds the *name* of the entity a split chunk came from. It is
    a lookup key for context resolution, not an ownership link.
    """

    id: str
    content: str
    type: ChunkType
    name: str
    file_path: str
    start_line: int
    end_line: int
    token_count: int
    parent_id: str | None = None
    doc_type: DocType | None = None

    def __post_init__(self) -> None:
        if self.start_line > self.end_line:
            raise ValueError(
                f"Chunk '{self.name}': start_line {self.start_line} > end_line {self.end_line}"
            )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["doc_type"] = self.doc_type.value if self.doc_type else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Chunk:
        doc_type = data.get("doc_type")
        return cls(
            id=data["id"],
            content=data["content"],
            type=ChunkType(data["type"]),
            name=data["name"],
            file_path=data["file_path"],
            start_line=int(data["start_line"]),
            end_line=int(data["end_line"]),
            token_count=int(data["token_count"]),
            parent_id=data.get("parent_id"),
            doc_type=DocType(doc_type) if doc_type else None,
        )


@dataclass(frozen=True)
class IndexMetadata:
    project_path: str
    total_chunks: int
    total_tokens: int
    indexed_at: str  # ISO-8601, UTC
    version: str


@dataclass(frozen=True)
class SearchResult:
    """A chunk with its retrieval scores.

    Before reranking ``final_score == vector_score`` and ``llm_score`` is None.
    """

    chunk: Chunk
    vector_score: float
    final_score: float
    llm_score: float | None = None


@dataclass(frozen=True)
class FileEntry:
    """Fingerprint of a source file at last index time."""

    content_hash: str
    mtime: int  # milliseconds, floored
    chunk_ids: tuple[str, ...] = ()


@dataclass
class FileManifest:
    version: str
    files: dict[str, FileEntry] = field(default_factory=dict)


@dataclass
class FileChanges:
    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.modified or self.deleted)

    def counts(self) -> dict[str, int]:
        return {
            "added": len(self.added),
            "modified": len(self.modified),
            "deleted": len(self.deleted),
            "unchanged": len(self.unchanged),
        }


@dataclass(frozen=True)
class IncrementalIndexResult:
    metadata: IndexMetadata
    stats: dict[str, int]


@dataclass(frozen=True)
class QueryResult:
    answer: str
    sources: list[SearchResult]
    token_count: int
