"""coderag index storage: models, SQLite persistence, vector store."""

from coderag.db.connection import Database
from coderag.db.schema import INDEX_VERSION, MANIFEST_VERSION, initialize
from coderag.db.store import (
    EmbeddingDimensionError,
    IndexFormatError,
    IndexVersionError,
    VectorStore,
    detect_file_changes,
    fingerprint_file,
)

__all__ = [
    "Database",
    "EmbeddingDimensionError",
    "INDEX_VERSION",
    "MANIFEST_VERSION",
    "initialize",
    "IndexFormatError",
    "IndexVersionError",
    "VectorStore",
    "detect_file_changes",
    "fingerprint_file",
]
