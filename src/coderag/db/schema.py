"""Index file schema DDL and initialization.

The index file is rebuilt on every save. A stored ``version`` that differs
from INDEX_VERSION invalidates the whole file: there are no migrations.
"""

from __future__ import annotations

import sqlite3

# Bumped whenever the chunk format or the set of indexed sources changes.
INDEX_VERSION = "1.1.0"
MANIFEST_VERSION = "1.0.0"

_CREATE_INDEX_METADATA = """
CREATE TABLE IF NOT EXISTS index_metadata (
    id                  INTEGER PRIMARY KEY CHECK (id = 1),
    project_path        TEXT NOT NULL,
    total_chunks        INTEGER NOT NULL,
    total_tokens        INTEGER NOT NULL,
    indexed_at          TEXT NOT NULL,
    version             TEXT NOT NULL,
    embedding_dimension INTEGER NOT NULL,
    manifest_version    TEXT
)
"""

# seq preserves insertion order, which search uses to break ties.
_CREATE_CHUNKS = """
CREATE TABLE IF NOT EXISTS chunks (
    seq          INTEGER PRIMARY KEY,
    id           TEXT NOT NULL UNIQUE,
    content      TEXT NOT NULL,
    type         TEXT NOT NULL,
    name         TEXT NOT NULL,
    file_path    TEXT NOT NULL,
    start_line   INTEGER NOT NULL,
    end_line     INTEGER NOT NULL,
    token_count  INTEGER NOT NULL,
    parent_id    TEXT,
    doc_type     TEXT,
    embedding    BLOB NOT NULL
)
"""

_CREATE_FILE_MANIFEST = """
CREATE TABLE IF NOT EXISTS file_manifest (
    path          TEXT PRIMARY KEY,
    content_hash  TEXT NOT NULL,
    mtime         INTEGER NOT NULL,
    chunk_ids     TEXT NOT NULL DEFAULT '[]'
)
"""

_TABLES = ("index_metadata", "chunks", "file_manifest")


def initialize(conn: sqlite3.Connection) -> None:
    """Create the index tables (idempotent)."""
    conn.execute(_CREATE_INDEX_METADATA)
    conn.execute(_CREATE_CHUNKS)
    conn.execute(_CREATE_FILE_MANIFEST)
    conn.commit()


def has_tables(conn: sqlite3.Connection) -> bool:
    """Return True if every index table exists in *conn*."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table'"
    ).fetchall()
    names = {r[0] for r in rows}
    return all(t in names for t in _TABLES)
