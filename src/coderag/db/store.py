"""In-memory vector store with single-file SQLite persistence.

Search is brute-force cosine similarity over every stored vector (numpy), so
results are exact and ordering is deterministic: descending score, ties broken
by insertion order.

Persistence layout (one file per project index, see coderag.db.schema):
  index_metadata  one row: IndexMetadata + embedding dimension + manifest version
  chunks          chunk fields + float32 embedding blob (sqlite-vec format)
  file_manifest   path -> content hash, mtime, chunk ids

Incremental reconciliation compares the manifest against the current file
listing: mtime first, sha256 only when the mtime moved.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import sqlite3
from collections.abc import Iterable, Sequence
from pathlib import Path

import numpy as np
import sqlite_vec

from coderag.db.connection import Database
from coderag.db.models import (
    Chunk,
    FileChanges,
    FileEntry,
    FileManifest,
    IndexMetadata,
    SearchResult,
)
from coderag.db.schema import INDEX_VERSION, has_tables, initialize

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class IndexVersionError(RuntimeError):
    """Raised when a persisted index was written with a different schema version."""

    def __init__(self, found: str, expected: str = INDEX_VERSION) -> None:
        super().__init__(f"Index version mismatch: expected {expected}, got {found}")
        self.found = found
        self.expected = expected


class IndexFormatError(ValueError):
    """Raised when a persisted index file is malformed or not an index at all."""


class EmbeddingDimensionError(ValueError):
    """Raised when a query vector does not match the dimension of the stored vectors."""

    def __init__(self, expected: int, found: int) -> None:
        super().__init__(
            f"Query embedding dimension mismatch: expected {expected}, got {found}"
        )
        self.expected = expected
        self.found = found


# ---------------------------------------------------------------------------
# File fingerprints
# ---------------------------------------------------------------------------


def compute_file_hash(path: str | Path) -> str:
    """Compute the SHA-256 hex digest of a file's contents."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(8192), b""):
            h.update(block)
    return h.hexdigest()


def get_file_mtime(path: str | Path) -> int:
    """Return the file modification time in whole milliseconds."""
    return os.stat(path).st_mtime_ns // 1_000_000


def fingerprint_file(path: str | Path, chunk_ids: Iterable[str] = ()) -> FileEntry:
    """Build a manifest entry for *path*."""
    return FileEntry(
        content_hash=compute_file_hash(path),
        mtime=get_file_mtime(path),
        chunk_ids=tuple(chunk_ids),
    )


def detect_file_changes(
    current_files: Sequence[str],
    manifest: FileManifest | None,
) -> FileChanges:
    """Classify *current_files* against *manifest*.

    - added:     path not in the manifest
    - modified:  mtime moved and content hash differs
    - unchanged: same mtime, or same hash despite a new mtime
    - deleted:   in the manifest but not on disk (or vanished while checking)
    """
    known = manifest.files if manifest is not None else {}
    changes = FileChanges()
    current = set(current_files)

    for path in current_files:
        entry = known.get(path)
        if entry is None:
            changes.added.append(path)
            continue
        try:
            if get_file_mtime(path) == entry.mtime:
                changes.unchanged.append(path)
            elif compute_file_hash(path) != entry.content_hash:
                changes.modified.append(path)
            else:
                changes.unchanged.append(path)
        except OSError:
            logger.warning("File disappeared during change detection: %s", path)
            changes.deleted.append(path)

    changes.deleted.extend(p for p in known if p not in current)
    return changes


# ---------------------------------------------------------------------------
# VectorStore
# ---------------------------------------------------------------------------


class VectorStore:
    """Chunks + vectors + metadata + manifest for one project index.

    Not internally synchronized: callers serialize mutating operations
    (add_chunks, remove_*, reconcile, clear, load) per project.
    """

    def __init__(self) -> None:
        self._chunks: list[Chunk] = []
        self._vectors: list[np.ndarray] = []
        self._id_index: dict[str, int] = {}
        self._matrix: np.ndarray | None = None
        self._dimension = 0
        self._metadata: IndexMetadata | None = None
        self._manifest: FileManifest | None = None

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_chunks(
        self,
        chunks: Sequence[Chunk],
        vectors: Sequence[Sequence[float]],
    ) -> None:
        """Append *chunks* with their *vectors* (same order, same length).

        Raises:
            ValueError: On a length mismatch, an empty vector, a dimension that
                differs from the stored one, or a duplicate chunk id.
        """
        if len(chunks) != len(vectors):
            raise ValueError(
                f"Chunks and vectors must have the same length: {len(chunks)} vs {len(vectors)}"
            )
        if not chunks:
            return

        arrays = [np.asarray(v, dtype=np.float32) for v in vectors]
        dim = self._dimension or arrays[0].shape[0]
        if dim == 0:
            raise ValueError("Embedding dimension cannot be 0")

        seen: set[str] = set()
        for i, (chunk, arr) in enumerate(zip(chunks, arrays)):
            if arr.ndim != 1 or arr.shape[0] != dim:
                raise ValueError(
                    f"Vector at index {i} has wrong dimension: expected {dim}, got {arr.shape[-1] if arr.ndim else 0}"
                )
            if chunk.id in self._id_index or chunk.id in seen:
                raise ValueError(f"Duplicate chunk id: {chunk.id}")
            seen.add(chunk.id)

        self._dimension = dim
        for chunk, arr in zip(chunks, arrays):
            self._id_index[chunk.id] = len(self._chunks)
            self._chunks.append(chunk)
            self._vectors.append(arr)
        self._matrix = None

    def remove_chunks(self, ids: Iterable[str]) -> int:
        """Remove chunks (and their vectors) by id. Returns the number removed."""
        drop = set(ids)
        if not drop:
            return 0
        kept = [
            (chunk, vec)
            for chunk, vec in zip(self._chunks, self._vectors)
            if chunk.id not in drop
        ]
        removed = len(self._chunks) - len(kept)
        if removed:
            self._chunks = [c for c, _ in kept]
            self._vectors = [v for _, v in kept]
            self._rebuild_index()
        return removed

    def remove_chunks_by_file(self, file_path: str) -> int:
        """Remove every chunk whose ``file_path`` is *file_path*."""
        return self.remove_chunks(c.id for c in self._chunks if c.file_path == file_path)

    def reconcile(self, current_files: Sequence[str]) -> FileChanges:
        """Diff *current_files* against the manifest and drop stale chunks.

        Chunks of modified and deleted files are removed together with their
        manifest entries; the caller re-chunks and re-embeds added and
        modified files, then records their new entries.
        """
        changes = detect_file_changes(current_files, self._manifest)
        for path in [*changes.modified, *changes.deleted]:
            removed = self.remove_chunks_by_file(path)
            logger.debug("Removed %d chunks for %s", removed, path)
            if self._manifest is not None:
                self._manifest.files.pop(path, None)
        return changes

    def clear(self) -> None:
        """Drop all chunks, vectors, metadata and manifest."""
        self._chunks = []
        self._vectors = []
        self._id_index = {}
        self._matrix = None
        self._dimension = 0
        self._metadata = None
        self._manifest = None

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, query_vector: Sequence[float], top_k: int) -> list[SearchResult]:
        """Return the *top_k* chunks most similar to *query_vector*, best-first.

        Raises:
            EmbeddingDimensionError: If the query dimension differs from the
                stored vectors.
        """
        if not self._chunks or top_k <= 0:
            return []

        query = np.asarray(query_vector, dtype=np.float32)
        if query.ndim != 1 or query.shape[0] != self._dimension:
            raise EmbeddingDimensionError(
                self._dimension, query.shape[-1] if query.ndim else 0
            )

        scores = _cosine_similarity(query, self._get_matrix())
        # Stable sort keeps insertion order among equal scores.
        order = np.argsort(-scores, kind="stable")[:top_k]

        results: list[SearchResult] = []
        for idx in order:
            score = min(1.0, max(0.0, float(scores[idx])))
            results.append(
                SearchResult(chunk=self._chunks[idx], vector_score=score, final_score=score)
            )
        return results

    def _get_matrix(self) -> np.ndarray:
        if self._matrix is None:
            self._matrix = np.vstack(self._vectors).astype(np.float64)
        return self._matrix

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_chunk_by_id(self, chunk_id: str) -> Chunk | None:
        idx = self._id_index.get(chunk_id)
        return self._chunks[idx] if idx is not None else None

    def get_vector(self, chunk_id: str) -> list[float] | None:
        idx = self._id_index.get(chunk_id)
        return self._vectors[idx].tolist() if idx is not None else None

    def get_all_chunks(self) -> list[Chunk]:
        return list(self._chunks)

    def get_metadata(self) -> IndexMetadata | None:
        return self._metadata

    def set_metadata(self, metadata: IndexMetadata) -> None:
        self._metadata = metadata

    def get_manifest(self) -> FileManifest | None:
        return self._manifest

    def set_manifest(self, manifest: FileManifest) -> None:
        self._manifest = manifest

    @property
    def embedding_dimension(self) -> int:
        """Vector dimension (0 until the first chunks are added)."""
        return self._dimension

    def size(self) -> int:
        return len(self._chunks)

    def is_empty(self) -> bool:
        return not self._chunks

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: str | Path) -> None:
        """Write the full store to *path* (temp file + atomic replace).

        Raises:
            RuntimeError: If no metadata has been set.
        """
        if self._metadata is None:
            raise RuntimeError("Cannot save store without metadata")

        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".tmp")
        tmp.unlink(missing_ok=True)

        meta = self._metadata
        manifest = self._manifest
        with Database(tmp) as conn:
            initialize(conn)
            conn.execute(
                """
                INSERT INTO index_metadata (
                    id, project_path, total_chunks, total_tokens, indexed_at,
                    version, embedding_dimension, manifest_version
                ) VALUES (1, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    meta.project_path,
                    meta.total_chunks,
                    meta.total_tokens,
                    meta.indexed_at,
                    meta.version,
                    self._dimension,
                    manifest.version if manifest is not None else None,
                ),
            )
            conn.executemany(
                """
                INSERT INTO chunks (
                    seq, id, content, type, name, file_path, start_line, end_line,
                    token_count, parent_id, doc_type, embedding
                ) VALUES (
                    :seq, :id, :content, :type, :name, :file_path, :start_line, :end_line,
                    :token_count, :parent_id, :doc_type, :embedding
                )
                """,
                [
                    {
                        **c.to_dict(),
                        "seq": seq,
                        "embedding": sqlite_vec.serialize_float32(vec.tolist()),
                    }
                    for seq, (c, vec) in enumerate(zip(self._chunks, self._vectors))
                ],
            )
            if manifest is not None:
                conn.executemany(
                    "INSERT INTO file_manifest (path, content_hash, mtime, chunk_ids) VALUES (?, ?, ?, ?)",
                    [
                        (p, e.content_hash, e.mtime, json.dumps(list(e.chunk_ids)))
                        for p, e in manifest.files.items()
                    ],
                )

        os.replace(tmp, target)
        logger.debug("Saved %d chunks to %s", len(self._chunks), target)

    def load(self, path: str | Path) -> None:
        """Replace the in-memory state with the index stored at *path*.

        The store is left untouched when loading fails.

        Raises:
            FileNotFoundError: If *path* does not exist.
            IndexVersionError: If the stored version differs from INDEX_VERSION.
            IndexFormatError: If the file is not a valid index.
        """
        source = Path(path)
        if not source.is_file():
            raise FileNotFoundError(f"No index file at {source}")

        try:
            with Database(source) as conn:
                if not has_tables(conn):
                    raise IndexFormatError(f"Not a coderag index: {source}")

                meta_row = conn.execute("SELECT * FROM index_metadata WHERE id = 1").fetchone()
                if meta_row is None:
                    raise IndexFormatError(f"Index file has no metadata: {source}")
                if meta_row["version"] != INDEX_VERSION:
                    raise IndexVersionError(meta_row["version"])

                dimension = int(meta_row["embedding_dimension"])
                lengths = conn.execute(
                    "SELECT DISTINCT vec_length(embedding) FROM chunks"
                ).fetchall()
                if len(lengths) > 1 or (lengths and lengths[0][0] != dimension):
                    raise IndexFormatError(
                        f"Inconsistent embedding dimensions in {source}: "
                        f"{sorted(r[0] for r in lengths)} (expected {dimension})"
                    )

                chunk_rows = conn.execute(
                    """
                    SELECT id, content, type, name, file_path, start_line, end_line,
                           token_count, parent_id, doc_type, embedding
                    FROM chunks ORDER BY seq
                    """
                ).fetchall()
                manifest_rows = conn.execute(
                    "SELECT path, content_hash, mtime, chunk_ids FROM file_manifest"
                ).fetchall()
        except sqlite3.DatabaseError as exc:
            raise IndexFormatError(f"Unreadable index file {source}: {exc}") from exc

        try:
            chunks = [Chunk.from_dict(dict(r)) for r in chunk_rows]
        except (KeyError, ValueError) as exc:
            raise IndexFormatError(f"Invalid chunk record in {source}: {exc}") from exc
        vectors = [np.frombuffer(r["embedding"], dtype=np.float32).copy() for r in chunk_rows]

        manifest: FileManifest | None = None
        if meta_row["manifest_version"] is not None:
            manifest = FileManifest(
                version=meta_row["manifest_version"],
                files={
                    r["path"]: FileEntry(
                        content_hash=r["content_hash"],
                        mtime=int(r["mtime"]),
                        chunk_ids=tuple(json.loads(r["chunk_ids"])),
                    )
                    for r in manifest_rows
                },
            )

        self._chunks = chunks
        self._vectors = vectors
        self._dimension = dimension if chunks else 0
        self._rebuild_index()
        self._metadata = IndexMetadata(
            project_path=meta_row["project_path"],
            total_chunks=int(meta_row["total_chunks"]),
            total_tokens=int(meta_row["total_tokens"]),
            indexed_at=meta_row["indexed_at"],
            version=meta_row["version"],
        )
        self._manifest = manifest

    @staticmethod
    def exists(path: str | Path) -> bool:
        """Return True if an index file exists at *path*."""
        return Path(path).is_file()

    def _rebuild_index(self) -> None:
        self._id_index = {c.id: i for i, c in enumerate(self._chunks)}
        self._matrix = None


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _cosine_similarity(query_vec: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity between *query_vec* and each row of *matrix*.

    Zero-norm vectors score 0 against everything.
    """
    query = query_vec.astype(np.float64)
    query_norm = np.linalg.norm(query)
    if query_norm == 0.0:
        logger.warning("Query embedding has zero norm; all scores are 0")
        return np.zeros(matrix.shape[0], dtype=np.float64)
    matrix_norms = np.linalg.norm(matrix, axis=1)
    matrix_norms = np.where(matrix_norms == 0.0, np.inf, matrix_norms)
    return np.dot(matrix, query) / (matrix_norms * query_norm)
