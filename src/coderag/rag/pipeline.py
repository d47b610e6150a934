"""RAG pipeline: full and incremental indexing, index loading, querying.

Indexing:  find files -> parse -> chunk -> embed (batched) -> VectorStore
Querying:  embed question -> vector search -> LLM rerank -> parent context
           -> grounded answer
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path

from coderag.config import RAGConfig
from coderag.db.models import (
    Chunk,
    FileManifest,
    IncrementalIndexResult,
    IndexMetadata,
    QueryResult,
    SearchResult,
)
from coderag.db.schema import INDEX_VERSION, MANIFEST_VERSION
from coderag.db.store import IndexVersionError, VectorStore, fingerprint_file
from coderag.ingest.chunker import chunk_codebase, chunk_documents
from coderag.ingest.doc_parser import find_document_files
from coderag.ingest.parser import find_source_files
from coderag.rag.embedding_cache import EmbeddingCache
from coderag.rag.providers import (
    CompletionOptions,
    CompletionProvider,
    EmbeddingProvider,
)
from coderag.rag.retriever import rerank_with_llm, resolve_parent_chunks, sanitize_query

logger = logging.getLogger(__name__)

INDEX_FILENAME = "rag-index.db"

NO_RESULTS_ANSWER = "No relevant code found for your query."

_ANSWER_OPTIONS = CompletionOptions(temperature=0.3, max_tokens=2048)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class NoSourceFilesError(FileNotFoundError):
    """Raised when a project contains no indexable source files."""


class IndexingError(RuntimeError):
    """Raised when indexing cannot produce or update an index."""


class EmptyIndexError(RuntimeError):
    """Raised when querying before any index was built or loaded."""


def index_file_path(store_path: str | Path) -> Path:
    """Return the index file location inside *store_path*."""
    return Path(store_path) / INDEX_FILENAME


class RAGPipeline:
    """Orchestrates indexing and querying for one project.

    Owns a single ``VectorStore``. Not internally synchronized: run at most one
    of ``index``/``index_incremental``/``load_index``/``clear`` at a time.

    Args:
        config: Retrieval configuration (defaults to ``RAGConfig()``).
        embedding_cache: Optional cache used for query embeddings; may be
            shared with other pipelines.
    """

    def __init__(
        self,
        config: RAGConfig | None = None,
        embedding_cache: EmbeddingCache | None = None,
    ) -> None:
        self.config = config or RAGConfig()
        self.embedding_cache = embedding_cache
        self.store = VectorStore()

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    def index(
        self,
        project_path: str | Path,
        embedding_provider: EmbeddingProvider,
        store_path: str | Path | None = None,
    ) -> IndexMetadata:
        """Index *project_path* from scratch, replacing the current index.

        Raises:
            NoSourceFilesError: If the project has no Python source files.
            IndexingError: If no chunks could be produced.
            Exception: Embedding provider errors propagate unchanged; the
                previous in-memory index is kept in that case.
        """
        project = Path(project_path).resolve()
        logger.info("Indexing project: %s", project)

        source_files = find_source_files(project, self.config.max_directory_depth)
        logger.info("Found %d source files", len(source_files))
        if not source_files:
            raise NoSourceFilesError(f"No Python source files found in {project}")

        doc_files = self._find_docs(project)
        chunks = self._chunk_files(source_files, doc_files)
        if not chunks:
            raise IndexingError(f"No chunks generated from files in {project}")

        vectors = self._embed_chunks(chunks, embedding_provider)

        self.store.clear()
        self.store.add_chunks(chunks, vectors)

        metadata = self._build_metadata(project)
        self.store.set_metadata(metadata)
        self.store.set_manifest(
            FileManifest(
                version=MANIFEST_VERSION,
                files=self._fingerprint(source_files + doc_files, chunks),
            )
        )

        if store_path is not None:
            self._save(store_path)

        logger.info(
            "Indexing complete: %d chunks, %d tokens",
            metadata.total_chunks,
            metadata.total_tokens,
        )
        return metadata

    def load_index(self, store_path: str | Path) -> IndexMetadata | None:
        """Load a saved index from *store_path*.

        Returns None (store untouched) if there is no index file, and None
        after clearing the store if the file was written by another index
        version.
        """
        path = index_file_path(store_path)
        if not VectorStore.exists(path):
            logger.info("No index found at %s", path)
            return None

        logger.info("Loading index from %s", path)
        try:
            self.store.load(path)
        except IndexVersionError as exc:
            logger.warning("%s; a full re-index is required", exc)
            self.store.clear()
            return None

        metadata = self.store.get_metadata()
        if metadata is not None:
            logger.info(
                "Loaded index: %d chunks from %s", metadata.total_chunks, metadata.project_path
            )
        return metadata

    def index_incremental(
        self,
        project_path: str | Path,
        embedding_provider: EmbeddingProvider,
        store_path: str | Path | None = None,
    ) -> IncrementalIndexResult:
        """Re-index only the files that changed since the last index.

        Raises:
            IndexingError: If there is no manifest (no prior index loaded or built).
        """
        project = Path(project_path).resolve()
        logger.info("Incremental indexing: %s", project)

        manifest = self.store.get_manifest()
        if manifest is None:
            raise IndexingError("No file manifest found. Run index() or load_index() first.")

        if manifest.version != MANIFEST_VERSION:
            logger.info(
                "Manifest version mismatch (%s vs %s), forcing full reindex",
                manifest.version,
                MANIFEST_VERSION,
            )
            metadata = self.index(project, embedding_provider, store_path)
            return IncrementalIndexResult(
                metadata=metadata,
                stats={"added": 0, "modified": 0, "deleted": 0, "unchanged": 0},
            )

        source_files = find_source_files(project, self.config.max_directory_depth)
        doc_files = self._find_docs(project)
        changes = self.store.reconcile(source_files + doc_files)
        stats = changes.counts()
        logger.info(
            "Changes: +%d ~%d -%d =%d",
            stats["added"],
            stats["modified"],
            stats["deleted"],
            stats["unchanged"],
        )

        if not changes.has_changes:
            existing = self.store.get_metadata()
            if existing is None:
                raise IndexingError("No existing metadata found")
            return IncrementalIndexResult(metadata=existing, stats=stats)

        to_process = set(changes.added) | set(changes.modified)
        new_chunks = self._chunk_files(
            [f for f in source_files if f in to_process],
            [f for f in doc_files if f in to_process],
        )
        if new_chunks:
            vectors = self._embed_chunks(new_chunks, embedding_provider)
            self.store.add_chunks(new_chunks, vectors)

        files = dict(manifest.files)
        files.update(self._fingerprint(sorted(to_process), new_chunks))
        self.store.set_manifest(FileManifest(version=MANIFEST_VERSION, files=files))

        metadata = self._build_metadata(project)
        self.store.set_metadata(metadata)
        if store_path is not None:
            self._save(store_path)

        return IncrementalIndexResult(metadata=metadata, stats=stats)

    # ------------------------------------------------------------------
    # Querying
    # ------------------------------------------------------------------

    def query(
        self,
        question: str,
        embedding_provider: EmbeddingProvider,
        completion_provider: CompletionProvider,
        *,
        rerank_provider: CompletionProvider | None = None,
    ) -> QueryResult:
        """Answer *question* from the indexed code.

        Candidates are scored by *rerank_provider* when given (typically a
        smaller model), otherwise by *completion_provider*.

        Raises:
            EmptyIndexError: If nothing has been indexed or loaded.
        """
        if self.store.is_empty():
            raise EmptyIndexError("Index is empty. Run index() or load_index() first.")

        logger.info("Processing query: %r", question[:50])
        if self.embedding_cache is not None:
            query_embedding = self.embedding_cache.get_or_embed(question, embedding_provider)
        else:
            query_embedding = embedding_provider.embed(question)

        candidates = self.store.search(query_embedding.values, self.config.top_k)
        logger.info("Vector search returned %d results", len(candidates))
        if not candidates:
            return QueryResult(answer=NO_RESULTS_ANSWER, sources=[], token_count=0)

        reranked = rerank_with_llm(
            candidates, question, rerank_provider or completion_provider, self.config
        )
        logger.info("Reranked to %d results", len(reranked))
        sources = resolve_parent_chunks(reranked, self.store.get_all_chunks())

        result = completion_provider.complete(
            build_answer_prompt(question, sources), _ANSWER_OPTIONS
        )
        return QueryResult(answer=result.text, sources=sources, token_count=result.token_count)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> dict[str, object]:
        return {"indexed": not self.store.is_empty(), "metadata": self.store.get_metadata()}

    def get_chunk_count(self) -> int:
        return self.store.size()

    def has_manifest(self) -> bool:
        return self.store.get_manifest() is not None

    def clear(self) -> None:
        """Forget the in-memory index. Files on disk are not touched."""
        self.store.clear()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _find_docs(self, project: Path) -> list[str]:
        docs = find_document_files(project / self.config.docs_dir, self.config.max_directory_depth)
        if docs:
            logger.info("Found %d documentation files in %s/", len(docs), self.config.docs_dir)
        return docs

    def _chunk_files(self, source_files: Sequence[str], doc_files: Sequence[str]) -> list[Chunk]:
        code_chunks = chunk_codebase(source_files, self.config)
        logger.info("Created %d code chunks", len(code_chunks))
        doc_chunks = chunk_documents(doc_files, self.config) if doc_files else []
        if doc_files:
            logger.info("Created %d documentation chunks", len(doc_chunks))
        return code_chunks + doc_chunks

    def _embed_chunks(
        self,
        chunks: Sequence[Chunk],
        provider: EmbeddingProvider,
    ) -> list[list[float]]:
        batch_size = self.config.embedding_batch_size
        total_batches = -(-len(chunks) // batch_size)
        vectors: list[list[float]] = []
        for start in range(0, len(chunks), batch_size):
            batch = chunks[start : start + batch_size]
            logger.info("Embedding batch %d/%d", start // batch_size + 1, total_batches)
            results = provider.embed_batch([c.content for c in batch])
            if len(results) != len(batch):
                raise IndexingError(
                    f"Embedding provider returned {len(results)} vectors for {len(batch)} chunks"
                )
            vectors.extend(list(r.values) for r in results)
        return vectors

    def _fingerprint(self, files: Sequence[str], chunks: Sequence[Chunk]) -> dict:
        ids_by_file: dict[str, list[str]] = {}
        for chunk in chunks:
            ids_by_file.setdefault(chunk.file_path, []).append(chunk.id)

        entries = {}
        for path in files:
            try:
                entries[path] = fingerprint_file(path, ids_by_file.get(path, ()))
            except OSError as exc:
                logger.warning("Could not create manifest entry for %s: %s", path, exc)
        return entries

    def _build_metadata(self, project: Path) -> IndexMetadata:
        chunks = self.store.get_all_chunks()
        return IndexMetadata(
            project_path=str(project),
            total_chunks=len(chunks),
            total_tokens=sum(c.token_count for c in chunks),
            indexed_at=datetime.now(timezone.utc).isoformat(),
            version=INDEX_VERSION,
        )

    def _save(self, store_path: str | Path) -> None:
        path = index_file_path(store_path)
        self.store.save(path)
        logger.info("Index saved to %s", path)


def build_answer_prompt(question: str, sources: Sequence[SearchResult]) -> str:
    """Grounding prompt: the question plus numbered snippets with provenance."""
    context = "\n\n".join(
        f'[{i}] {s.chunk.type.value} "{s.chunk.name}" ({s.chunk.file_path}:{s.chunk.start_line}):\n'
        f"```\n{s.chunk.content}\n```"
        for i, s in enumerate(sources, start=1)
    )
    return (
        "You are a code analysis assistant. Answer the user's question based on "
        "the code snippets provided.\n"
        "\n"
        f"USER QUESTION: {sanitize_query(question)}\n"
        "\n"
        "RELEVANT CODE SNIPPETS:\n"
        f"{context}\n"
        "\n"
        "Instructions:\n"
        "- Provide a clear, concise answer based on the code snippets\n"
        "- Reference snippets by number [1], [2], etc. when relevant\n"
        "- If the snippets don't contain enough information to fully answer, say so\n"
        "- Focus on accuracy over speculation"
    )
