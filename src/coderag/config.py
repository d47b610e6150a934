"""coderag configuration loader.

Priority (high → low):
  1. CLI flags           (handled at the call site)
  2. Environment variables  (CODERAG_EMBEDDING_MODEL, CODERAG_CHUNK_SIZE, ...)
  3. Per-project coderag.yaml  (in the indexed project root)
  4. Global ~/.coderag/config.yaml  (model defaults only, no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load(), never yaml.load().

RAGConfig is validated as a whole at construction: a misconfigured retrieval
setup fails here, never at query time.
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".coderag"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "coderag.yaml"

# Fields that suggest an API key are forbidden in global config.
# Does NOT match legitimate config keys like chunk_size, max_tokens, top_k.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(["embedding", "generation", "rag", "index"])

# Weight sums are compared with a tolerance; 0.3 + 0.7 is not exactly 1.0.
_WEIGHT_TOLERANCE = 1e-3


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file or RAGConfig contains an invalid value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RAGConfig:
    """Retrieval configuration (coderag.yaml: rag:).

    Attributes:
        chunk_size: Maximum estimated tokens per chunk.
        chunk_overlap: Tokens of trailing context repeated after a split.
        top_k: Candidates returned by vector search.
        rerank_top_k: Results kept after LLM reranking.
        vector_weight: Weight of the cosine similarity score in fusion.
        llm_weight: Weight of the LLM relevance score in fusion.
        chars_per_token: Characters per token for token estimation.
        embedding_batch_size: Texts per ``embed_batch`` call while indexing.
        max_directory_depth: Recursion limit for file discovery.
        docs_dir: Documentation folder (relative to the project root).
        rerank_concurrency: Parallel scoring calls during rerank (1 = sequential).
        adaptive_weights: Derive fusion weights from the query intent.

    Raises:
        ConfigError: If any field or cross-field constraint is violated.
    """

    chunk_size: int = 300
    chunk_overlap: int = 50
    top_k: int = 15
    rerank_top_k: int = 5
    vector_weight: float = 0.3
    llm_weight: float = 0.7
    chars_per_token: int = 4
    embedding_batch_size: int = 100
    max_directory_depth: int = 20
    docs_dir: str = "ai-docs"
    rerank_concurrency: int = 5
    adaptive_weights: bool = False

    def __post_init__(self) -> None:
        for name in (
            "chunk_size",
            "top_k",
            "rerank_top_k",
            "chars_per_token",
            "embedding_batch_size",
            "rerank_concurrency",
        ):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be >= 1, got {getattr(self, name)}")
        if self.chunk_overlap < 0:
            raise ConfigError(f"chunk_overlap must be >= 0, got {self.chunk_overlap}")
        if self.max_directory_depth < 0:
            raise ConfigError(
                f"max_directory_depth must be >= 0, got {self.max_directory_depth}"
            )
        for name in ("vector_weight", "llm_weight"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigError(f"{name} must be in [0.0, 1.0], got {value}")
        if abs(self.vector_weight + self.llm_weight - 1.0) >= _WEIGHT_TOLERANCE:
            raise ConfigError(
                "vector_weight + llm_weight must equal 1.0, got "
                f"{self.vector_weight} + {self.llm_weight}"
            )
        if self.chunk_overlap >= self.chunk_size:
            raise ConfigError(
                f"chunk_overlap ({self.chunk_overlap}) must be less than "
                f"chunk_size ({self.chunk_size})"
            )
        if self.rerank_top_k > self.top_k:
            raise ConfigError(
                f"rerank_top_k ({self.rerank_top_k}) must be <= top_k ({self.top_k})"
            )


@dataclass
class EmbeddingCfg:
    """Embedding model configuration (coderag.yaml: embedding:)."""

    model: str = "openai/text-embedding-3-small"
    cache_size: int = 1000


@dataclass
class GenerationCfg:
    """LLM configuration for answers and reranking (coderag.yaml: generation:)."""

    model: str = "openai/gpt-4o"
    rerank_model: str = "openai/gpt-4o-mini"


@dataclass
class IndexCfg:
    """Index persistence configuration (coderag.yaml: index:)."""

    store_path: str = ".coderag"


@dataclass
class CoderagConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    generation: GenerationCfg = field(default_factory=GenerationCfg)
    rag: RAGConfig = field(default_factory=RAGConfig)
    index: IndexCfg = field(default_factory=IndexCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}', ignored.",
                UserWarning,
                stacklevel=4,
            )


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _parse_rag(raw: dict[str, Any]) -> RAGConfig:
    """Build a RAGConfig from a raw mapping, coercing each known field to its default's type."""
    defaults = RAGConfig()
    values: dict[str, Any] = {}
    for f in fields(RAGConfig):
        if f.name not in raw:
            continue
        default = getattr(defaults, f.name)
        try:
            if isinstance(default, bool):
                values[f.name] = _parse_bool(raw[f.name])
            else:
                values[f.name] = type(default)(raw[f.name])
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"rag.{f.name}: invalid value {raw[f.name]!r}") from exc
    unknown = set(raw) - {f.name for f in fields(RAGConfig)}
    for key in sorted(unknown):
        warnings.warn(f"Unknown rag option '{key}', ignored.", UserWarning, stacklevel=4)
    return RAGConfig(**values)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _cfg_from_dict(data: dict[str, Any]) -> CoderagConfig:
    """Build a *CoderagConfig* from a merged raw YAML dict."""
    cfg = CoderagConfig()

    if "embedding" in data:
        e = data["embedding"] or {}
        cfg.embedding = EmbeddingCfg(
            model=str(e.get("model", cfg.embedding.model)),
            cache_size=int(e.get("cache_size", cfg.embedding.cache_size)),
        )

    if "generation" in data:
        g = data["generation"] or {}
        cfg.generation = GenerationCfg(
            model=str(g.get("model", cfg.generation.model)),
            rerank_model=str(g.get("rerank_model", cfg.generation.rerank_model)),
        )

    if "rag" in data:
        cfg.rag = _parse_rag(data["rag"] or {})

    if "index" in data:
        i = data["index"] or {}
        cfg.index = IndexCfg(store_path=str(i.get("store_path", cfg.index.store_path)))

    return cfg


# Environment variable → rag field.
_RAG_ENV: dict[str, str] = {
    "CODERAG_CHUNK_SIZE": "chunk_size",
    "CODERAG_CHUNK_OVERLAP": "chunk_overlap",
    "CODERAG_TOP_K": "top_k",
    "CODERAG_RERANK_TOP_K": "rerank_top_k",
    "CODERAG_VECTOR_WEIGHT": "vector_weight",
    "CODERAG_LLM_WEIGHT": "llm_weight",
}


def _apply_env_overrides(cfg: CoderagConfig) -> CoderagConfig:
    """Apply CODERAG_* environment variable overrides."""
    if model := os.environ.get("CODERAG_GENERATION_MODEL"):
        cfg.generation.model = model
    if model := os.environ.get("CODERAG_RERANK_MODEL"):
        cfg.generation.rerank_model = model
    if model := os.environ.get("CODERAG_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if store := os.environ.get("CODERAG_STORE_PATH"):
        cfg.index.store_path = store

    rag_overrides = {
        name: os.environ[var] for var, name in _RAG_ENV.items() if os.environ.get(var)
    }
    if rag_overrides:
        current = {f.name: getattr(cfg.rag, f.name) for f in fields(RAGConfig)}
        cfg.rag = _parse_rag({**current, **rag_overrides})
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> CoderagConfig:
    """Load and return a merged *CoderagConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *coderag.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged *CoderagConfig* with env var overrides applied.

    Raises:
        ConfigError: If global config contains API-key-like fields, or if the
            merged ``rag`` section violates a RAGConfig constraint.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-project config
    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)

    # Layer 3: env var overrides
    return _apply_env_overrides(cfg)


def ensure_global_config(
    global_config_path: Path | None = None,
) -> Path:
    """Create ``~/.coderag/config.yaml`` with defaults if it does not exist.

    Creates parent directory with mode 0o700 and the config file with
    mode 0o600 (owner-readable only).

    Args:
        global_config_path: Override path (for testing).

    Returns:
        Path to the global config file.
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# coderag global configuration: model defaults only.\n"
            "# NEVER store API keys here; use environment variables:\n"
            "#   export OPENAI_API_KEY=sk-...\n"
            "\n"
            "embedding:\n"
            "  model: openai/text-embedding-3-small\n"
            "\n"
            "generation:\n"
            "  model: openai/gpt-4o\n"
            "  rerank_model: openai/gpt-4o-mini\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target
