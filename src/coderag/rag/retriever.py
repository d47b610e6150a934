"""Second-stage retrieval: LLM rerank with score fusion, parent context.

Each vector-search candidate is scored 0-10 by a completion model; the
normalized score is fused with the cosine score:

  final = vector_weight * vector_score + llm_weight * llm_score

Unparseable or failed scoring calls fall back to a neutral 0.5.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

from coderag.config import RAGConfig
from coderag.db.models import Chunk, SearchResult
from coderag.rag.providers import CompletionOptions, CompletionProvider

logger = logging.getLogger(__name__)

DEFAULT_LLM_SCORE = 0.5

_MAX_QUERY_CHARS = 2000
_MAX_SNIPPET_CHARS = 1000
_SCORING_OPTIONS = CompletionOptions(temperature=0.0, max_tokens=10)

_FILTERED = "[filtered]"

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_INVISIBLE_CHARS_RE = re.compile(r"[\u200B-\u200F\u2028-\u202F\uFEFF]")

# (pattern, replacement) pairs applied in order.
_INJECTION_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), replacement)
    for pattern, replacement in (
        (r"ignore\s+(all\s+)?(previous|above|prior)\s+(instructions?|prompts?|context)", _FILTERED),
        (r"disregard\s+(all\s+)?(previous|above|prior)\s+(instructions?|prompts?)", _FILTERED),
        (r"forget\s+(your\s+)?(role|instructions|purpose|training)", _FILTERED),
        (r"you\s+are\s+now\s+", f"{_FILTERED} "),
        (r"new\s+instructions?\s*:", _FILTERED),
        (r"</?system>", _FILTERED),
        (r"</?human>", _FILTERED),
        (r"</?assistant>", _FILTERED),
        (r"</?user>", _FILTERED),
        (r"\bHuman:\s*", f"{_FILTERED} "),
        (r"\bAssistant:\s*", f"{_FILTERED} "),
        (r"\bSystem:\s*", f"{_FILTERED} "),
        (r"\bUser:\s*", f"{_FILTERED} "),
        (r"\bAI:\s*", f"{_FILTERED} "),
    )
)

_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")

# Query intent → (vector_weight, llm_weight) when adaptive weights are on.
_SEARCH_INTENT_RE = re.compile(
    r"\b(find|where|locate|show me|get|search|look for)\b", re.IGNORECASE
)
_EXPLAIN_INTENT_RE = re.compile(
    r"\b(explain|how|why|what does|describe)\b", re.IGNORECASE
)
_SEARCH_WEIGHTS = (0.6, 0.4)
_EXPLAIN_WEIGHTS = (0.2, 0.8)


def sanitize_query(query: str) -> str:
    """Neutralize prompt-injection attempts in a user query.

    NFKC-normalizes, strips control and zero-width characters, replaces
    known injection phrases and role markers with ``[filtered]``, truncates
    to 2000 characters and escapes triple backticks.
    """
    text = unicodedata.normalize("NFKC", query)
    text = _CONTROL_CHARS_RE.sub("", text)
    text = _INVISIBLE_CHARS_RE.sub("", text)
    for pattern, replacement in _INJECTION_PATTERNS:
        text = pattern.sub(replacement, text)
    text = text[:_MAX_QUERY_CHARS]
    text = text.replace("```", r"\`\`\`")
    return text.strip()


def build_scoring_prompt(chunk: Chunk, sanitized_query: str) -> str:
    snippet = chunk.content[:_MAX_SNIPPET_CHARS]
    return (
        "You are a code relevance scorer. Rate how relevant the following code "
        "snippet is to the user's question.\n"
        "\n"
        f"USER QUESTION: {sanitized_query}\n"
        "\n"
        f'CODE SNIPPET ({chunk.type.value} "{chunk.name}" from {chunk.file_path}):\n'
        "```\n"
        f"{snippet}\n"
        "```\n"
        "\n"
        "Rate the relevance on a scale of 0 to 10, where:\n"
        "- 0: Completely irrelevant\n"
        "- 5: Somewhat related\n"
        "- 10: Directly answers the question\n"
        "\n"
        "Respond with ONLY a number from 0 to 10, nothing else."
    )


def parse_score(text: str) -> float | None:
    """Return the first number in *text* divided by 10, or None if absent or > 10."""
    match = _NUMBER_RE.search(text)
    if match is None:
        return None
    value = float(match.group())
    if value > 10:
        return None
    return value / 10


def score_chunk(
    chunk: Chunk,
    sanitized_query: str,
    completion_provider: CompletionProvider,
) -> float:
    """Ask the completion model for a 0-1 relevance score; 0.5 on any failure."""
    prompt = build_scoring_prompt(chunk, sanitized_query)
    try:
        result = completion_provider.complete(prompt, _SCORING_OPTIONS)
    except Exception as exc:
        logger.warning("Scoring failed for %s: %s", chunk.name, exc)
        return DEFAULT_LLM_SCORE

    score = parse_score(result.text)
    if score is None:
        logger.warning("Invalid score format: %r", result.text.strip()[:50])
        return DEFAULT_LLM_SCORE
    return score


def fusion_weights(query: str, config: RAGConfig) -> tuple[float, float]:
    """Return ``(vector_weight, llm_weight)`` for *query*."""
    if config.adaptive_weights:
        if _SEARCH_INTENT_RE.search(query):
            return _SEARCH_WEIGHTS
        if _EXPLAIN_INTENT_RE.search(query):
            return _EXPLAIN_WEIGHTS
    return config.vector_weight, config.llm_weight


def rerank_with_llm(
    results: Sequence[SearchResult],
    query: str,
    completion_provider: CompletionProvider,
    config: RAGConfig | None = None,
) -> list[SearchResult]:
    """Rescore *results* with the completion model and return the best
    ``rerank_top_k``, ordered by fused score (stable for ties).
    """
    if not results:
        return []
    cfg = config or RAGConfig()
    sanitized = sanitize_query(query)
    vector_weight, llm_weight = fusion_weights(query, cfg)

    def _score(result: SearchResult) -> float:
        return score_chunk(result.chunk, sanitized, completion_provider)

    if cfg.rerank_concurrency > 1 and len(results) > 1:
        workers = min(cfg.rerank_concurrency, len(results))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rerank") as pool:
            llm_scores = list(pool.map(_score, results))
    else:
        llm_scores = [_score(r) for r in results]

    rescored = [
        replace(
            r,
            llm_score=llm,
            final_score=vector_weight * r.vector_score + llm_weight * llm,
        )
        for r, llm in zip(results, llm_scores)
    ]
    rescored.sort(key=lambda r: r.final_score, reverse=True)
    logger.debug("Reranked %d candidates", len(rescored))
    return rescored[: cfg.rerank_top_k]


def resolve_parent_chunks(
    results: Sequence[SearchResult],
    all_chunks: Sequence[Chunk],
) -> list[SearchResult]:
    """Prefix split chunks with a pointer to their parent entity.

    ``parent_id`` is matched against chunk *names*. A chunk with that name in
    the same file wins; otherwise the first one anywhere. Inputs are never
    mutated: enriched results are copies.
    """
    by_name: dict[str, Chunk] = {}
    by_file_and_name: dict[tuple[str, str], Chunk] = {}
    for chunk in all_chunks:
        by_name.setdefault(chunk.name, chunk)
        by_file_and_name.setdefault((chunk.file_path, chunk.name), chunk)

    resolved: list[SearchResult] = []
    for result in results:
        chunk = result.chunk
        parent = None
        if chunk.parent_id is not None:
            parent = by_file_and_name.get((chunk.file_path, chunk.parent_id)) or by_name.get(
                chunk.parent_id
            )
        if parent is None:
            resolved.append(result)
            continue
        header = (
            f"# Parent: {parent.name} ({parent.type.value})\n"
            f"# From: {parent.file_path}:{parent.start_line}\n"
        )
        resolved.append(replace(result, chunk=replace(chunk, content=header + chunk.content)))
    return resolved
