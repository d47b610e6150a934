"""Base chunker interface and greedy unit splitting."""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass

from coderag.config import RAGConfig
from coderag.db.models import Chunk


def estimate_tokens(text: str, chars_per_token: int = 4) -> int:
    """Approximate token count: ``ceil(len(text) / chars_per_token)``.

    An estimate for budgeting chunk sizes only, never authoritative usage.
    """
    return math.ceil(len(text) / chars_per_token)


@dataclass(frozen=True)
class Window:
    """A run of consecutive units produced by ``BaseChunker._split_units``."""

    start: int  # index of the first unit in the source sequence
    units: tuple[str, ...]


class BaseChunker(ABC):
    """Abstract base for the code and document chunkers.

    Subclasses implement ``chunk()`` and use ``_split_units()`` for entities
    that exceed ``config.chunk_size``.
    """

    # Joins units back into chunk text: lines for code, paragraphs for docs.
    separator: str = "\n"

    def __init__(self, config: RAGConfig | None = None) -> None:
        self.config = config or RAGConfig()

    @abstractmethod
    def chunk(self, item: object) -> list[Chunk]:
        """Split one parsed entity or document into chunks."""

    def count_tokens(self, text: str) -> int:
        return estimate_tokens(text, self.config.chars_per_token)

    def _split_units(self, units: Sequence[str], reserved_tokens: int = 0) -> list[Window]:
        """Greedily pack *units* into windows of at most ``chunk_size`` tokens.

        When the next unit would push the window past the budget (including
        *reserved_tokens*) and the window is non-empty, the window is flushed
        and the next one starts with the trailing
        ``max(1, ceil(chunk_overlap / avg_tokens_per_unit))`` units of the
        flushed window. A unit larger than the budget on its own ends up in a
        window by itself (plus any overlap seed).
        """
        size = self.config.chunk_size
        overlap = self.config.chunk_overlap

        windows: list[Window] = []
        buf: list[str] = []
        buf_start = 0
        cur_tokens = 0

        for i, unit in enumerate(units):
            unit_tokens = self.count_tokens(unit)
            if cur_tokens + unit_tokens + reserved_tokens > size and buf:
                windows.append(Window(start=buf_start, units=tuple(buf)))

                avg = cur_tokens / len(buf)
                keep = len(buf) if avg == 0 else max(1, math.ceil(overlap / avg))
                buf = buf[-keep:]
                buf_start = i - len(buf)
                cur_tokens = self.count_tokens(self.separator.join(buf))

            buf.append(unit)
            cur_tokens += unit_tokens

        if buf:
            windows.append(Window(start=buf_start, units=tuple(buf)))
        return windows
