"""LRU embedding cache with single-flight request coalescing.

Keyed by the SHA-256 of the exact text. Concurrent misses for the same text
share one provider call: the first caller performs it, the others wait on
its future and count as hits.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from collections import OrderedDict
from concurrent.futures import Future

from coderag.rag.providers import EmbeddingProvider, EmbeddingResult

logger = logging.getLogger(__name__)


class EmbeddingCache:
    """Thread-safe LRU cache of ``EmbeddingResult`` objects.

    Args:
        max_size: Maximum number of cached embeddings; least recently used
            entries are evicted beyond it.
    """

    def __init__(self, max_size: int = 1000) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self._cache: OrderedDict[str, EmbeddingResult] = OrderedDict()
        self._pending: dict[str, Future[EmbeddingResult]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @staticmethod
    def _key(text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    def get_or_embed(self, text: str, provider: EmbeddingProvider) -> EmbeddingResult:
        """Return the embedding of *text*, calling *provider* at most once per text.

        Provider exceptions propagate to the caller and to every waiter of the
        same in-flight request; nothing is cached for a failed call.
        """
        key = self._key(text)
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._cache.move_to_end(key)
                self._hits += 1
                return cached

            future = self._pending.get(key)
            if future is not None:
                self._hits += 1
                owner = False
            else:
                self._misses += 1
                future = Future()
                self._pending[key] = future
                owner = True

        if not owner:
            return future.result()

        try:
            result = provider.embed(text)
        except BaseException as exc:
            future.set_exception(exc)
            self._forget(key, future)
            raise

        with self._lock:
            self._cache[key] = result
            self._cache.move_to_end(key)
            while len(self._cache) > self.max_size:
                evicted, _ = self._cache.popitem(last=False)
                logger.debug("Evicted embedding %s", evicted[:12])
        future.set_result(result)
        self._forget(key, future)
        return result

    def _forget(self, key: str, future: Future[EmbeddingResult]) -> None:
        with self._lock:
            # clear() may have dropped the entry, or a new request replaced it.
            if self._pending.get(key) is future:
                del self._pending[key]

    def clear(self) -> None:
        """Drop all entries and counters; in-flight calls are not cancelled."""
        with self._lock:
            self._cache.clear()
            self._pending.clear()
            self._hits = 0
            self._misses = 0

    def get_stats(self) -> dict[str, float]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._cache),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total else 0.0,
            }

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._cache)
