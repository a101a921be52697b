"""
In-process caches for the search pipeline.

Provides a thread-safe LRU cache with TTL and a query-embedding cache on
top of it, so repeated queries skip the embedding provider.
"""

import hashlib
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

import numpy as np


class LRUCache:
    """
    Thread-safe LRU cache with TTL support.
    """

    def __init__(self, max_size: int = 1000, ttl: float = 3600,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize LRU cache.

        Args:
            max_size: Maximum number of entries
            ttl: Time to live in seconds
            clock: Time source (seconds)
        """
        if max_size <= 0:
            raise ValueError(f"max_size must be > 0, got {max_size}")
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self.cache: "OrderedDict[str, Tuple[Any, float]]" = OrderedDict()
        self.lock = threading.RLock()

        # Statistics
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        with self.lock:
            if key not in self.cache:
                self.misses += 1
                return None

            value, timestamp = self.cache[key]

            if self._clock() - timestamp > self.ttl:
                del self.cache[key]
                self.misses += 1
                return None

            self.cache.move_to_end(key)
            self.hits += 1
            return value

    def set(self, key: str, value: Any) -> None:
        """Set value in cache."""
        with self.lock:
            if key in self.cache:
                del self.cache[key]

            while len(self.cache) >= self.max_size:
                self.cache.popitem(last=False)
                self.evictions += 1

            self.cache[key] = (value, self._clock())

    def invalidate(self, key: str) -> bool:
        """Invalidate a cache entry."""
        with self.lock:
            if key in self.cache:
                del self.cache[key]
                return True
            return False

    def clear(self) -> None:
        """Clear all cache entries."""
        with self.lock:
            self.cache.clear()
            self.hits = 0
            self.misses = 0
            self.evictions = 0

    def __len__(self) -> int:
        with self.lock:
            return len(self.cache)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self.lock:
            total = self.hits + self.misses
            hit_rate = self.hits / total if total > 0 else 0

            return {
                'size': len(self.cache),
                'max_size': self.max_size,
                'hits': self.hits,
                'misses': self.misses,
                'evictions': self.evictions,
                'hit_rate': round(hit_rate, 3),
                'ttl': self.ttl,
            }


class EmbeddingCache:
    """
    Cache of query embeddings keyed by a digest of the query text.

    Cached arrays are stored read-only so callers cannot corrupt them.
    """

    def __init__(self, max_size: int = 1000, ttl: float = 3600,
                 clock: Callable[[], float] = time.monotonic):
        self.cache = LRUCache(max_size, ttl, clock=clock)

    @staticmethod
    def key_for(text: str, namespace: str = "") -> str:
        digest = hashlib.sha256(text.strip().encode("utf-8")).hexdigest()
        return f"{namespace}:{digest}" if namespace else digest

    def get(self, text: str, namespace: str = "") -> Optional[np.ndarray]:
        return self.cache.get(self.key_for(text, namespace))

    def set(self, text: str, embedding: np.ndarray, namespace: str = "") -> np.ndarray:
        vector = np.array(embedding, dtype=np.float32)
        vector.setflags(write=False)
        self.cache.set(self.key_for(text, namespace), vector)
        return vector

    def get_or_compute(self, text: str, compute: Callable[[str], Any],
                       namespace: str = "") -> np.ndarray:
        """Return the cached embedding or compute, cache and return it."""
        cached = self.get(text, namespace)
        if cached is not None:
            return cached
        return self.set(text, compute(text), namespace)

    def clear(self) -> None:
        self.cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        return self.cache.get_stats()
