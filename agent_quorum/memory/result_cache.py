"""
TTL cache for synthesized results, keyed by task id.
"""

import time
from typing import Callable, Dict, Generic, Optional, Tuple, TypeVar

from ..utils.logging import get_logger

V = TypeVar("V")


class ResultCache(Generic[V]):
    """
    Owned key/value store with time-based eviction.

    Expired entries are dropped lazily on read and eagerly by ``sweep_expired``.
    """

    def __init__(self, ttl_seconds: float = 3600.0, clock: Callable[[], float] = time.monotonic):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, V]] = {}
        self._hits = 0
        self._misses = 0
        self.logger = get_logger(f"{__name__}.ResultCache")

    def put(self, key: str, value: V) -> None:
        self._entries[key] = (self._clock() + self.ttl_seconds, value)

    def get(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._entries[key]
            self._misses += 1
            return None
        self._hits += 1
        return value

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def sweep_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        if expired:
            self.logger.debug(f"Evicted {len(expired)} expired results")
        return len(expired)

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, float]:
        return {
            "entries": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "ttl_seconds": self.ttl_seconds,
        }
