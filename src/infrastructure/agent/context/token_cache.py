"""
Token count caching.

Memoizes an injected ``(text) -> tokens`` counter with a bounded LRU map
and a per-entry time-to-live. State lives in an explicit ``TokenCache``
object so it can be shared across concurrent truncation passes and tested
on its own.

Example:
    count = with_cache(tokenizer.count, max_size=1000, ttl_seconds=300)
    tokens = count("hello world")
    count.cache.stats().hit_rate
"""

import hashlib
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Optional

logger = logging.getLogger(__name__)

TokenCounter = Callable[[str], int]


@dataclass
class TokenCacheEntry:
    """A cached token count."""

    tokens: int
    inserted_at: float

    def is_expired(self, now: float, ttl_seconds: float) -> bool:
        return now - self.inserted_at >= ttl_seconds


@dataclass
class TokenCacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class TokenCache:
    """
    LRU cache of token counts with TTL support.

    Thread-safe: lookups and inserts hold a single lock for O(1) work only.
    The counting function runs outside the lock.
    """

    def __init__(
        self,
        counter: TokenCounter,
        max_size: int = 1000,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.

        Args:
            counter: Deterministic token counting function
            max_size: Maximum number of entries, 0 disables caching
            ttl_seconds: Entry lifetime
            clock: Time source, injectable for tests
        """
        self._counter = counter
        self.max_size = max(0, int(max_size))
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, TokenCacheEntry] = OrderedDict()
        self._stats = TokenCacheStats()
        self._lock = Lock()

    @staticmethod
    def _key(text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    def count(self, text: str) -> int:
        """Return the token count for text, computing it on a miss."""
        if self.max_size == 0:
            return self._counter(text)

        key = self._key(text)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not entry.is_expired(now, self.ttl_seconds):
                self._entries.move_to_end(key)
                self._stats.hits += 1
                return entry.tokens
            if entry is not None:
                del self._entries[key]
            self._stats.misses += 1

        tokens = self._counter(text)
        self._store(key, tokens, self._clock())
        return tokens

    def _store(self, key: str, tokens: int, now: float) -> None:
        with self._lock:
            self._entries[key] = TokenCacheEntry(tokens=tokens, inserted_at=now)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                evicted_key, _ = self._entries.popitem(last=False)
                self._stats.evictions += 1
                logger.debug(f"[TokenCache] Evicted LRU entry {evicted_key[:12]}")
            self._stats.size = len(self._entries)

    def peek(self, text: str) -> Optional[int]:
        """Return a live cached count without touching recency or stats."""
        key = self._key(text)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(self._clock(), self.ttl_seconds):
                return None
            return entry.tokens

    def invalidate(self, text: str) -> bool:
        """Drop the entry for text. Returns True if one existed."""
        with self._lock:
            removed = self._entries.pop(self._key(text), None) is not None
            self._stats.size = len(self._entries)
            return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._stats = TokenCacheStats()

    def stats(self) -> TokenCacheStats:
        """Snapshot of cache statistics."""
        with self._lock:
            return TokenCacheStats(
                hits=self._stats.hits,
                misses=self._stats.misses,
                evictions=self._stats.evictions,
                size=len(self._entries),
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, text: object) -> bool:
        if not isinstance(text, str):
            return False
        return self.peek(text) is not None

    def __call__(self, text: str) -> int:
        return self.count(text)


class CachedTokenCounter:
    """Callable counter backed by a ``TokenCache``."""

    def __init__(self, cache: TokenCache):
        self.cache = cache

    def __call__(self, text: str) -> int:
        return self.cache.count(text)


def with_cache(
    counter: TokenCounter,
    max_size: int = 1000,
    ttl_seconds: float = 300.0,
    clock: Callable[[], float] = time.monotonic,
) -> CachedTokenCounter:
    """Wrap a token counter with an LRU/TTL cache."""
    return CachedTokenCounter(TokenCache(counter, max_size, ttl_seconds, clock))
