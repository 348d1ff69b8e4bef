"""Bounded time-to-live memo table for translations."""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str, str]


@dataclass(frozen=True)
class TranslationCacheEntry:
    """One cached translation."""

    source_text: str
    source_lang: str
    target_lang: str
    translated_text: str
    created_at: float


class TranslationCache:
    """Insertion-ordered translation cache with expiry and a hard size bound.

    Keys combine source language, source text and target language, so the same
    text spoken in two different languages never shares an entry. Once the
    cache holds more than ``capacity`` entries the oldest-inserted entry is
    evicted.
    """

    def __init__(
        self,
        capacity: int = 1000,
        ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if ttl <= 0:
            raise ValueError("ttl must be positive")

        self.capacity = capacity
        self.ttl = ttl
        self._clock = clock
        self._entries: OrderedDict[CacheKey, TranslationCacheEntry] = OrderedDict()
        self._hits = 0
        self._misses = 0

    @staticmethod
    def key(source_lang: str, text: str, target_lang: str) -> CacheKey:
        return (source_lang, text, target_lang)

    def get(self, source_lang: str, text: str, target_lang: str) -> str | None:
        """Return the cached translation, or None on a miss or expired entry.

        Expired entries are dropped on lookup.
        """
        cache_key = self.key(source_lang, text, target_lang)
        entry = self._entries.get(cache_key)
        if entry is None:
            self._misses += 1
            return None

        if self._clock() - entry.created_at >= self.ttl:
            logger.debug("Cache entry expired for: %.30s", text)
            del self._entries[cache_key]
            self._misses += 1
            return None

        self._hits += 1
        logger.debug("Cache hit for: %.30s", text)
        return entry.translated_text

    def put(self, source_lang: str, text: str, target_lang: str, translated_text: str) -> None:
        """Store a translation and evict the oldest entries beyond capacity.

        Re-putting an existing key refreshes its value and moves it to the
        newest position.
        """
        cache_key = self.key(source_lang, text, target_lang)
        self._entries.pop(cache_key, None)
        self._entries[cache_key] = TranslationCacheEntry(
            source_text=text,
            source_lang=source_lang,
            target_lang=target_lang,
            translated_text=translated_text,
            created_at=self._clock(),
        )
        self.evict_if_needed()

    def evict_if_needed(self) -> int:
        """Evict oldest-inserted entries until size is within capacity.

        Returns:
            Number of evicted entries
        """
        evicted = 0
        while len(self._entries) > self.capacity:
            old_key, _ = self._entries.popitem(last=False)
            evicted += 1
            logger.debug("Evicted cache entry: %.30s", old_key[1])
        return evicted

    def clear(self) -> None:
        self._entries.clear()
        logger.info("Translation cache cleared")

    def stats(self) -> dict:
        return {
            "size": len(self._entries),
            "max_size": self.capacity,
            "hits": self._hits,
            "misses": self._misses,
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, cache_key: CacheKey) -> bool:
        return cache_key in self._entries
