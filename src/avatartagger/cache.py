"""Bounded TTL cache for classification results, keyed by image URL."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from avatartagger.service import TagResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    result: TagResult
    inserted_at: float


class ResultCache:
    """TTL plus capacity bounded result cache.

    Expiry is checked when an entry is read. When an insert pushes the cache
    past capacity, the oldest fifth of the entries is dropped in one sweep.
    """

    def __init__(
        self,
        ttl_seconds: float,
        capacity: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._capacity = capacity
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, CacheEntry] = {}

    def get(self, key: str) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.inserted_at >= self._ttl:
                del self._entries[key]
                return None
            return entry

    def put(self, key: str, result: TagResult) -> CacheEntry:
        entry = CacheEntry(result=result, inserted_at=self._clock())
        with self._lock:
            # Re-inserting moves the key to the newest position.
            self._entries.pop(key, None)
            self._entries[key] = entry
            if len(self._entries) > self._capacity:
                self._evict_oldest()
        return entry

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def _evict_oldest(self) -> None:
        count = max(1, len(self._entries) // 5)
        oldest = sorted(self._entries.items(), key=lambda item: item[1].inserted_at)[:count]
        for key, _ in oldest:
            del self._entries[key]
        logger.debug("Evicted %d cached results (capacity %d)", count, self._capacity)
