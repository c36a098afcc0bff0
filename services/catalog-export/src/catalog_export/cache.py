"""
Process-wide TTL caches.

Entries are replaced whole: a reader either sees the previous value or the new
one, never a partially rebuilt structure. Values stored here must not be
mutated after insertion.
"""

import logging
import threading
import time
from typing import Callable, Generic, Optional, TypeVar

from catalog_export.models import CategoryMap

logger = logging.getLogger(__name__)

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Small in-memory cache with per-entry expiry."""

    def __init__(
        self,
        name: str,
        default_ttl: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, tuple[V, float]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        value, expires_at = entry
        if self._clock() >= expires_at:
            with self._lock:
                if self._entries.get(key) is entry:
                    del self._entries[key]
            self.misses += 1
            logger.debug(f"{self.name} cache entry expired", extra={"metrics": {"key": key}})
            return None

        self.hits += 1
        return value

    def set(self, key: str, value: V, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + (self.default_ttl if ttl is None else ttl)
        with self._lock:
            self._entries[key] = (value, expires_at)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)


class CategoryMapCache(TTLCache[CategoryMap]):
    """Category maps keyed by the Commerce instance fingerprint."""

    def __init__(self, default_ttl: float = 1800, clock: Callable[[], float] = time.monotonic):
        super().__init__("category-map", default_ttl=default_ttl, clock=clock)

    def replace(self, fingerprint: str, category_map: CategoryMap, ttl: Optional[float] = None) -> CategoryMap:
        """Store a new map by reference. The previous map object is left untouched."""
        stored = dict(category_map)
        self.set(fingerprint, stored, ttl=ttl)
        logger.debug(
            "Category map cached",
            extra={"metrics": {"fingerprint": fingerprint, "size": len(stored)}},
        )
        return stored


# Shared across warm invocations of the same container.
token_cache: TTLCache[str] = TTLCache("admin-token", default_ttl=4 * 3600)
category_cache = CategoryMapCache()
