"""In-memory TTL cache used as a read-through cache for API queries.

Keys are derived from the query shape with :func:`cache_key`. Writes
invalidate the whole cache through :func:`invalidate`, which never raises.
"""

import logging
import threading
import time
from functools import lru_cache
from typing import Any, Callable, Optional

from config import get_settings


logger = logging.getLogger(__name__)


class TTLCache:
    """Thread-safe key/value store with per-entry expiry.

    When the cache is full the entry that expires soonest is evicted.
    """

    def __init__(self, maxsize: int = 512, ttl_seconds: float = 300.0) -> None:
        self._maxsize = maxsize
        self._ttl = ttl_seconds
        # key -> (value, expires_at)
        self._store: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        # bumped on every delete or flush
        self._generation = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._misses += 1
                return None
            value, expires_at = entry
            if time.monotonic() > expires_at:
                del self._store[key]
                self._misses += 1
                return None
            self._hits += 1
            return value

    def generation(self) -> int:
        with self._lock:
            return self._generation

    def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        generation: Optional[int] = None,
    ) -> bool:
        """Store ``value``. Skipped when ``generation`` is given and stale."""
        expires_at = time.monotonic() + (self._ttl if ttl is None else ttl)
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            if key not in self._store and len(self._store) >= self._maxsize:
                oldest_key = min(self._store, key=lambda k: self._store[k][1])
                del self._store[oldest_key]
            self._store[key] = (value, expires_at)
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)
            self._generation += 1

    def flush_all(self) -> None:
        with self._lock:
            self._store.clear()
            self._generation += 1

    def stats(self) -> dict[str, int]:
        with self._lock:
            now = time.monotonic()
            expired = [k for k, (_, exp) in self._store.items() if now > exp]
            for k in expired:
                del self._store[k]
            return {
                "hits": self._hits,
                "misses": self._misses,
                "size": len(self._store),
            }


def cache_key(entity: str, **filters: Any) -> str:
    """Build a deterministic key from an entity name and filter values.

    ``None`` filters are rendered as ``all`` so that omitted and explicit
    empty filters share one entry.
    """
    parts = [entity]
    for name in sorted(filters):
        value = filters[name]
        if value is None:
            value = "all"
        elif hasattr(value, "value"):
            value = value.value
        parts.append(f"{name}={value}")
    return ":".join(parts)


def cached(cache: TTLCache, key: str, loader: Callable[[], Any]) -> Any:
    value = cache.get(key)
    if value is None:
        # an invalidation during the load must not be undone by this write
        generation = cache.generation()
        value = loader()
        cache.set(key, value, generation=generation)
    return value


def invalidate(cache: TTLCache, keys: Optional[list[str]] = None) -> None:
    """Flush the cache, or only ``keys`` when given. Failures are logged."""
    try:
        if keys is None:
            cache.flush_all()
        else:
            for key in keys:
                cache.delete(key)
    except Exception:
        logger.exception("cache_invalidate_failed")


@lru_cache(maxsize=1)
def get_cache() -> TTLCache:
    settings = get_settings()
    return TTLCache(maxsize=settings.cache_maxsize, ttl_seconds=settings.cache_ttl_secs)
