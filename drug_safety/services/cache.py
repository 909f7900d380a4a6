from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, Iterable, Protocol, Tuple

logger = logging.getLogger(__name__)


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if not total:
            return 0.0
        return round(self.hits / total * 100, 2)


class TTLCache:
    """Thread-safe in-process cache with lazy expiry on read."""

    def __init__(self) -> None:
        self._store: Dict[str, Tuple[float, Any]] = {}
        self._lock = Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Any | None:
        now = time.time()
        with self._lock:
            item = self._store.get(key)
            if not item:
                self._misses += 1
                return None
            expires_at, value = item
            if expires_at < now:
                self._store.pop(key, None)
                self._misses += 1
                return None
            self._hits += 1
            return value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        expires_at = time.time() + ttl_seconds
        with self._lock:
            self._store[key] = (expires_at, value)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._store.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def cleanup_expired(self) -> int:
        """Remove expired entries and return count of removed items."""
        now = time.time()
        removed = 0
        with self._lock:
            expired_keys = [
                key for key, (expires_at, _) in self._store.items()
                if expires_at < now
            ]
            for key in expired_keys:
                del self._store[key]
                removed += 1
        return removed

    def size(self) -> int:
        """Return current cache size."""
        with self._lock:
            return len(self._store)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(hits=self._hits, misses=self._misses, size=len(self._store))


class CacheBackend(Protocol):
    """Async cache contract shared by every tier. ``None`` means miss."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def clear(self) -> None: ...


class SharedCacheBackend(CacheBackend, Protocol):
    @property
    def available(self) -> bool: ...

    async def close(self) -> None: ...


class BaseCache:
    """Adds ``get_or_compute`` and stats on top of a get/set backend."""

    async def get(self, key: str) -> Any | None:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> bool:
        raise NotImplementedError

    async def clear(self) -> None:
        raise NotImplementedError

    async def get_or_compute(
        self,
        key: str,
        ttl_seconds: float,
        factory: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Return cached value on hit, otherwise await ``factory`` once and store it.

        ``None`` results are returned but never cached. Concurrent misses for the
        same key may both call ``factory``; the last ``set`` wins.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await factory()
        if value is not None:
            await self.set(key, value, ttl_seconds)
        return value

    def cleanup_expired(self) -> int:
        return 0

    def stats(self) -> Dict[str, Any]:
        return {}


class LocalCache(BaseCache):
    """Async facade over :class:`TTLCache`."""

    def __init__(self, cache: TTLCache | None = None) -> None:
        self._cache = cache or TTLCache()

    async def get(self, key: str) -> Any | None:
        return self._cache.get(key)

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._cache.set(key, value, ttl_seconds)

    async def delete(self, key: str) -> bool:
        return self._cache.delete(key)

    async def clear(self) -> None:
        self._cache.clear()

    def cleanup_expired(self) -> int:
        return self._cache.cleanup_expired()

    def stats(self) -> Dict[str, Any]:
        local = self._cache.stats()
        return {
            "local": {"hits": local.hits, "misses": local.misses, "size": local.size},
            "hit_rate": local.hit_rate,
            "shared": None,
        }


class TieredCache(LocalCache):
    """Local tier plus a shared tier that other processes can see.

    Reads consult the shared tier first and fall back to the local one; writes
    go to both. Shared tier failures are handled by the backend itself and
    never reach callers.
    """

    def __init__(self, shared: SharedCacheBackend, local: TTLCache | None = None) -> None:
        super().__init__(local)
        self._shared = shared

    @property
    def shared(self) -> SharedCacheBackend:
        return self._shared

    async def get(self, key: str) -> Any | None:
        if self._shared.available:
            value = await self._shared.get(key)
            if value is not None:
                return value
        return self._cache.get(key)

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._cache.set(key, value, ttl_seconds)
        if self._shared.available:
            await self._shared.set(key, value, ttl_seconds)

    async def delete(self, key: str) -> bool:
        deleted = self._cache.delete(key)
        if self._shared.available:
            await self._shared.delete(key)
        return deleted

    async def clear(self) -> None:
        self._cache.clear()
        if self._shared.available:
            await self._shared.clear()

    def stats(self) -> Dict[str, Any]:
        stats = super().stats()
        stats["shared"] = {"available": self._shared.available}
        return stats


class CacheKeys:
    """Namespaced key builders for every cached entity kind."""

    @staticmethod
    def drug_search(term: str) -> str:
        return f"drug:search:{term.strip().lower()}"

    @staticmethod
    def drug_detail(drug_id: str) -> str:
        return f"drug:detail:{drug_id}"

    @staticmethod
    def drug_synonyms(drug_id: str) -> str:
        return f"drug:synonyms:{drug_id}"

    @staticmethod
    def drug_classes(drug_id: str) -> str:
        return f"drug:classes:{drug_id}"

    @staticmethod
    def drug_interactions(drug_ids: Iterable[str]) -> str:
        return f"drug:interactions:{','.join(sorted(drug_ids))}"

    @staticmethod
    def patient_allergies(patient_id: str) -> str:
        return f"allergy:patient:{patient_id}"
