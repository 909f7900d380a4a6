"""Redis-backed shared cache tier.

Every Redis failure is logged and swallowed: after an error the tier marks
itself unavailable and :class:`TieredCache` keeps working on the local tier.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..config import Settings
from .cache import BaseCache, LocalCache, TieredCache

logger = logging.getLogger(__name__)


class RedisSharedCache:
    """Shared tier storing JSON-serialized values with ``SETEX``."""

    def __init__(self, client: Redis, *, key_prefix: str = "drug-safety:") -> None:
        self._client = client
        self._key_prefix = key_prefix
        self._available = True

    @classmethod
    def from_url(cls, url: str) -> "RedisSharedCache":
        return cls(Redis.from_url(url, decode_responses=True))

    @property
    def available(self) -> bool:
        return self._available

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def _mark_unavailable(self, operation: str, exc: Exception) -> None:
        if self._available:
            logger.warning("shared_cache.degraded operation=%s error=%s", operation, exc)
        self._available = False

    async def ping(self) -> bool:
        try:
            await self._client.ping()
        except (RedisError, OSError) as exc:
            self._mark_unavailable("ping", exc)
            return False
        self._available = True
        return True

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._client.get(self._key(key))
        except (RedisError, OSError) as exc:
            self._mark_unavailable("get", exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("shared_cache.decode_failed key=%s", key)
            return None

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        try:
            payload = json.dumps(value, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            logger.warning("shared_cache.encode_failed key=%s", key)
            return
        try:
            await self._client.setex(self._key(key), max(int(ttl_seconds), 1), payload)
        except (RedisError, OSError) as exc:
            self._mark_unavailable("set", exc)

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._client.delete(self._key(key)))
        except (RedisError, OSError) as exc:
            self._mark_unavailable("delete", exc)
            return False

    async def clear(self) -> None:
        try:
            async for key in self._client.scan_iter(match=f"{self._key_prefix}*"):
                await self._client.delete(key)
        except (RedisError, OSError) as exc:
            self._mark_unavailable("clear", exc)

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except (RedisError, OSError) as exc:
            logger.warning("shared_cache.close_failed error=%s", exc)


async def build_cache(settings: Settings) -> BaseCache:
    """Pick local-only or tiered caching based on configuration and reachability."""
    if not settings.redis_url:
        logger.info("cache.init mode=local reason=no_redis_url")
        return LocalCache()

    shared = RedisSharedCache.from_url(settings.redis_url)
    if not await shared.ping():
        logger.warning("cache.init mode=local reason=redis_unreachable")
        await shared.close()
        return LocalCache()

    logger.info("cache.init mode=tiered")
    return TieredCache(shared)
