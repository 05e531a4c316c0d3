"""Read-through cache for snapshots and course structures.

Reads go cache → miss → source of truth → populate → return.  Two
things keep entries honest:

  1. TTL: every entry expires on its own, so a missed invalidation
     heals within minutes.
  2. Explicit invalidation: the progress routes delete a learner's
     cached snapshot as soon as a new ledger entry is accepted for
     that learner+course.

Snapshots are derived data and can always be rebuilt from the ledger,
so losing the cache (Redis restart) costs latency, never correctness.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from progress_engine.db.redis import redis_pool


@runtime_checkable
class CacheService(Protocol):
    async def get(self, key: str) -> str | None:
        """Fetch a cached value.  Returns None on cache miss."""
        ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...


class InMemoryCacheService:
    """Process-local cache for dev/test.  TTLs are accepted but not enforced."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._store[key] = value

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def clear(self) -> None:
        self._store.clear()


class RedisCacheService:
    """Redis-backed cache shared by every API instance and the worker."""

    _PREFIX = "cache:"

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    async def get(self, key: str) -> str | None:
        return await self._redis.get(f"{self._PREFIX}{key}")

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._redis.setex(f"{self._PREFIX}{key}", ttl_seconds, value)

    async def delete(self, key: str) -> None:
        await self._redis.delete(f"{self._PREFIX}{key}")


if redis_pool is not None:
    cache_service: CacheService = RedisCacheService(redis_pool)
else:
    cache_service = InMemoryCacheService()
