"""Async shared-store capability for AIOSemaphoreProvider.

Mirrors ``store`` for ``redis.asyncio`` clients. ``AIORedisStore`` uses the
same keys and encodings as ``RedisStore``, so sync and async semaphores
with the same name share state. ``AIOMemoryStore`` wraps a ``MemoryStore``
and can share it with sync callers.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Protocol

from pottery import AIORedlock

from .store import MemoryLock, MemoryStore

if TYPE_CHECKING:
    from redis.asyncio import Redis as AIORedis


class AIOLock(Protocol):
    """Async leased advisory lock holding its own random token."""

    async def acquire(self, *, blocking: bool = ...) -> bool: ...

    async def release(self) -> None: ...


class AIOSemaphoreStore(Protocol):
    """Async atomic operations the semaphore needs from the shared store."""

    async def incr(self, key: str) -> int: ...

    async def add(self, key: str, member: str, score: float) -> bool: ...

    async def remove(self, key: str, member: str) -> bool: ...

    async def remove_range_by_score(
        self, key: str, min_score: float, max_score: float
    ) -> int: ...

    async def intersect_store(
        self, dest: str, keys: Sequence[str], weights: Sequence[float]
    ) -> int: ...

    async def rank(self, key: str, member: str) -> int | None: ...

    def lock(self, key: str, ttl: float) -> AIOLock: ...


class AIORedisStore:
    """Async store backed by Redis sorted sets and Pottery's AIORedlock.

    Like ``RedisStore``, the lock for ``N:lock`` lives at ``redlock:N:lock``
    and Redis errors during the lock step raise ``pottery.QuorumIsImpossible``
    by default.

    Usage:
        >>> from redis.asyncio import Redis
        >>> store = AIORedisStore(redis=Redis())
        >>> await store.incr('my-resource:counter')
        1

    Args:
        redis: Async client used for sorted-set and counter commands
        masters: Async Redis clients for distributed locking
        raise_on_redis_errors: Whether AIORedlock raises when Redis errors prevent quorum
    """

    def __init__(
        self,
        *,
        redis: AIORedis | None = None,
        masters: Iterable[AIORedis] = frozenset(),
        raise_on_redis_errors: bool = True,
    ) -> None:
        self._masters: frozenset[AIORedis] = frozenset(masters)

        if redis is None:
            if self._masters:
                redis = next(iter(self._masters))
            else:
                from redis.asyncio import Redis as AIORedisClient

                redis = AIORedisClient()

        self._redis: AIORedis = redis
        if not self._masters:
            self._masters = frozenset({redis})
        self._raise_on_redis_errors = raise_on_redis_errors

    @property
    def redis(self) -> AIORedis:
        """Return the client used for sorted-set and counter commands."""
        return self._redis

    async def incr(self, key: str) -> int:
        return await self._redis.incr(key)

    async def add(self, key: str, member: str, score: float) -> bool:
        return await self._redis.zadd(key, {member: score}) == 1

    async def remove(self, key: str, member: str) -> bool:
        return await self._redis.zrem(key, member) == 1

    async def remove_range_by_score(
        self, key: str, min_score: float, max_score: float
    ) -> int:
        return await self._redis.zremrangebyscore(key, min_score, max_score)

    async def intersect_store(
        self, dest: str, keys: Sequence[str], weights: Sequence[float]
    ) -> int:
        if len(keys) != len(weights):
            raise ValueError("keys and weights must have the same length")
        return await self._redis.zinterstore(dest, dict(zip(keys, weights)))

    async def rank(self, key: str, member: str) -> int | None:
        return await self._redis.zrank(key, member)

    def lock(self, key: str, ttl: float) -> AIORedlock:
        return AIORedlock(
            key=key,
            masters=self._masters,
            raise_on_redis_errors=self._raise_on_redis_errors,
            auto_release_time=ttl,
            context_manager_blocking=False,
        )

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} redis={self._redis!r}>"


class AIOMemoryLock:
    """Async facade over a ``MemoryLock``."""

    def __init__(self, lock: MemoryLock) -> None:
        self._lock = lock

    @property
    def key(self) -> str:
        return self._lock.key

    async def acquire(self, *, blocking: bool = False) -> bool:
        return self._lock.acquire(blocking=blocking)

    async def release(self) -> None:
        self._lock.release()


class AIOMemoryStore:
    """Async facade over a ``MemoryStore``.

    Pass an existing ``MemoryStore`` to share state with sync callers.
    """

    def __init__(self, store: MemoryStore | None = None) -> None:
        self._store = store if store is not None else MemoryStore()

    @property
    def sync_store(self) -> MemoryStore:
        return self._store

    async def incr(self, key: str) -> int:
        return self._store.incr(key)

    async def add(self, key: str, member: str, score: float) -> bool:
        return self._store.add(key, member, score)

    async def remove(self, key: str, member: str) -> bool:
        return self._store.remove(key, member)

    async def remove_range_by_score(
        self, key: str, min_score: float, max_score: float
    ) -> int:
        return self._store.remove_range_by_score(key, min_score, max_score)

    async def intersect_store(
        self, dest: str, keys: Sequence[str], weights: Sequence[float]
    ) -> int:
        return self._store.intersect_store(dest, keys, weights)

    async def rank(self, key: str, member: str) -> int | None:
        return self._store.rank(key, member)

    def lock(self, key: str, ttl: float) -> AIOMemoryLock:
        return AIOMemoryLock(self._store.lock(key, ttl))

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} store={self._store!r}>"
