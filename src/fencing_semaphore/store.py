"""Shared-store capability used by the semaphore algorithm.

The semaphore only needs a handful of atomic primitives from its store:
a counter, sorted-set add/remove/range-remove/intersect/rank, and a leased
advisory lock. ``RedisStore`` maps them onto Redis commands and Pottery's
Redlock; ``MemoryStore`` keeps the same state in process memory so the
algorithm can be exercised without a server.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterable, Sequence
from typing import TYPE_CHECKING, Protocol

from pottery import Redlock

if TYPE_CHECKING:
    from redis import Redis


logger = logging.getLogger(__name__)


class Lock(Protocol):
    """A leased advisory lock holding its own random token."""

    def acquire(self, *, blocking: bool = ...) -> bool: ...

    def release(self) -> None: ...


class SemaphoreStore(Protocol):
    """Atomic operations the semaphore needs from the shared store."""

    def incr(self, key: str) -> int: ...

    def add(self, key: str, member: str, score: float) -> bool: ...

    def remove(self, key: str, member: str) -> bool: ...

    def remove_range_by_score(
        self, key: str, min_score: float, max_score: float
    ) -> int: ...

    def intersect_store(
        self, dest: str, keys: Sequence[str], weights: Sequence[float]
    ) -> int: ...

    def rank(self, key: str, member: str) -> int | None: ...

    def lock(self, key: str, ttl: float) -> Lock: ...


class RedisStore:
    """Store backed by Redis sorted sets and Pottery's Redlock.

    Sorted-set and counter commands go to a single Redis client. The
    advisory lock is a Redlock over ``masters``, which defaults to that same
    client. Redlock prefixes its keys, so the lock for ``N:lock`` lives at
    ``redlock:N:lock`` in Redis.

    Redis errors during the lock step raise by default
    (``raise_on_redis_errors=True``); Redlock reports them as
    ``pottery.QuorumIsImpossible`` rather than the underlying redis error.

    Usage:
        >>> from redis import Redis
        >>> store = RedisStore(redis=Redis())
        >>> store.add('my-resource', 'holder-1', 1700000000.0)
        True

    Args:
        redis: Client used for sorted-set and counter commands
        masters: Redis clients for distributed locking
        raise_on_redis_errors: Whether Redlock raises when Redis errors prevent quorum
    """

    def __init__(
        self,
        *,
        redis: Redis | None = None,
        masters: Iterable[Redis] = frozenset(),
        raise_on_redis_errors: bool = True,
    ) -> None:
        self._masters: frozenset[Redis] = frozenset(masters)

        if redis is None:
            if self._masters:
                redis = next(iter(self._masters))
            else:
                from redis import Redis as RedisClient

                redis = RedisClient()

        self._redis = redis
        if not self._masters:
            self._masters = frozenset({redis})
        self._raise_on_redis_errors = raise_on_redis_errors

    @property
    def redis(self) -> Redis:
        """Return the client used for sorted-set and counter commands."""
        return self._redis

    def incr(self, key: str) -> int:
        return self._redis.incr(key)

    def add(self, key: str, member: str, score: float) -> bool:
        # ZADD without CH counts only newly inserted members
        return self._redis.zadd(key, {member: score}) == 1

    def remove(self, key: str, member: str) -> bool:
        return self._redis.zrem(key, member) == 1

    def remove_range_by_score(
        self, key: str, min_score: float, max_score: float
    ) -> int:
        return self._redis.zremrangebyscore(key, min_score, max_score)

    def intersect_store(
        self, dest: str, keys: Sequence[str], weights: Sequence[float]
    ) -> int:
        if len(keys) != len(weights):
            raise ValueError("keys and weights must have the same length")
        return self._redis.zinterstore(dest, dict(zip(keys, weights)))

    def rank(self, key: str, member: str) -> int | None:
        return self._redis.zrank(key, member)

    def lock(self, key: str, ttl: float) -> Redlock:
        return Redlock(
            key=key,
            masters=self._masters,
            raise_on_redis_errors=self._raise_on_redis_errors,
            auto_release_time=ttl,
            context_manager_blocking=False,
        )

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} redis={self._redis!r}>"


class MemoryLock:
    """Advisory lock on a ``MemoryStore`` key, leased for ``ttl`` seconds."""

    def __init__(self, *, store: MemoryStore, key: str, ttl: float) -> None:
        self.key = key
        self._store = store
        self._ttl = ttl
        self._token = str(uuid.uuid4())

    @property
    def token(self) -> str:
        return self._token

    def acquire(self, *, blocking: bool = False) -> bool:
        """Make a single attempt to take the lock.

        Raises:
            ValueError: If ``blocking`` is requested
        """
        if blocking:
            raise ValueError("MemoryLock only supports non-blocking acquire")
        return self._store.take_lock(self.key, self._token, self._ttl)

    def release(self) -> None:
        if not self._store.give_lock(self.key, self._token):
            logger.warning("lock %r was no longer held at release time", self.key)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} key={self.key!r}>"


class MemoryStore:
    """In-process store with Redis sorted-set semantics.

    Every operation runs under one re-entrant mutex, so each call is atomic
    with respect to other threads, which matches what a single Redis
    server guarantees per command. Members with equal scores rank by member
    value, as in Redis.

    Args:
        clock: Monotonic time source used for lock leases
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._mutex = threading.RLock()
        self._clock = clock
        self._sorted_sets: dict[str, dict[str, float]] = {}
        self._counters: dict[str, int] = {}
        self._locks: dict[str, tuple[str, float]] = {}

    def incr(self, key: str) -> int:
        with self._mutex:
            value = self._counters.get(key, 0) + 1
            self._counters[key] = value
            return value

    def add(self, key: str, member: str, score: float) -> bool:
        with self._mutex:
            zset = self._sorted_sets.setdefault(key, {})
            is_new = member not in zset
            zset[member] = float(score)
            return is_new

    def remove(self, key: str, member: str) -> bool:
        with self._mutex:
            zset = self._sorted_sets.get(key)
            if zset is None or member not in zset:
                return False
            del zset[member]
            if not zset:
                del self._sorted_sets[key]
            return True

    def remove_range_by_score(
        self, key: str, min_score: float, max_score: float
    ) -> int:
        with self._mutex:
            zset = self._sorted_sets.get(key)
            if zset is None:
                return 0
            doomed = [m for m, s in zset.items() if min_score <= s <= max_score]
            for member in doomed:
                del zset[member]
            if not zset:
                del self._sorted_sets[key]
            return len(doomed)

    def intersect_store(
        self, dest: str, keys: Sequence[str], weights: Sequence[float]
    ) -> int:
        if len(keys) != len(weights):
            raise ValueError("keys and weights must have the same length")
        with self._mutex:
            sources = [self._sorted_sets.get(key, {}) for key in keys]
            common = set(sources[0]).intersection(*sources[1:]) if sources else set()
            # SUM aggregate, like ZINTERSTORE's default
            result = {
                member: sum(src[member] * w for src, w in zip(sources, weights))
                for member in common
            }
            if result:
                self._sorted_sets[dest] = result
            else:
                self._sorted_sets.pop(dest, None)
            return len(result)

    def rank(self, key: str, member: str) -> int | None:
        with self._mutex:
            zset = self._sorted_sets.get(key)
            if zset is None or member not in zset:
                return None
            ordered = sorted(zset.items(), key=lambda item: (item[1], item[0]))
            return [m for m, _ in ordered].index(member)

    def lock(self, key: str, ttl: float) -> MemoryLock:
        return MemoryLock(store=self, key=key, ttl=ttl)

    def take_lock(self, key: str, token: str, ttl: float) -> bool:
        """Set the lock on ``key`` to ``token`` unless a live lease exists."""
        with self._mutex:
            now = self._clock()
            held = self._locks.get(key)
            if held is not None and held[1] > now:
                return False
            self._locks[key] = (token, now + ttl)
            return True

    def give_lock(self, key: str, token: str) -> bool:
        """Drop the lock on ``key`` if ``token`` still holds a live lease."""
        with self._mutex:
            held = self._locks.get(key)
            if held is None or held[0] != token:
                return False
            del self._locks[key]
            return held[1] > self._clock()

    # Inspection helpers, mostly for tests.

    def members(self, key: str) -> dict[str, float]:
        """Return a copy of the sorted set at ``key`` as member -> score."""
        with self._mutex:
            return dict(self._sorted_sets.get(key, {}))

    def counter(self, key: str) -> int:
        with self._mutex:
            return self._counters.get(key, 0)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} keys={len(self._sorted_sets)}>"
