"""Async distributed counting semaphore with fencing.

Same protocol and keys as ``semaphore``, on top of an async store, so
sync and async holders of the same name count against one capacity.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from pottery import ReleaseUnlockedLock

from .aiostore import AIOLock, AIORedisStore, AIOSemaphoreStore
from .exceptions import SemaphoreError, SemaphoreUnavailableError
from .keys import (
    SemaphoreContext,
    SemaphoreKeys,
    validate_acquire_args,
    validate_context,
)

if TYPE_CHECKING:
    from redis.asyncio import Redis as AIORedis


logger = logging.getLogger(__name__)


async def _release_lock(lock: AIOLock) -> None:
    try:
        await lock.release()
    except ReleaseUnlockedLock:
        logger.warning("admission lock %r expired before release", lock)


class AIOSemaphoreProvider:
    """Async acquire, extend and release of named semaphore slots.

    Usage:
        >>> from redis.asyncio import Redis
        >>> provider = AIOSemaphoreProvider(AIORedisStore(redis=Redis()))
        >>> acquired, ctx = await provider.acquire('my-resource', 3, timeout=10)
        >>> if acquired:
        ...     try:
        ...         pass
        ...     finally:
        ...         await provider.release(ctx)

    Args:
        store: Async shared store holding the semaphore state
        clock: Wall-clock time source in seconds, shared by all processes
    """

    def __init__(
        self, store: AIOSemaphoreStore, *, clock: Callable[[], float] = time.time
    ) -> None:
        self._store = store
        self._clock = clock

    @property
    def store(self) -> AIOSemaphoreStore:
        return self._store

    async def acquire(
        self,
        name: str,
        capacity: int,
        timeout: float,
        identifier: str | None = None,
    ) -> tuple[bool, SemaphoreContext | None]:
        """Try once to take a slot in semaphore ``name``.

        Returns:
            ``(True, context)`` when admitted, ``(False, None)`` otherwise

        Raises:
            SemaphoreConfigurationError: If name, capacity or timeout is invalid
            pottery.QuorumIsImpossible: If Redis cannot be reached while taking
                the admission lock (a ``RuntimeError``, not the raw redis error)
            redis.exceptions.RedisError: If Redis fails during the fencing
                sequence itself
        """
        keys = validate_acquire_args(name, capacity, timeout)
        if identifier is None:
            identifier = str(uuid.uuid4())

        lock = self._store.lock(keys.lock, timeout)
        if not await lock.acquire(blocking=False):
            logger.debug("semaphore %r: admission lock is busy", name)
            return False, None
        try:
            return await self._admit(keys, capacity, timeout, identifier)
        finally:
            await _release_lock(lock)

    async def _admit(
        self, keys: SemaphoreKeys, capacity: int, timeout: float, identifier: str
    ) -> tuple[bool, SemaphoreContext | None]:
        now = self._clock()
        cutoff = now - timeout

        purged = await self._store.remove_range_by_score(
            keys.timer, float("-inf"), cutoff
        )
        if purged:
            logger.debug("semaphore %r: purged %d expired holders", keys.timer, purged)

        await self._store.intersect_store(keys.owner, (keys.owner, keys.timer), (1, 0))

        sequence = await self._store.incr(keys.counter)
        await self._store.add(keys.timer, identifier, now)
        await self._store.add(keys.owner, identifier, sequence)
        rank = await self._store.rank(keys.owner, identifier)

        context = SemaphoreContext(
            identifier=identifier, name=keys.timer, owner_key=keys.owner
        )
        if rank is not None and rank < capacity:
            logger.debug(
                "semaphore %r: admitted %s (sequence=%d, rank=%d)",
                keys.timer,
                identifier,
                sequence,
                rank,
            )
            return True, context

        logger.debug(
            "semaphore %r: rejected %s (rank=%s, capacity=%d)",
            keys.timer,
            identifier,
            rank,
            capacity,
        )
        await self._remove(context)
        return False, None

    async def extend(self, context: SemaphoreContext) -> bool:
        """Refresh a hold. Returns False if it had already expired."""
        context = validate_context(context)
        if not await self._store.add(context.name, context.identifier, self._clock()):
            return True

        logger.debug("semaphore %r: %s lost its slot", context.name, context.identifier)
        await self._remove(context)
        return False

    async def release(self, context: SemaphoreContext) -> None:
        """Give up a hold. Releasing an absent holder is a no-op."""
        context = validate_context(context)
        await self._remove(context)

    async def _remove(self, context: SemaphoreContext) -> None:
        await self._store.remove(context.name, context.identifier)
        await self._store.remove(context.owner_key, context.identifier)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} store={self._store!r}>"


class AIOSemaphore:
    """Async distributed Redis-powered counting semaphore bound to one name.

    Usage:
        >>> import asyncio
        >>> from redis.asyncio import Redis
        >>> async def main():
        ...     redis = Redis()
        ...     sem = AIOSemaphore(value=3, key='my-resource', masters={redis})
        ...     async with sem:
        ...         # Critical section with limited concurrency
        ...         pass
        >>> asyncio.run(main())

    Args:
        value: Capacity of the semaphore (default: 1)
        key: A string that identifies this semaphore
        timeout: Seconds a hold stays valid without ``extend()``
        masters: Async Redis clients for distributed locking
        store: Explicit async store; overrides ``masters``
        raise_on_redis_errors: Whether to raise when Redis errors prevent quorum
            (default: True)
        clock: Wall-clock time source in seconds
    """

    _DEFAULT_TIMEOUT = 10.0

    def __init__(
        self,
        *,
        value: int = 1,
        key: str,
        timeout: float = _DEFAULT_TIMEOUT,
        masters: Iterable[AIORedis] = frozenset(),
        store: AIOSemaphoreStore | None = None,
        raise_on_redis_errors: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        validate_acquire_args(key, value, timeout)

        self._value = value
        self._key = key
        self._timeout = timeout

        if store is None:
            store = AIORedisStore(
                masters=masters, raise_on_redis_errors=raise_on_redis_errors
            )
        self._provider = AIOSemaphoreProvider(store, clock=clock)
        self._context: SemaphoreContext | None = None

    @property
    def key(self) -> str:
        return self._key

    @property
    def value(self) -> int:
        return self._value

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def context(self) -> SemaphoreContext | None:
        return self._context

    @property
    def acquired(self) -> bool:
        return self._context is not None

    async def acquire(self, identifier: str | None = None) -> bool:
        """Try once to take a slot.

        Raises:
            SemaphoreError: If this object already holds a slot
        """
        if self._context is not None:
            raise SemaphoreError(f"Semaphore '{self._key}' already holds a slot")

        acquired, context = await self._provider.acquire(
            self._key, self._value, self._timeout, identifier
        )
        self._context = context
        return acquired

    async def extend(self) -> bool:
        if self._context is None:
            return False
        if await self._provider.extend(self._context):
            return True
        self._context = None
        return False

    async def release(self) -> None:
        if self._context is None:
            return
        await self._provider.release(self._context)
        self._context = None

    async def __aenter__(self) -> AIOSemaphore:
        """Enter async context manager, taking a slot or raising."""
        if not await self.acquire():
            raise SemaphoreUnavailableError(key=self._key, value=self._value)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager, releasing the slot."""
        await self.release()

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"key={self._key!r} "
            f"value={self._value} "
            f"timeout={self._timeout} "
            f"acquired={self.acquired}>"
        )
