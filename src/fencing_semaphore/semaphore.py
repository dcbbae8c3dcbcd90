"""Distributed counting semaphore with fencing.

Each semaphore named ``N`` keeps two sorted sets and a counter in the
shared store. The timer set ``N`` scores holders by the time of their last
acquire or extend; the owner set ``N:owner`` scores them by a sequence
number drawn from ``N:counter``. A holder is admitted when its rank in the
owner set is below the capacity. Admission runs under an advisory lock on
``N:lock``; extend and release are single sorted-set commands and take no
lock.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from pottery import ReleaseUnlockedLock

from .exceptions import SemaphoreError, SemaphoreUnavailableError
from .keys import (
    SemaphoreContext,
    SemaphoreKeys,
    validate_acquire_args,
    validate_context,
)
from .store import Lock, RedisStore, SemaphoreStore

if TYPE_CHECKING:
    from redis import Redis


logger = logging.getLogger(__name__)


def _release_lock(lock: Lock) -> None:
    try:
        lock.release()
    except ReleaseUnlockedLock:
        # The lease ran out while we were inside the admission sequence.
        logger.warning("admission lock %r expired before release", lock)


class SemaphoreProvider:
    """Acquire, extend and release slots of named semaphores.

    The provider holds no per-semaphore state, so one instance can serve any
    number of semaphore names.

    Usage:
        >>> from redis import Redis
        >>> provider = SemaphoreProvider(RedisStore(redis=Redis()))
        >>> acquired, ctx = provider.acquire('my-resource', 3, timeout=10)
        >>> if acquired:
        ...     try:
        ...         # Critical section with limited concurrency (max 3)
        ...         provider.extend(ctx)
        ...     finally:
        ...         provider.release(ctx)

    Args:
        store: Shared store holding the semaphore state
        clock: Wall-clock time source in seconds, shared by all processes
    """

    def __init__(
        self, store: SemaphoreStore, *, clock: Callable[[], float] = time.time
    ) -> None:
        self._store = store
        self._clock = clock

    @property
    def store(self) -> SemaphoreStore:
        return self._store

    def acquire(
        self,
        name: str,
        capacity: int,
        timeout: float,
        identifier: str | None = None,
    ) -> tuple[bool, SemaphoreContext | None]:
        """Try once to take a slot in semaphore ``name``.

        Never blocks: if another process is running admission for the same
        name, or the semaphore is full, this returns ``(False, None)``.

        Args:
            name: Name of the semaphore, shared by all processes using it
            capacity: Maximum number of concurrent holders
            timeout: Seconds a hold stays valid without ``extend()``; also
                the lease of the admission lock
            identifier: Holder identifier (default: a fresh UUID4)

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
        if not lock.acquire(blocking=False):
            logger.debug("semaphore %r: admission lock is busy", name)
            return False, None
        try:
            return self._admit(keys, capacity, timeout, identifier)
        finally:
            _release_lock(lock)

    def _admit(
        self, keys: SemaphoreKeys, capacity: int, timeout: float, identifier: str
    ) -> tuple[bool, SemaphoreContext | None]:
        """Run the fencing sequence. The caller must hold the admission lock."""
        now = self._clock()
        cutoff = now - timeout

        purged = self._store.remove_range_by_score(keys.timer, float("-inf"), cutoff)
        if purged:
            logger.debug("semaphore %r: purged %d expired holders", keys.timer, purged)

        # Drop owners whose timer entry is gone, keeping the owner scores
        self._store.intersect_store(keys.owner, (keys.owner, keys.timer), (1, 0))

        sequence = self._store.incr(keys.counter)
        self._store.add(keys.timer, identifier, now)
        self._store.add(keys.owner, identifier, sequence)
        rank = self._store.rank(keys.owner, identifier)

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
        self._remove(context)
        return False, None

    def extend(self, context: SemaphoreContext) -> bool:
        """Refresh a hold so it does not expire.

        Returns:
            True if the hold is still live, False if it had already been
            purged as expired (the slot is lost and nothing is left behind)
        """
        context = validate_context(context)
        if not self._store.add(context.name, context.identifier, self._clock()):
            return True

        # The member was re-inserted, so someone purged it before we got here
        logger.debug("semaphore %r: %s lost its slot", context.name, context.identifier)
        self._remove(context)
        return False

    def release(self, context: SemaphoreContext) -> None:
        """Give up a hold. Releasing an absent holder is a no-op."""
        context = validate_context(context)
        self._remove(context)

    def _remove(self, context: SemaphoreContext) -> None:
        self._store.remove(context.name, context.identifier)
        self._store.remove(context.owner_key, context.identifier)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} store={self._store!r}>"


class Semaphore:
    """Distributed Redis-powered counting semaphore bound to one name.

    A ``Semaphore`` object holds at most one slot at a time. Holds expire
    after ``timeout`` seconds unless refreshed with ``extend()``.

    Usage:
        >>> from redis import Redis
        >>> redis = Redis()
        >>> sem = Semaphore(value=3, key='my-resource', masters={redis})
        >>> if sem.acquire():
        ...     try:
        ...         # Critical section with limited concurrency
        ...         pass
        ...     finally:
        ...         sem.release()

        >>> # Or use as context manager (raises if no slot is free)
        >>> with sem:
        ...     # Critical section
        ...     pass

    Args:
        value: Capacity of the semaphore (default: 1)
        key: A string that identifies this semaphore
        timeout: Seconds a hold stays valid without ``extend()``
        masters: Redis clients for distributed locking
        store: Explicit store; overrides ``masters``
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
        masters: Iterable[Redis] = frozenset(),
        store: SemaphoreStore | None = None,
        raise_on_redis_errors: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        validate_acquire_args(key, value, timeout)

        self._value = value
        self._key = key
        self._timeout = timeout

        if store is None:
            store = RedisStore(
                masters=masters, raise_on_redis_errors=raise_on_redis_errors
            )
        self._provider = SemaphoreProvider(store, clock=clock)
        self._context: SemaphoreContext | None = None

    @property
    def key(self) -> str:
        return self._key

    @property
    def value(self) -> int:
        """Return the capacity of the semaphore."""
        return self._value

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def context(self) -> SemaphoreContext | None:
        """Return the current hold, or None."""
        return self._context

    @property
    def acquired(self) -> bool:
        return self._context is not None

    def acquire(self, identifier: str | None = None) -> bool:
        """Try once to take a slot; see ``SemaphoreProvider.acquire``.

        Raises:
            SemaphoreError: If this object already holds a slot
        """
        if self._context is not None:
            raise SemaphoreError(f"Semaphore '{self._key}' already holds a slot")

        acquired, context = self._provider.acquire(
            self._key, self._value, self._timeout, identifier
        )
        self._context = context
        return acquired

    def extend(self) -> bool:
        """Refresh the current hold. Returns False if nothing is held any more."""
        if self._context is None:
            return False
        if self._provider.extend(self._context):
            return True
        self._context = None
        return False

    def release(self) -> None:
        """Release the current hold, if any."""
        if self._context is None:
            return
        self._provider.release(self._context)
        self._context = None

    def __enter__(self) -> Semaphore:
        """Enter context manager, taking a slot or raising."""
        if not self.acquire():
            raise SemaphoreUnavailableError(key=self._key, value=self._value)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context manager, releasing the slot."""
        self.release()

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"key={self._key!r} "
            f"value={self._value} "
            f"timeout={self._timeout} "
            f"acquired={self.acquired}>"
        )
