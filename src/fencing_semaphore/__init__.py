"""Distributed counting semaphore with fencing, on Redis and Pottery.

Processes sharing a Redis server bound the number of concurrent holders of
a named resource. Holders that crash or stop refreshing expire after a
timeout. Admission is serialized with Pottery's Redlock; ranking uses a
monotonically increasing sequence number, so a stale holder cannot keep a
slot it has lost.

Example usage (sync):

    >>> from redis import Redis
    >>> from fencing_semaphore import Semaphore
    >>>
    >>> redis = Redis()
    >>> sem = Semaphore(value=3, key='my-resource', timeout=10, masters={redis})
    >>>
    >>> with sem:
    ...     # Critical section with limited concurrency (max 3)
    ...     sem.extend()

Example usage (provider):

    >>> from fencing_semaphore import RedisStore, SemaphoreProvider
    >>>
    >>> provider = SemaphoreProvider(RedisStore(redis=redis))
    >>> acquired, ctx = provider.acquire('my-resource', 3, timeout=10)
    >>> if acquired:
    ...     provider.release(ctx)

Example usage (async):

    >>> import asyncio
    >>> from redis.asyncio import Redis
    >>> from fencing_semaphore import AIOSemaphore
    >>>
    >>> async def main():
    ...     redis = Redis()
    ...     sem = AIOSemaphore(value=3, key='my-resource', masters={redis})
    ...     async with sem:
    ...         # Critical section with limited concurrency
    ...         pass
    >>> asyncio.run(main())
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version
from typing import Final

from .aiosemaphore import AIOSemaphore, AIOSemaphoreProvider
from .aiostore import AIOMemoryStore, AIORedisStore, AIOSemaphoreStore
from .exceptions import (
    SemaphoreConfigurationError,
    SemaphoreError,
    SemaphoreUnavailableError,
)
from .keys import SemaphoreContext, SemaphoreKeys
from .semaphore import Semaphore, SemaphoreProvider
from .store import MemoryStore, RedisStore, SemaphoreStore

__all__: Final[tuple[str, ...]] = (
    "AIOMemoryStore",
    "AIORedisStore",
    "AIOSemaphore",
    "AIOSemaphoreProvider",
    "AIOSemaphoreStore",
    "MemoryStore",
    "RedisStore",
    "Semaphore",
    "SemaphoreConfigurationError",
    "SemaphoreContext",
    "SemaphoreError",
    "SemaphoreKeys",
    "SemaphoreProvider",
    "SemaphoreStore",
    "SemaphoreUnavailableError",
)

try:
    __version__ = version("fencing-semaphore")
except PackageNotFoundError:
    __version__ = "unknown"
