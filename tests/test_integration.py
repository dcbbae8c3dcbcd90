"""Integration tests for fencing-semaphore using Docker Redis.

These tests run the protocol against a real Redis server, with Pottery's
Redlock as the admission lock, and verify that sync and async semaphores
share state.
"""

from __future__ import annotations

import contextlib
import multiprocessing
import time
from typing import TYPE_CHECKING

from fencing_semaphore import (
    AIORedisStore,
    AIOSemaphore,
    AIOSemaphoreProvider,
    RedisStore,
    Semaphore,
    SemaphoreProvider,
)
from tests.conftest import FakeClock, requires_docker

if TYPE_CHECKING:
    from redis import Redis
    from redis.asyncio import Redis as AIORedis


def _multiprocess_worker(
    worker_id: int, redis_url: str, key: str, results_queue: multiprocessing.Queue
) -> None:
    """Worker function for multiprocess test (must be at module level for pickling)."""
    from redis import Redis

    from fencing_semaphore import Semaphore

    r = None
    try:
        r = Redis.from_url(redis_url)
        s = Semaphore(value=2, key=key, timeout=10, masters={r})

        acquired = False
        deadline = time.time() + 10
        # Acquire is fail-fast, so callers own the retry loop
        while not acquired and time.time() < deadline:
            acquired = s.acquire()
            if not acquired:
                time.sleep(0.05)

        if acquired:
            results_queue.put((worker_id, "acquired", time.time()))
            time.sleep(0.3)
            s.release()
            results_queue.put((worker_id, "released", time.time()))
        else:
            results_queue.put((worker_id, "timeout", time.time()))
    except Exception as e:
        results_queue.put((worker_id, "error", str(e)))
    finally:
        if r is not None:
            with contextlib.suppress(Exception):
                r.close()


@requires_docker
class TestRedisStore:
    """Tests for the Redis store primitives."""

    def test_sorted_set_operations(self, redis_client: Redis, unique_key: str) -> None:
        store = RedisStore(redis=redis_client)

        assert store.add(unique_key, "a", 1)
        assert not store.add(unique_key, "a", 2)
        assert store.add(unique_key, "b", 5)
        assert store.rank(unique_key, "a") == 0
        assert store.rank(unique_key, "missing") is None

        assert store.remove_range_by_score(unique_key, float("-inf"), 2) == 1
        assert store.remove(unique_key, "b")
        assert not store.remove(unique_key, "b")
        assert store.incr(f"{unique_key}:counter") == 1

    def test_intersect_keeps_owner_scores(
        self, redis_client: Redis, unique_key: str
    ) -> None:
        store = RedisStore(redis=redis_client)
        owner = f"{unique_key}:owner"
        store.add(owner, "a", 1)
        store.add(owner, "b", 2)
        store.add(unique_key, "b", 1_700_000_000.0)

        assert store.intersect_store(owner, (owner, unique_key), (1, 0)) == 1
        assert redis_client.zscore(owner, "b") == 2.0

    def test_redlock_is_exclusive(self, redis_client: Redis, unique_key: str) -> None:
        store = RedisStore(redis=redis_client)
        first = store.lock(f"{unique_key}:lock", 5)
        second = store.lock(f"{unique_key}:lock", 5)

        assert first.acquire(blocking=False)
        assert redis_client.exists(f"redlock:{unique_key}:lock")
        assert not redis_client.exists(f"{unique_key}:lock")
        assert not second.acquire(blocking=False)
        first.release()
        assert second.acquire(blocking=False)
        second.release()


@requires_docker
class TestRedisProvider:
    """Tests for the algorithm against Redis."""

    def test_keys_layout(self, redis_client: Redis, unique_key: str) -> None:
        provider = SemaphoreProvider(RedisStore(redis=redis_client))

        acquired, ctx = provider.acquire(unique_key, 2, 10, identifier="holder")

        assert acquired
        assert ctx is not None
        assert redis_client.zscore(unique_key, "holder") is not None
        assert redis_client.zscore(f"{unique_key}:owner", "holder") == 1.0
        assert int(redis_client.get(f"{unique_key}:counter")) == 1

        provider.release(ctx)
        assert redis_client.zcard(unique_key) == 0
        assert redis_client.zcard(f"{unique_key}:owner") == 0

    def test_single_slot_handoff(self, redis_client: Redis, unique_key: str) -> None:
        """A holds the only slot, B fails, A releases, B succeeds."""
        provider = SemaphoreProvider(RedisStore(redis=redis_client))

        acquired_a, ctx_a = provider.acquire(unique_key, 1, 10)
        assert acquired_a
        assert ctx_a is not None

        assert provider.acquire(unique_key, 1, 1) == (False, None)

        provider.release(ctx_a)
        assert provider.acquire(unique_key, 1, 1)[0]

    def test_expiry_and_extend(self, redis_client: Redis, unique_key: str) -> None:
        clock = FakeClock(start=time.time())
        provider = SemaphoreProvider(RedisStore(redis=redis_client), clock=clock)

        _, ctx = provider.acquire(unique_key, 1, 10, identifier="a")
        assert ctx is not None

        clock.advance(11)
        assert provider.acquire(unique_key, 1, 10, identifier="b")[0]

        assert not provider.extend(ctx)
        assert redis_client.zscore(unique_key, "a") is None
        assert redis_client.zscore(f"{unique_key}:owner", "a") is None

    def test_context_manager(self, redis_client: Redis, unique_key: str) -> None:
        sem = Semaphore(value=1, key=unique_key, masters={redis_client})

        with sem:
            assert redis_client.zcard(unique_key) == 1

        assert redis_client.zcard(unique_key) == 0


@requires_docker
class TestSyncAsyncInterop:
    """Tests for sync/async semaphore interoperability."""

    async def test_sync_and_async_share_capacity(
        self,
        redis_client: Redis,
        aioredis_client: AIORedis,
        unique_key: str,
    ) -> None:
        sync_sem = Semaphore(value=2, key=unique_key, masters={redis_client})
        async_sem = AIOSemaphore(value=2, key=unique_key, masters={aioredis_client})
        third = AIOSemaphore(value=2, key=unique_key, masters={aioredis_client})

        assert sync_sem.acquire()
        assert await async_sem.acquire()
        assert not await third.acquire()

        sync_sem.release()
        assert await third.acquire()

        await async_sem.release()
        await third.release()
        assert redis_client.zcard(unique_key) == 0

    async def test_async_provider(
        self, aioredis_client: AIORedis, unique_key: str
    ) -> None:
        provider = AIOSemaphoreProvider(AIORedisStore(redis=aioredis_client))

        acquired, ctx = await provider.acquire(unique_key, 1, 10)
        assert acquired
        assert ctx is not None
        assert await provider.extend(ctx)

        await provider.release(ctx)
        await provider.release(ctx)
        assert await aioredis_client.zcard(f"{unique_key}:owner") == 0


@requires_docker
class TestMultiProcess:
    """Tests for multi-process semaphore usage."""

    def test_multiprocess_semaphore(self, docker_redis: str, unique_key: str) -> None:
        """Test semaphore works across multiple processes."""
        from redis import Redis

        results: multiprocessing.Queue = multiprocessing.Queue()

        # Start 4 workers competing for 2 slots
        processes = []
        for i in range(4):
            p = multiprocessing.Process(
                target=_multiprocess_worker,
                args=(i, docker_redis, unique_key, results),
            )
            processes.append(p)
            p.start()

        for p in processes:
            p.join(timeout=30)

        for p in processes:
            if p.is_alive():
                p.terminate()
                p.join(timeout=5)

        acquired_times = []
        errors = []
        while not results.empty():
            worker_id, status, data = results.get()
            if status == "acquired":
                acquired_times.append(data)
            elif status == "error":
                errors.append((worker_id, data))

        assert not errors, f"Worker errors: {errors}"

        # All 4 workers should have acquired at some point
        assert len(acquired_times) == 4

        redis_client = Redis.from_url(docker_redis)
        try:
            assert redis_client.zcard(unique_key) == 0
        finally:
            redis_client.close()
