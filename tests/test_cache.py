"""
Multi-tier cache and prefetch pool tests
"""
import asyncio
import json
from unittest.mock import AsyncMock

import pytest
import redis.asyncio as redis

from process_engine.cache import (
    ActivityTracker, CacheTier, HttpFetcher, InMemoryPrefetchQueue, MemoryCacheBackend,
    MultiTierCache, PrefetchJob, PrefetchWorkerPool, RedisCacheBackend, create_cache_backend,
)
from process_engine.core import RetryPolicy
from process_engine.exceptions import UpstreamError
from process_engine.integrations import HttpResponse


class ManualClock:

    def __init__(self, value: float = 1000.0):
        self.value = value

    def __call__(self):
        return self.value


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def cache(clock):
    return MultiTierCache(MemoryCacheBackend(clock), hot_ttl_seconds=60, warm_ttl_seconds=600)


class TestMultiTierCache:

    @pytest.mark.asyncio
    async def test_hot_entries_expire_before_warm_ones(self, cache, clock):
        await cache.set(CacheTier.HOT, "acme", "orders", [1])
        await cache.set(CacheTier.WARM, "acme", "customers", [2])

        assert await cache.get("acme", "orders") == [1]
        clock.value += 61
        assert await cache.get("acme", "orders") is None
        assert await cache.get("acme", "customers") == [2]
        clock.value += 600
        assert await cache.get("acme", "customers") is None

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, cache):
        await cache.set(CacheTier.WARM, "acme", "orders", "a")
        assert await cache.get("globex", "orders") is None

    @pytest.mark.asyncio
    async def test_hits_and_misses_are_counted_per_tier(self, cache):
        await cache.set(CacheTier.WARM, "acme", "k", 1)
        await cache.get("acme", "k")
        assert cache.metrics.get_counter("cache_misses_total", {"tier": "hot"}) == 1
        assert cache.metrics.get_counter("cache_hits_total", {"tier": "warm"}) == 1

    @pytest.mark.asyncio
    async def test_get_or_fetch_reads_through(self, cache):
        fetch = AsyncMock(return_value={"rows": 3})

        assert await cache.get_or_fetch("acme", "report", fetch, priority="high") == {"rows": 3}
        assert await cache.get_or_fetch("acme", "report", fetch) == {"rows": 3}
        fetch.assert_awaited_once()
        assert await cache.backend.get(cache.make_key(CacheTier.HOT, "acme", "report")) == {"rows": 3}

    @pytest.mark.asyncio
    async def test_none_is_not_cached(self, cache):
        fetch = AsyncMock(return_value=None)
        await cache.get_or_fetch("acme", "empty", fetch)
        await cache.get_or_fetch("acme", "empty", fetch)
        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_invalidate_clears_both_tiers(self, cache):
        await cache.set(CacheTier.HOT, "acme", "k", 1)
        await cache.set(CacheTier.WARM, "acme", "k", 2)
        await cache.invalidate("acme", "k")
        assert await cache.get("acme", "k") is None

    @pytest.mark.asyncio
    async def test_cached_values_are_copies(self, cache):
        value = {"items": [1]}
        await cache.set(CacheTier.HOT, "acme", "k", value)
        value["items"].append(2)
        assert await cache.get("acme", "k") == {"items": [1]}


class TestMemoryCacheBackend:

    @pytest.mark.asyncio
    async def test_expired_keys_are_pruned_as_it_grows(self, clock):
        backend = MemoryCacheBackend(clock, prune_threshold=2)
        for key in ("a", "b", "c"):
            await backend.set(key, key, 1)
        clock.value += 2

        await backend.set("d", "d", 60)

        assert list(backend.entries) == ["d"]
        assert await backend.get("d") == "d"

    @pytest.mark.asyncio
    async def test_live_keys_survive_a_prune(self, clock):
        backend = MemoryCacheBackend(clock, prune_threshold=1)
        await backend.set("short", 1, 1)
        await backend.set("long", 2, 60)
        clock.value += 2

        await backend.set("new", 3, 60)

        assert sorted(backend.entries) == ["long", "new"]

    @pytest.fixture
    def client(self):
        return AsyncMock()

    @pytest.mark.asyncio
    async def test_values_round_trip_as_json(self, client):
        backend = RedisCacheBackend(client=client)
        client.get.return_value = json.dumps({"a": 1})

        await backend.set("k", {"a": 1}, 30)
        client.setex.assert_awaited_once_with("k", 30, '{"a": 1}')
        assert await backend.get("k") == {"a": 1}

    @pytest.mark.asyncio
    async def test_redis_errors_degrade_to_misses(self, client):
        backend = RedisCacheBackend(client=client)
        client.get.side_effect = redis.ConnectionError("down")
        client.delete.side_effect = redis.ConnectionError("down")

        assert await backend.get("k") is None
        assert await backend.delete("k") is False

    def test_backend_selection(self):
        assert isinstance(create_cache_backend(None), MemoryCacheBackend)
        with pytest.raises(ValueError):
            RedisCacheBackend()


class TestPrefetchQueue:

    @pytest.mark.asyncio
    async def test_priority_then_age(self, clock):
        queue = InMemoryPrefetchQueue(clock=clock)
        low = PrefetchJob("low", priority="low", created_at=1)
        first_medium = PrefetchJob("m1", created_at=2)
        second_medium = PrefetchJob("m2", created_at=3)
        high = PrefetchJob("high", priority="high", created_at=4)
        for job in (low, second_medium, high, first_medium):
            await queue.enqueue(job)

        order = [(await queue.dequeue()).resource_key for _ in range(4)]
        assert order == ["high", "m1", "m2", "low"]
        assert await queue.dequeue() is None

    @pytest.mark.asyncio
    async def test_capacity_and_delayed_jobs(self, clock):
        queue = InMemoryPrefetchQueue(capacity=1, clock=clock)
        assert await queue.enqueue(PrefetchJob("a")) is True
        assert await queue.enqueue(PrefetchJob("b")) is False

        job = await queue.dequeue()
        await queue.requeue(job, 5)
        assert await queue.dequeue() is None
        assert await queue.size() == 1
        clock.value += 5
        assert (await queue.dequeue()).resource_key == "a"

    @pytest.mark.asyncio
    async def test_dead_letters_can_be_retried(self, clock):
        queue = InMemoryPrefetchQueue(clock=clock)
        job = PrefetchJob("a", attempts=3, last_error="boom")
        await queue.dead_letter(job)

        assert [j.id for j in await queue.dead_letters()] == [job.id]
        assert await queue.retry_dead_letter("unknown") is False
        assert await queue.retry_dead_letter(job.id) is True
        revived = await queue.dequeue()
        assert revived.attempts == 0
        assert revived.last_error is None
        assert await queue.dead_letters() == []


class TestPrefetchWorkerPool:

    @pytest.fixture
    def queue(self, clock):
        return InMemoryPrefetchQueue(clock=clock)

    def pool(self, queue, cache, fetcher):
        return PrefetchWorkerPool(
            queue, cache, fetcher,
            fetch_policy=RetryPolicy(max_attempts=1),
            backoff=RetryPolicy(initial_delay_ms=1000, jitter=False),
            sleep=AsyncMock(), poll_interval=0.01,
        )

    @pytest.mark.asyncio
    async def test_successful_job_lands_in_the_priority_tier(self, queue, cache):
        await queue.enqueue(PrefetchJob("orders", tenant="acme", priority="high"))
        pool = self.pool(queue, cache, AsyncMock(return_value=[1, 2]))

        assert await pool.process_one() is True
        assert await pool.process_one() is False
        assert await cache.backend.get(cache.make_key(CacheTier.HOT, "acme", "orders")) == [1, 2]
        assert cache.metrics.get_counter("prefetch_jobs_total", {"outcome": "succeeded"}) == 1

    @pytest.mark.asyncio
    async def test_failures_back_off_then_dead_letter(self, queue, cache, clock):
        job = PrefetchJob("orders", max_attempts=2)
        await queue.enqueue(job)
        pool = self.pool(queue, cache, AsyncMock(side_effect=UpstreamError("503")))

        await pool.process_one()
        assert await queue.size() == 1
        assert await pool.process_one() is False
        clock.value += 1
        await pool.process_one()

        dead = await queue.dead_letters()
        assert [(j.id, j.attempts, j.last_error) for j in dead] == [(job.id, 2, "503")]
        assert cache.metrics.get_counter("prefetch_jobs_total", {"outcome": "retried"}) == 1
        assert cache.metrics.get_counter("prefetch_jobs_total", {"outcome": "dead_lettered"}) == 1

    @pytest.mark.asyncio
    async def test_workers_drain_until_stopped(self, queue, cache):
        for key in ("a", "b", "c"):
            await queue.enqueue(PrefetchJob(key))
        pool = self.pool(queue, cache, AsyncMock(return_value="v"))

        runner = asyncio.create_task(pool.run())
        for _ in range(100):
            if await queue.size() == 0:
                break
            await asyncio.sleep(0.01)
        pool.stop()
        await asyncio.wait_for(runner, timeout=1)

        for key in ("a", "b", "c"):
            assert await cache.get("default", key) == "v"

    @pytest.mark.asyncio
    async def test_http_fetcher_replays_the_request(self):
        http = AsyncMock()
        http.request.return_value = HttpResponse(200, {"ok": True})
        fetcher = HttpFetcher(http)

        job = PrefetchJob("k", request={"url": "https://api.example.com/x", "method": "GET"})
        assert await fetcher(job) == {"status_code": 200, "body": {"ok": True}}
        http.request.assert_awaited_once_with("GET", "https://api.example.com/x", None, None, 30000)

        with pytest.raises(ValueError):
            await fetcher(PrefetchJob("k"))


class TestActivityTracker:

    @pytest.mark.asyncio
    async def test_recent_activity_is_enqueued(self, clock):
        queue = InMemoryPrefetchQueue(clock=clock)
        tracker = ActivityTracker(queue, window_seconds=60, clock=clock)

        tracker.record("alice", "acme", "orders", {"url": "https://api.example.com/orders"})
        tracker.record(None, "acme", "anonymous")
        clock.value += 30
        tracker.record("bob", "acme", "customers")

        assert tracker.active_users() == ["alice", "bob"]
        assert await tracker.scan() == 2
        job = await queue.dequeue()
        assert job.priority == "medium"

        clock.value += 45
        assert tracker.active_users() == ["bob"]
        assert await tracker.scan() == 1
        assert ("acme", "orders") not in tracker.activity
