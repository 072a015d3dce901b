"""
Prefetch worker pool

Background jobs that fetch upstream resources ahead of use and store them in
the multi-tier cache. Jobs carry a priority and an attempt counter; jobs that
keep failing end up in a dead-letter list that can be inspected and retried.
"""
import asyncio
import heapq
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis

from ..core.retry import RetryPolicy, execute_with_retry
from ..integrations.collaborators import HttpClient
from ..models import new_id
from ..monitoring.metrics import MetricsRecorder
from .tiered import CacheTier, MultiTierCache


logger = logging.getLogger(__name__)

PRIORITY_WEIGHTS = {"high": 3, "medium": 2, "low": 1}
DEFAULT_CAPACITY = 1000


@dataclass
class PrefetchJob:
    """One resource to fetch into the cache"""
    resource_key: str
    tenant: str = "default"
    priority: str = "medium"
    request: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    max_attempts: int = 3
    available_at: float = 0.0
    last_error: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=time.time)

    @property
    def weight(self) -> int:
        return PRIORITY_WEIGHTS.get(self.priority, PRIORITY_WEIGHTS["medium"])

    def __lt__(self, other: "PrefetchJob") -> bool:
        # higher priority first, then oldest
        if self.weight != other.weight:
            return self.weight > other.weight
        return self.created_at < other.created_at

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PrefetchJob":
        return cls(**data)


class PrefetchQueue(ABC):
    """Priority queue of prefetch jobs with a dead-letter list"""

    @abstractmethod
    async def enqueue(self, job: PrefetchJob) -> bool:
        """False when the queue is full"""
        pass

    @abstractmethod
    async def dequeue(self) -> Optional[PrefetchJob]:
        """Highest priority job that is ready now"""
        pass

    @abstractmethod
    async def requeue(self, job: PrefetchJob, delay_seconds: float) -> None:
        pass

    @abstractmethod
    async def ack(self, job: PrefetchJob) -> None:
        pass

    @abstractmethod
    async def dead_letter(self, job: PrefetchJob) -> None:
        pass

    @abstractmethod
    async def dead_letters(self) -> List[PrefetchJob]:
        pass

    @abstractmethod
    async def retry_dead_letter(self, job_id: str) -> bool:
        pass

    @abstractmethod
    async def size(self) -> int:
        pass


class InMemoryPrefetchQueue(PrefetchQueue):

    def __init__(self, capacity: int = DEFAULT_CAPACITY, clock: Callable[[], float] = time.time):
        self.capacity = capacity
        self.clock = clock
        self.ready: List[PrefetchJob] = []
        self.dead: List[PrefetchJob] = []
        self._lock = asyncio.Lock()

    async def enqueue(self, job: PrefetchJob) -> bool:
        async with self._lock:
            if len(self.ready) >= self.capacity:
                return False
            heapq.heappush(self.ready, job)
            return True

    async def dequeue(self) -> Optional[PrefetchJob]:
        async with self._lock:
            now = self.clock()
            deferred = []
            job = None
            while self.ready:
                candidate = heapq.heappop(self.ready)
                if candidate.available_at <= now:
                    job = candidate
                    break
                deferred.append(candidate)
            for item in deferred:
                heapq.heappush(self.ready, item)
            return job

    async def requeue(self, job: PrefetchJob, delay_seconds: float) -> None:
        async with self._lock:
            job.available_at = self.clock() + delay_seconds
            heapq.heappush(self.ready, job)

    async def ack(self, job: PrefetchJob) -> None:
        pass

    async def dead_letter(self, job: PrefetchJob) -> None:
        async with self._lock:
            self.dead.append(job)

    async def dead_letters(self) -> List[PrefetchJob]:
        return list(self.dead)

    async def retry_dead_letter(self, job_id: str) -> bool:
        async with self._lock:
            job = next((j for j in self.dead if j.id == job_id), None)
            if job is None:
                return False
            self.dead.remove(job)
            job.attempts = 0
            job.available_at = 0.0
            job.last_error = None
            heapq.heappush(self.ready, job)
            return True

    async def size(self) -> int:
        return len(self.ready)


class RedisPrefetchQueue(PrefetchQueue):
    """Sorted set of ready job ids (scored by availability), a hash of bodies, a dead-letter list"""

    # ready candidates inspected per dequeue
    SCAN_WINDOW = 50

    def __init__(self, client: redis.Redis, namespace: str = "prefetch",
                 capacity: int = DEFAULT_CAPACITY, clock: Callable[[], float] = time.time):
        self.client = client
        self.capacity = capacity
        self.clock = clock
        self.ready_key = f"{namespace}:ready"
        self.jobs_key = f"{namespace}:jobs"
        self.dead_key = f"{namespace}:dead"

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisPrefetchQueue":
        return cls(redis.from_url(url, encoding="utf-8", decode_responses=True), **kwargs)

    async def enqueue(self, job: PrefetchJob) -> bool:
        if await self.client.zcard(self.ready_key) >= self.capacity:
            return False
        await self.client.hset(self.jobs_key, job.id, json.dumps(job.to_dict()))
        await self.client.zadd(self.ready_key, {job.id: job.available_at})
        return True

    async def dequeue(self) -> Optional[PrefetchJob]:
        ids = await self.client.zrangebyscore(
            self.ready_key, "-inf", self.clock(), start=0, num=self.SCAN_WINDOW
        )
        if not ids:
            return None
        bodies = await self.client.hmget(self.jobs_key, ids)
        candidates = sorted(
            PrefetchJob.from_dict(json.loads(body)) for body in bodies if body is not None
        )
        for job in candidates:
            # ZREM succeeds for exactly one competing worker
            if await self.client.zrem(self.ready_key, job.id):
                return job
        return None

    async def requeue(self, job: PrefetchJob, delay_seconds: float) -> None:
        job.available_at = self.clock() + delay_seconds
        await self.client.hset(self.jobs_key, job.id, json.dumps(job.to_dict()))
        await self.client.zadd(self.ready_key, {job.id: job.available_at})

    async def ack(self, job: PrefetchJob) -> None:
        await self.client.hdel(self.jobs_key, job.id)

    async def dead_letter(self, job: PrefetchJob) -> None:
        await self.client.hdel(self.jobs_key, job.id)
        await self.client.lpush(self.dead_key, json.dumps(job.to_dict()))

    async def dead_letters(self) -> List[PrefetchJob]:
        raw = await self.client.lrange(self.dead_key, 0, -1)
        return [PrefetchJob.from_dict(json.loads(item)) for item in raw]

    async def retry_dead_letter(self, job_id: str) -> bool:
        for item in await self.client.lrange(self.dead_key, 0, -1):
            job = PrefetchJob.from_dict(json.loads(item))
            if job.id != job_id:
                continue
            if not await self.client.lrem(self.dead_key, 1, item):
                return False
            job.attempts = 0
            job.available_at = 0.0
            job.last_error = None
            await self.client.hset(self.jobs_key, job.id, json.dumps(job.to_dict()))
            await self.client.zadd(self.ready_key, {job.id: 0.0})
            return True
        return False

    async def size(self) -> int:
        return await self.client.zcard(self.ready_key)


Fetcher = Callable[[PrefetchJob], Awaitable[Any]]


class HttpFetcher:
    """Replays the HTTP request recorded on the job"""

    def __init__(self, http: HttpClient):
        self.http = http

    async def __call__(self, job: PrefetchJob) -> Any:
        request = job.request
        if not request.get("url"):
            raise ValueError(f"Prefetch job {job.id} has no request url")
        response = await self.http.request(
            request.get("method", "GET"),
            request["url"],
            request.get("headers"),
            request.get("body"),
            request.get("timeoutMs", 30000),
        )
        return {"status_code": response.status_code, "body": response.body}


class PrefetchWorkerPool:
    """Concurrent workers draining a PrefetchQueue into the cache"""

    def __init__(self, queue: PrefetchQueue, cache: MultiTierCache, fetcher: Fetcher,
                 concurrency: int = 2, fetch_policy: Optional[RetryPolicy] = None,
                 backoff: Optional[RetryPolicy] = None, metrics: Optional[MetricsRecorder] = None,
                 poll_interval: float = 0.5, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.queue = queue
        self.cache = cache
        self.fetcher = fetcher
        self.concurrency = max(1, concurrency)
        self.fetch_policy = fetch_policy or RetryPolicy(max_attempts=2, initial_delay_ms=200)
        self.backoff = backoff or RetryPolicy(initial_delay_ms=1000, max_delay_ms=60000, jitter=False)
        self.metrics = metrics or cache.metrics
        self.poll_interval = poll_interval
        self.sleep = sleep
        self._stop = asyncio.Event()

    async def process_one(self) -> bool:
        """Handle one ready job; False when the queue had nothing ready"""
        job = await self.queue.dequeue()
        if job is None:
            return False
        started = time.monotonic()
        try:
            value = await execute_with_retry(lambda: self.fetcher(job), self.fetch_policy,
                                             sleep=self.sleep)
        except Exception as e:
            await self._failed(job, e)
        else:
            tier = CacheTier.HOT if job.priority == "high" else CacheTier.WARM
            await self.cache.set(tier, job.tenant, job.resource_key, value)
            await self.queue.ack(job)
            self.metrics.inc("prefetch_jobs_total", {"outcome": "succeeded"})
        finally:
            self.metrics.observe("prefetch_job_ms", (time.monotonic() - started) * 1000)
        return True

    async def _failed(self, job: PrefetchJob, error: Exception):
        job.attempts += 1
        job.last_error = str(error) or type(error).__name__
        if job.attempts >= job.max_attempts:
            await self.queue.dead_letter(job)
            self.metrics.inc("prefetch_jobs_total", {"outcome": "dead_lettered"})
            logger.error(f"Prefetch job {job.id} for {job.resource_key} dead-lettered "
                         f"after {job.attempts} attempts: {job.last_error}")
            return
        delay = self.backoff.delay_for(job.attempts - 1)
        await self.queue.requeue(job, delay)
        self.metrics.inc("prefetch_jobs_total", {"outcome": "retried"})
        logger.warning(f"Prefetch job {job.id} failed (attempt {job.attempts}/{job.max_attempts}), "
                       f"retrying in {delay:.1f}s: {job.last_error}")

    async def _worker(self, index: int):
        while not self._stop.is_set():
            try:
                processed = await self.process_one()
            except Exception:
                logger.exception(f"Prefetch worker {index} crashed on a job")
                processed = False
            if not processed:
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

    async def run(self):
        self._stop.clear()
        logger.info(f"Prefetch pool started with {self.concurrency} workers")
        await asyncio.gather(*(self._worker(i) for i in range(self.concurrency)))
        logger.info("Prefetch pool stopped")

    def stop(self):
        self._stop.set()


class ActivityTracker:
    """Remembers recently used resources and schedules them for prefetch"""

    def __init__(self, queue: PrefetchQueue, window_seconds: float = 900,
                 clock: Callable[[], float] = time.time):
        self.queue = queue
        self.window_seconds = window_seconds
        self.clock = clock
        # (tenant, resource_key) -> (last seen, user, request)
        self.activity: Dict[Tuple[str, str], Tuple[float, Optional[str], Dict[str, Any]]] = {}

    def record(self, user_id: Optional[str], tenant: str, resource_key: str,
               request: Optional[Dict[str, Any]] = None):
        self.activity[(tenant, resource_key)] = (self.clock(), user_id, dict(request or {}))

    def active_users(self) -> List[str]:
        cutoff = self.clock() - self.window_seconds
        return sorted({user for seen, user, _ in self.activity.values() if seen >= cutoff and user})

    async def scan(self) -> int:
        """Enqueue medium priority jobs for resources used inside the window"""
        cutoff = self.clock() - self.window_seconds
        enqueued = 0
        for (tenant, key), (seen, user, request) in list(self.activity.items()):
            if seen < cutoff:
                del self.activity[(tenant, key)]
                continue
            if not user:
                continue
            job = PrefetchJob(resource_key=key, tenant=tenant, priority="medium", request=request)
            if not await self.queue.enqueue(job):
                logger.warning("Prefetch queue full, activity scan stopped early")
                break
            enqueued += 1
        if enqueued:
            logger.debug(f"Activity scan enqueued {enqueued} prefetch jobs")
        return enqueued

    async def run(self, interval: float, stop: asyncio.Event):
        while not stop.is_set():
            try:
                await self.scan()
            except Exception:
                logger.exception("Activity scan failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
