"""
Multi-tier cache and prefetch pool
"""
from .backends import CacheBackend, MemoryCacheBackend, RedisCacheBackend, create_cache_backend
from .tiered import CacheTier, MultiTierCache
from .prefetch import (
    PrefetchJob, PrefetchQueue, InMemoryPrefetchQueue, RedisPrefetchQueue,
    PrefetchWorkerPool, HttpFetcher, ActivityTracker,
)

__all__ = [
    "CacheBackend", "MemoryCacheBackend", "RedisCacheBackend", "create_cache_backend",
    "CacheTier", "MultiTierCache",
    "PrefetchJob", "PrefetchQueue", "InMemoryPrefetchQueue", "RedisPrefetchQueue",
    "PrefetchWorkerPool", "HttpFetcher", "ActivityTracker",
]
