"""
Two-tier cache: hot entries live briefly, warm ones longer
"""
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..monitoring.metrics import MetricsRecorder
from .backends import CacheBackend, MemoryCacheBackend


logger = logging.getLogger(__name__)

DEFAULT_HOT_TTL_SECONDS = 300
DEFAULT_WARM_TTL_SECONDS = 900


class CacheTier(Enum):
    HOT = "hot"
    WARM = "warm"


class MultiTierCache:
    """Keyed by (tenant, resource key); reads check hot then warm"""

    def __init__(self, backend: Optional[CacheBackend] = None,
                 hot_ttl_seconds: int = DEFAULT_HOT_TTL_SECONDS,
                 warm_ttl_seconds: int = DEFAULT_WARM_TTL_SECONDS,
                 metrics: Optional[MetricsRecorder] = None):
        self.backend = backend or MemoryCacheBackend()
        self.ttls = {CacheTier.HOT: hot_ttl_seconds, CacheTier.WARM: warm_ttl_seconds}
        self.metrics = metrics or MetricsRecorder()

    @staticmethod
    def make_key(tier: CacheTier, tenant: str, key: str) -> str:
        return f"{tier.value}:{tenant}:{key}"

    async def get(self, tenant: str, key: str) -> Optional[Any]:
        for tier in (CacheTier.HOT, CacheTier.WARM):
            value = await self.backend.get(self.make_key(tier, tenant, key))
            if value is not None:
                self.metrics.inc("cache_hits_total", {"tier": tier.value})
                return value
            self.metrics.inc("cache_misses_total", {"tier": tier.value})
        return None

    async def set(self, tier: CacheTier, tenant: str, key: str, value: Any) -> None:
        await self.backend.set(self.make_key(tier, tenant, key), value, self.ttls[tier])

    async def invalidate(self, tenant: str, key: str) -> None:
        for tier in CacheTier:
            await self.backend.delete(self.make_key(tier, tenant, key))
        logger.debug(f"Invalidated {tenant}:{key}")

    async def get_or_fetch(self, tenant: str, key: str, fetch: Callable[[], Awaitable[Any]],
                           priority: str = "medium") -> Any:
        """Read through; a miss is fetched and written to the tier the priority selects"""
        value = await self.get(tenant, key)
        if value is not None:
            return value
        started = time.monotonic()
        value = await fetch()
        self.metrics.observe("cache_fetch_ms", (time.monotonic() - started) * 1000)
        if value is not None:
            tier = CacheTier.HOT if priority == "high" else CacheTier.WARM
            await self.set(tier, tenant, key, value)
        return value

    async def close(self) -> None:
        await self.backend.close()
