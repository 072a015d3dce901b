"""
Execution worker: polls the store for runnable executions
"""
import asyncio
import logging
from typing import Callable, Set

from ..models import utcnow
from .engine import ProcessEngine


logger = logging.getLogger(__name__)


class ExecutionWorker:
    """Picks up pending executions and running ones whose lease expired"""

    def __init__(self, engine: ProcessEngine, concurrency: int = 4,
                 poll_interval: float = 1.0, clock: Callable = utcnow):
        self.engine = engine
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self.clock = clock
        self.active: Set[asyncio.Task] = set()
        self._stop = asyncio.Event()

    async def poll_once(self) -> int:
        """Dispatch as many runnable executions as there are free slots"""
        free = self.concurrency - len(self.active)
        if free <= 0:
            return 0
        candidates = await self.engine.store.executions.find_runnable(self.clock(), limit=free * 2)
        dispatched = 0
        for execution_id in candidates:
            if dispatched >= free:
                break
            if self.engine.is_running(execution_id):
                continue
            task = self.engine.dispatch(execution_id)
            self.active.add(task)
            task.add_done_callback(self.active.discard)
            dispatched += 1
        if dispatched:
            logger.debug(f"Dispatched {dispatched} executions")
        return dispatched

    async def run(self):
        self._stop.clear()
        logger.info(f"Execution worker {self.engine.settings.worker_id} started "
                    f"(concurrency={self.concurrency})")
        while not self._stop.is_set():
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Execution poll failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        if self.active:
            await asyncio.gather(*list(self.active), return_exceptions=True)
        logger.info("Execution worker stopped")

    def stop(self):
        self._stop.set()
