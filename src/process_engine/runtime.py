"""
Service assembly

Builds the store, engine, scheduler, webhook dispatcher, cache and prefetch
pool from EngineSettings. The API lifespan and the CLI commands share it.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

from .cache import (
    ActivityTracker, HttpFetcher, InMemoryPrefetchQueue, MultiTierCache, PrefetchQueue,
    PrefetchWorkerPool, RedisPrefetchQueue, create_cache_backend,
)
from .config import EngineSettings
from .core import ExecutionWorker, ProcessEngine
from .integrations import (
    EventBus, HttpNotifier, HttpxClient, JWTTokenValidator, LowCodeCRUD, TokenValidator,
)
from .monitoring.metrics import MetricsRecorder
from .scheduling import CronScheduler
from .storage import StateStore
from .storage.sqlalchemy_repository import DatabaseManager, create_sql_store
from .webhooks import WebhookDispatcher


logger = logging.getLogger(__name__)


@dataclass
class EngineRuntime:
    """Every long-lived service of one process"""
    settings: EngineSettings
    store: StateStore
    engine: ProcessEngine
    scheduler: CronScheduler
    dispatcher: WebhookDispatcher
    worker: ExecutionWorker
    cache: MultiTierCache
    prefetch_queue: PrefetchQueue
    prefetch_pool: PrefetchWorkerPool
    activity: ActivityTracker
    metrics: MetricsRecorder
    event_bus: EventBus
    token_validator: Optional[TokenValidator] = None
    db_manager: Optional[DatabaseManager] = None

    async def close(self):
        self.worker.stop()
        self.prefetch_pool.stop()
        await self.scheduler.stop()
        await self.engine.shutdown()
        await self.cache.close()
        if self.db_manager is not None:
            await self.db_manager.close()
        logger.info("Runtime closed")


def create_runtime(settings: EngineSettings, store: StateStore,
                   crud: Optional[LowCodeCRUD] = None,
                   token_validator: Optional[TokenValidator] = None,
                   db_manager: Optional[DatabaseManager] = None,
                   **engine_options: Any) -> EngineRuntime:
    """Wire services around an already opened store"""
    metrics = engine_options.pop("metrics", None) or MetricsRecorder()
    event_bus = engine_options.pop("event_bus", None) or EventBus()
    http = engine_options.pop("http", None) or HttpxClient()

    cache = MultiTierCache(
        create_cache_backend(settings.redis_url),
        hot_ttl_seconds=settings.cache_hot_ttl_seconds,
        warm_ttl_seconds=settings.cache_warm_ttl_seconds,
        metrics=metrics,
    )
    if settings.redis_url:
        prefetch_queue: PrefetchQueue = RedisPrefetchQueue.from_url(settings.redis_url)
    else:
        prefetch_queue = InMemoryPrefetchQueue()
    activity = ActivityTracker(prefetch_queue)

    notifier = engine_options.pop("notifier", None)
    if notifier is None and settings.notifier_url:
        notifier = HttpNotifier(settings.notifier_url, http=http)

    engine = ProcessEngine(
        store,
        settings=settings,
        http=http,
        notifier=notifier,
        crud=crud,
        cache=cache,
        activity=activity,
        event_bus=event_bus,
        metrics=metrics,
        **engine_options,
    )
    if token_validator is None and settings.jwt_secret:
        token_validator = JWTTokenValidator(settings.jwt_secret, settings.jwt_algorithm)

    return EngineRuntime(
        settings=settings,
        store=store,
        engine=engine,
        scheduler=CronScheduler(store, engine, tick_interval=settings.scheduler_tick_interval,
                               clock=engine.clock),
        dispatcher=WebhookDispatcher(
            store, engine,
            rate_limit_max=settings.webhook_rate_limit_max,
            rate_limit_window_ms=settings.webhook_rate_limit_window_ms,
            metrics=metrics,
        ),
        worker=ExecutionWorker(engine, concurrency=settings.worker_concurrency,
                               poll_interval=settings.worker_poll_interval, clock=engine.clock),
        cache=cache,
        prefetch_queue=prefetch_queue,
        prefetch_pool=PrefetchWorkerPool(prefetch_queue, cache, HttpFetcher(http),
                                         concurrency=settings.prefetch_concurrency, metrics=metrics),
        activity=activity,
        metrics=metrics,
        event_bus=event_bus,
        token_validator=token_validator,
        db_manager=db_manager,
    )


async def open_runtime(settings: Optional[EngineSettings] = None,
                       create_schema: bool = False, **options: Any) -> EngineRuntime:
    """Connect to the configured database and build the runtime"""
    settings = settings or EngineSettings.from_env()
    db_manager = DatabaseManager(settings.database_url)
    await db_manager.initialize(create_schema=create_schema)
    logger.info(f"Connected to database {db_manager.engine.url.render_as_string(hide_password=True)}")
    runtime = create_runtime(settings, create_sql_store(db_manager), db_manager=db_manager, **options)
    await runtime.engine.start()
    return runtime
