"""
Environment-driven settings
"""
import logging
import os
import socket
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dotenv import load_dotenv

from .evaluator import Limits

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

RETENTION_TABLES = ("executions", "logs", "audit")


def _int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _list(name: str) -> List[str]:
    value = os.getenv(name) or ""
    return [item.strip() for item in value.split(",") if item.strip()]


def _database_url() -> str:
    url = os.getenv("DATABASE_URL") or os.getenv("DB_URL")
    if url:
        return url
    host = os.getenv("DB_HOST")
    if not host:
        return "sqlite+aiosqlite:///./process_engine.db"
    driver = os.getenv("DB_DRIVER", "postgresql+asyncpg")
    user = os.getenv("DB_USER", "postgres")
    password = os.getenv("DB_PASSWORD", "")
    port = os.getenv("DB_PORT", "5432")
    name = os.getenv("DB_NAME", "process_engine")
    credentials = f"{user}:{password}" if password else user
    return f"{driver}://{credentials}@{host}:{port}/{name}"


def _redis_url() -> Optional[str]:
    url = os.getenv("REDIS_URL")
    if url:
        return url
    host = os.getenv("REDIS_HOST")
    if not host:
        return None
    port = os.getenv("REDIS_PORT", "6379")
    db = os.getenv("REDIS_DB", "0")
    password = os.getenv("REDIS_PASSWORD")
    auth = f":{password}@" if password else ""
    return f"redis://{auth}{host}:{port}/{db}"


@dataclass
class EngineSettings:
    """Runtime configuration for workers, scheduler and API"""
    database_url: str = "sqlite+aiosqlite:///./process_engine.db"
    redis_url: Optional[str] = None
    worker_id: str = field(default_factory=lambda: f"{socket.gethostname()}:{os.getpid()}")
    worker_concurrency: int = 4
    worker_poll_interval: float = 1.0
    lease_ttl_seconds: int = 30
    scheduler_tick_interval: float = 1.0
    evaluator_timeout_ms: int = 5000
    evaluator_memory_mb: int = 128
    evaluator_isolation: str = "process"
    webhook_rate_limit_max: int = 60
    webhook_rate_limit_window_ms: int = 60000
    # peers whose X-Forwarded-For header is believed
    trusted_proxies: List[str] = field(default_factory=list)
    retention_days: Dict[str, int] = field(
        default_factory=lambda: {table: 90 for table in RETENTION_TABLES}
    )
    cache_hot_ttl_seconds: int = 300
    cache_warm_ttl_seconds: int = 900
    prefetch_concurrency: int = 2
    notifier_url: Optional[str] = None
    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "EngineSettings":
        """Build settings from the process environment (and a .env file)"""
        if dotenv:
            load_dotenv()
        default_retention = _int("RETENTION_DAYS", 90)
        retention = {
            table: _int(f"RETENTION_{table.upper()}_DAYS", default_retention)
            for table in RETENTION_TABLES
        }
        settings = cls(
            database_url=_database_url(),
            redis_url=_redis_url(),
            worker_concurrency=_int("ENGINE_WORKER_CONCURRENCY", 4),
            worker_poll_interval=_float("ENGINE_WORKER_POLL_INTERVAL", 1.0),
            lease_ttl_seconds=_int("ENGINE_LEASE_TTL_SECONDS", 30),
            # ticks never exceed one second
            scheduler_tick_interval=min(_float("SCHEDULER_TICK_INTERVAL", 1.0), 1.0),
            evaluator_timeout_ms=_int("EVALUATOR_TIMEOUT_MS", 5000),
            evaluator_memory_mb=_int("EVALUATOR_MEMORY_MB", 128),
            evaluator_isolation=os.getenv("EVALUATOR_ISOLATION", "process"),
            webhook_rate_limit_max=_int("WEBHOOK_RATE_LIMIT_MAX", 60),
            webhook_rate_limit_window_ms=_int("WEBHOOK_RATE_LIMIT_WINDOW_MS", 60000),
            trusted_proxies=_list("TRUSTED_PROXIES"),
            retention_days=retention,
            cache_hot_ttl_seconds=_int("CACHE_HOT_TTL_SECONDS", 300),
            cache_warm_ttl_seconds=_int("CACHE_WARM_TTL_SECONDS", 900),
            prefetch_concurrency=_int("PREFETCH_CONCURRENCY", 2),
            notifier_url=os.getenv("NOTIFIER_URL") or None,
            jwt_secret=os.getenv("JWT_SECRET") or None,
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=_int("API_PORT", 8000),
        )
        worker_id = os.getenv("ENGINE_WORKER_ID")
        if worker_id:
            settings.worker_id = worker_id
        return settings

    def evaluator_limits(self) -> Limits:
        return Limits(timeout_ms=self.evaluator_timeout_ms, memory_mb=self.evaluator_memory_mb)


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for CLI entry points"""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
