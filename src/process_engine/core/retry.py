"""
Retry with exponential backoff and per-target circuit breakers
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from ..exceptions import (
    CircuitOpenError, Conflict, RateLimited, StepTimeoutError, UpstreamError,
)

logger = logging.getLogger(__name__)


def default_retry_on(error: BaseException) -> bool:
    """Retry transient upstream failures, timeouts and store conflicts"""
    if isinstance(error, CircuitOpenError):
        return False
    return isinstance(error, (UpstreamError, StepTimeoutError, RateLimited, Conflict,
                              asyncio.TimeoutError, ConnectionError))


@dataclass
class RetryPolicy:
    """Backoff policy for executeWithRetry"""
    max_attempts: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    jitter: bool = True
    retry_on: Callable[[BaseException], bool] = field(default=default_retry_on)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RetryPolicy":
        data = data or {}
        return cls(
            max_attempts=int(data.get("maxAttempts", 3)),
            initial_delay_ms=int(data.get("initialDelayMs", 1000)),
            max_delay_ms=int(data.get("maxDelayMs", 30000)),
            backoff_multiplier=float(data.get("backoffMultiplier", 2.0)),
            jitter=bool(data.get("jitter", True)),
        )

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (0-based)"""
        delay = self.initial_delay_ms * (self.backoff_multiplier ** attempt)
        delay = min(delay, self.max_delay_ms)
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)
        return delay / 1000.0


async def execute_with_retry(
    fn: Callable[[], Awaitable[Any]],
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> Any:
    """Call ``fn`` until it succeeds, the policy gives up, or an error is not retryable"""
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as error:
            attempt += 1
            if attempt >= policy.max_attempts or not policy.retry_on(error):
                raise
            delay = policy.delay_for(attempt - 1)
            logger.info(
                f"Retrying after {delay:.3f}s (attempt {attempt + 1}/{policy.max_attempts})",
                extra={"errorKind": getattr(error, "kind", type(error).__name__)},
            )
            if on_retry:
                on_retry(attempt, error)
            if delay > 0:
                await sleep(delay)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_ms: int = 30000
    reset_timeout_ms: int = 60000


class CircuitBreaker:
    """Three-state breaker guarding one dependency"""

    def __init__(self, name: str, config: Optional[CircuitBreakerConfig] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at: Optional[float] = None
        self._lock = asyncio.Lock()

    async def call(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``fn`` through the breaker, racing it against the call timeout"""
        async with self._lock:
            if self.state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    self._transition(CircuitState.HALF_OPEN)
                else:
                    raise CircuitOpenError(self.name)
        try:
            result = await asyncio.wait_for(fn(), timeout=self.config.timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            await self._on_failure()
            raise StepTimeoutError(f"Call to '{self.name}' exceeded {self.config.timeout_ms} ms")
        except Exception:
            await self._on_failure()
            raise
        await self._on_success()
        return result

    def _should_attempt_reset(self) -> bool:
        if self.opened_at is None:
            return True
        return (self.clock() - self.opened_at) * 1000 >= self.config.reset_timeout_ms

    def _transition(self, state: CircuitState):
        if state != self.state:
            logger.warning(f"Circuit breaker '{self.name}' {self.state.value} -> {state.value}")
        self.state = state
        if state == CircuitState.OPEN:
            self.opened_at = self.clock()
            self.success_count = 0
        elif state == CircuitState.HALF_OPEN:
            self.success_count = 0
        else:
            self.failure_count = 0
            self.success_count = 0
            self.opened_at = None

    async def _on_success(self):
        async with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.config.success_threshold:
                    self._transition(CircuitState.CLOSED)
            else:
                self.failure_count = 0

    async def _on_failure(self):
        async with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
                return
            self.failure_count += 1
            if self.failure_count >= self.config.failure_threshold:
                self._transition(CircuitState.OPEN)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
        }


class CircuitBreakerRegistry:
    """Lazily creates one breaker per target"""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or CircuitBreakerConfig()
        self.clock = clock
        self.breakers: Dict[str, CircuitBreaker] = {}

    def get(self, target: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        breaker = self.breakers.get(target)
        if breaker is None:
            breaker = CircuitBreaker(target, config or self.config, clock=self.clock)
            self.breakers[target] = breaker
        return breaker

    async def call(self, target: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        return await self.get(target).call(fn)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.snapshot() for name, breaker in self.breakers.items()}


def store_conflict_policy() -> RetryPolicy:
    """Short backoff for external mutations racing a concurrent writer"""
    return RetryPolicy(
        max_attempts=3,
        initial_delay_ms=20,
        max_delay_ms=200,
        retry_on=lambda error: type(error) is Conflict,
    )
