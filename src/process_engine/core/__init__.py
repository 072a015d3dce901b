"""
Execution core
"""
from .retry import (
    RetryPolicy, execute_with_retry, CircuitBreaker, CircuitBreakerConfig,
    CircuitBreakerRegistry, CircuitState,
)
from .resolver import ParameterResolver
from .steps import StepServices, StepRun
from .executor import StepExecutor
from .interpreter import GraphInterpreter
from .waits import WaitManager
from .parser import WorkflowParser, WORKFLOW_SCHEMA
from .engine import ProcessEngine
from .worker import ExecutionWorker

__all__ = [
    "RetryPolicy", "execute_with_retry", "CircuitBreaker", "CircuitBreakerConfig",
    "CircuitBreakerRegistry", "CircuitState",
    "ParameterResolver", "StepServices", "StepRun", "StepExecutor",
    "GraphInterpreter", "WaitManager", "WorkflowParser", "WORKFLOW_SCHEMA",
    "ProcessEngine", "ExecutionWorker",
]
