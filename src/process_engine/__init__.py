"""
Low-code process engine

Workflow execution with approvals, timers, sub-workflows, cron schedules and
signed webhooks. Script workers import this package, so it stays light; the
engine itself lives in ``process_engine.core`` and the service assembly in
``process_engine.runtime``.
"""

__version__ = "1.0.0"

from .exceptions import EngineError
from .models import Workflow, Step, StepKind, Execution, ExecutionStatus

__all__ = [
    "__version__",
    "EngineError",
    "Workflow",
    "Step",
    "StepKind",
    "Execution",
    "ExecutionStatus",
]
