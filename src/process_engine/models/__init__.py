"""
Data model
"""
from .common import utcnow, new_id, to_iso, from_iso
from .workflow import (
    Workflow, Step, StepKind, WorkflowStatus, TriggerKind,
    ErrorHandler, RetryConfig, WorkflowSettings, WorkflowStats,
)
from .execution import (
    Execution, ExecutionStatus, ExecutionContext, StepOutcome, LogEntry, LogLevel,
    LEGAL_TRANSITIONS, TERMINAL_STATUSES, is_legal_transition,
)
from .trigger import Schedule, WebhookConfig
from .audit import AuditEntry, AuditEventKind

__all__ = [
    "utcnow", "new_id", "to_iso", "from_iso",
    "Workflow", "Step", "StepKind", "WorkflowStatus", "TriggerKind",
    "ErrorHandler", "RetryConfig", "WorkflowSettings", "WorkflowStats",
    "Execution", "ExecutionStatus", "ExecutionContext", "StepOutcome", "LogEntry", "LogLevel",
    "LEGAL_TRANSITIONS", "TERMINAL_STATUSES", "is_legal_transition",
    "Schedule", "WebhookConfig",
    "AuditEntry", "AuditEventKind",
]
