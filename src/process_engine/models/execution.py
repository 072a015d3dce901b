"""
Execution model
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List
from enum import Enum
from datetime import datetime

from ..exceptions import StateTransitionError, error_kind
from .common import utcnow, new_id, to_iso, from_iso
from .workflow import TriggerKind


class ExecutionStatus(Enum):
    """Execution status"""
    PENDING = "pending"
    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    WAITING_TIMER = "waiting_timer"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_waiting(self) -> bool:
        return self in (ExecutionStatus.WAITING_APPROVAL, ExecutionStatus.WAITING_TIMER)


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
})

LEGAL_TRANSITIONS = {
    ExecutionStatus.PENDING: {
        ExecutionStatus.RUNNING,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.FAILED,
    },
    ExecutionStatus.RUNNING: {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.WAITING_APPROVAL,
        ExecutionStatus.WAITING_TIMER,
    },
    ExecutionStatus.WAITING_APPROVAL: {
        ExecutionStatus.RUNNING,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
    ExecutionStatus.WAITING_TIMER: {
        ExecutionStatus.RUNNING,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
    ExecutionStatus.COMPLETED: set(),
    ExecutionStatus.FAILED: set(),
    ExecutionStatus.CANCELLED: set(),
}


def is_legal_transition(current: ExecutionStatus, target: ExecutionStatus) -> bool:
    """Staying in the same status is always allowed"""
    return current == target or target in LEGAL_TRANSITIONS[current]


class LogLevel(Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class ExecutionContext:
    """Mutable state carried between steps"""
    variables: Dict[str, Any] = field(default_factory=dict)
    flags: Dict[str, Any] = field(default_factory=dict)
    pending_approvals: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    approvals: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    notifications: List[Dict[str, Any]] = field(default_factory=list)
    # stepId -> {"wake_at": iso} or {"child_execution_id": id}
    timers: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    children: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    start_time_ms: int = 0

    def get_variable(self, key: str, default: Any = None) -> Any:
        return self.variables.get(key, default)

    def set_variable(self, key: str, value: Any):
        self.variables[key] = value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variables": self.variables,
            "flags": self.flags,
            "pending_approvals": self.pending_approvals,
            "approvals": self.approvals,
            "notifications": self.notifications,
            "timers": self.timers,
            "children": self.children,
            "start_time_ms": self.start_time_ms,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ExecutionContext":
        data = data or {}
        return cls(
            variables=dict(data.get("variables") or {}),
            flags=dict(data.get("flags") or {}),
            pending_approvals=dict(data.get("pending_approvals") or {}),
            approvals=dict(data.get("approvals") or {}),
            notifications=list(data.get("notifications") or []),
            timers=dict(data.get("timers") or {}),
            children=dict(data.get("children") or {}),
            start_time_ms=int(data.get("start_time_ms") or 0),
        )


@dataclass
class StepOutcome:
    """Normalized result of running one step"""
    success: bool
    data: Any = None
    error: Optional[Dict[str, Any]] = None
    should_pause: bool = False
    wait_status: Optional[ExecutionStatus] = None
    next_step_override: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, next_step_override: Optional[str] = None) -> "StepOutcome":
        return cls(success=True, data=data, next_step_override=next_step_override)

    @classmethod
    def failed(cls, code: str, message: str) -> "StepOutcome":
        return cls(success=False, error={"code": code, "message": message})

    @classmethod
    def from_error(cls, exc: BaseException) -> "StepOutcome":
        return cls.failed(error_kind(exc), str(exc) or type(exc).__name__)

    @classmethod
    def paused(cls, status: ExecutionStatus, data: Any = None) -> "StepOutcome":
        return cls(success=True, data=data, should_pause=True, wait_status=status)

    @property
    def error_code(self) -> Optional[str]:
        return self.error.get("code") if self.error else None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success, "data": self.data}
        if self.error:
            data["error"] = self.error
        if self.should_pause:
            data["should_pause"] = True
        if self.next_step_override:
            data["next_step_override"] = self.next_step_override
        return data


@dataclass
class LogEntry:
    """Append-only execution log row"""
    execution_id: str
    workflow_id: str
    message: str
    level: LogLevel = LogLevel.INFO
    step_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "step_id": self.step_id,
            "level": self.level.value,
            "message": self.message,
            "data": self.data,
            "timestamp": to_iso(self.timestamp),
        }


@dataclass
class Execution:
    """One attempt to run a workflow"""
    id: str = field(default_factory=new_id)
    workflow_id: str = ""
    workflow_version: int = 1
    status: ExecutionStatus = ExecutionStatus.PENDING
    trigger_kind: TriggerKind = TriggerKind.MANUAL
    trigger_data: Dict[str, Any] = field(default_factory=dict)
    input_data: Dict[str, Any] = field(default_factory=dict)
    context: ExecutionContext = field(default_factory=ExecutionContext)
    current_step_id: Optional[str] = None
    completed_step_ids: List[str] = field(default_factory=list)
    failed_step_ids: List[str] = field(default_factory=list)
    step_results: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    retry_count: int = 0
    step_retries: Dict[str, int] = field(default_factory=dict)
    iteration_count: int = 0
    priority: int = 5
    initiator: Optional[str] = None
    parent_execution_id: Optional[str] = None
    labels: List[str] = field(default_factory=list)
    dry_run: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error: Optional[Dict[str, Any]] = None
    cancelled_by: Optional[str] = None
    lease_owner: Optional[str] = None
    lease_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def transition(self, target: ExecutionStatus):
        """Move to ``target`` or raise if the edge is illegal"""
        if not is_legal_transition(self.status, target):
            raise StateTransitionError(self.status.value, target.value)
        self.status = target
        self.updated_at = utcnow()

    def start(self):
        """Enter running from pending or a waiting status"""
        self.transition(ExecutionStatus.RUNNING)
        if self.started_at is None:
            self.started_at = self.updated_at

    def complete(self):
        self.transition(ExecutionStatus.COMPLETED)
        self._finish()

    def fail(self, error: Dict[str, Any]):
        self.transition(ExecutionStatus.FAILED)
        self.error = error
        self._finish()

    def cancel(self, user_id: Optional[str] = None):
        self.transition(ExecutionStatus.CANCELLED)
        self.cancelled_by = user_id
        self._finish()

    def pause(self, status: ExecutionStatus):
        if not status.is_waiting:
            raise StateTransitionError(self.status.value, status.value, "not a waiting status")
        self.transition(status)

    def _finish(self):
        self.completed_at = self.updated_at
        if self.started_at:
            elapsed = (self.completed_at - self.started_at).total_seconds() * 1000
            self.duration_ms = max(1, int(elapsed))
        else:
            self.duration_ms = 0

    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def record_success(self, step_id: str, result: Dict[str, Any]):
        """Latest outcome wins so the completed and failed lists stay disjoint"""
        if step_id in self.failed_step_ids:
            self.failed_step_ids.remove(step_id)
        if step_id not in self.completed_step_ids:
            self.completed_step_ids.append(step_id)
        self.step_results[step_id] = result

    def record_failure(self, step_id: str, result: Dict[str, Any]):
        if step_id in self.completed_step_ids:
            self.completed_step_ids.remove(step_id)
        if step_id not in self.failed_step_ids:
            self.failed_step_ids.append(step_id)
        self.step_results[step_id] = result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "workflow_version": self.workflow_version,
            "status": self.status.value,
            "trigger_kind": self.trigger_kind.value,
            "trigger_data": self.trigger_data,
            "input_data": self.input_data,
            "context": self.context.to_dict(),
            "current_step_id": self.current_step_id,
            "completed_step_ids": list(self.completed_step_ids),
            "failed_step_ids": list(self.failed_step_ids),
            "step_results": self.step_results,
            "retry_count": self.retry_count,
            "step_retries": dict(self.step_retries),
            "iteration_count": self.iteration_count,
            "priority": self.priority,
            "initiator": self.initiator,
            "parent_execution_id": self.parent_execution_id,
            "labels": list(self.labels),
            "dry_run": self.dry_run,
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
            "duration_ms": self.duration_ms,
            "error": self.error,
            "cancelled_by": self.cancelled_by,
            "lease_owner": self.lease_owner,
            "lease_until": to_iso(self.lease_until),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Execution":
        return cls(
            id=data["id"],
            workflow_id=data["workflow_id"],
            workflow_version=int(data.get("workflow_version", 1)),
            status=ExecutionStatus(data["status"]),
            trigger_kind=TriggerKind(data.get("trigger_kind", TriggerKind.MANUAL.value)),
            trigger_data=dict(data.get("trigger_data") or {}),
            input_data=dict(data.get("input_data") or {}),
            context=ExecutionContext.from_dict(data.get("context")),
            current_step_id=data.get("current_step_id"),
            completed_step_ids=list(data.get("completed_step_ids") or []),
            failed_step_ids=list(data.get("failed_step_ids") or []),
            step_results=dict(data.get("step_results") or {}),
            retry_count=int(data.get("retry_count") or 0),
            step_retries=dict(data.get("step_retries") or {}),
            iteration_count=int(data.get("iteration_count") or 0),
            priority=int(data.get("priority", 5)),
            initiator=data.get("initiator"),
            parent_execution_id=data.get("parent_execution_id"),
            labels=list(data.get("labels") or []),
            dry_run=bool(data.get("dry_run", False)),
            started_at=from_iso(data.get("started_at")),
            completed_at=from_iso(data.get("completed_at")),
            duration_ms=data.get("duration_ms"),
            error=data.get("error"),
            cancelled_by=data.get("cancelled_by"),
            lease_owner=data.get("lease_owner"),
            lease_until=from_iso(data.get("lease_until")),
            created_at=from_iso(data.get("created_at")) or utcnow(),
            updated_at=from_iso(data.get("updated_at")) or utcnow(),
        )
