"""
Workflow definition model
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Union
from enum import Enum
from datetime import datetime

from .common import utcnow, new_id, to_iso, from_iso


class StepKind(Enum):
    """Step kinds understood by the executor"""
    TRIGGER = "trigger"
    ACTION = "action"
    CONDITION = "condition"
    SCRIPT = "script"
    DATA_TRANSFORM = "dataTransform"
    API_CALL = "apiCall"
    LOOP = "loop"
    SWITCH = "switch"
    WAIT = "wait"
    PARALLEL = "parallel"
    SUBWORKFLOW = "subworkflow"
    APPROVAL = "approval"
    NOTIFICATION = "notification"
    CRUD_CREATE = "crud.create"
    CRUD_READ = "crud.read"
    CRUD_UPDATE = "crud.update"
    CRUD_DELETE = "crud.delete"
    CRUD_QUERY = "crud.query"
    CRUD_FORMULA = "crud.formula"

    @property
    def is_crud(self) -> bool:
        return self.value.startswith("crud.")

    @classmethod
    def values(cls) -> List[str]:
        return [kind.value for kind in cls]


class WorkflowStatus(Enum):
    """Workflow lifecycle status"""
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class TriggerKind(Enum):
    """Cause that created an execution"""
    MANUAL = "manual"
    API = "api"
    CRON = "cron"
    WEBHOOK = "webhook"
    SUBWORKFLOW = "subworkflow"
    RETRY = "retry"
    TEST = "test"


# nextSteps: a single id, an ordered list, or {predicate: id, "default": id}
NextSteps = Union[None, str, List[str], Dict[str, str]]


@dataclass
class ErrorHandler:
    """Per-step error policy"""
    retry: Optional[bool] = None
    skip: bool = False
    fallback: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ErrorHandler"]:
        if not data:
            return None
        return cls(
            retry=data.get("retry"),
            skip=bool(data.get("skip", False)),
            fallback=data.get("fallback"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"skip": self.skip}
        if self.retry is not None:
            data["retry"] = self.retry
        if self.fallback:
            data["fallback"] = self.fallback
        return data


@dataclass
class RetryConfig:
    """Interpreter-level retry policy for a step"""
    max_retries: int = 0
    retry_delay_ms: int = 1000

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["RetryConfig"]:
        if not data:
            return None
        return cls(
            max_retries=int(data.get("maxRetries", 0)),
            retry_delay_ms=int(data.get("retryDelayMs", data.get("retryDelay", 1000))),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"maxRetries": self.max_retries, "retryDelayMs": self.retry_delay_ms}


@dataclass
class Step:
    """Node of the step graph"""
    id: str
    kind: StepKind
    name: str = ""
    enabled: bool = True
    config: Dict[str, Any] = field(default_factory=dict)
    next_steps: NextSteps = None
    error_handler: Optional[ErrorHandler] = None
    retry_config: Optional[RetryConfig] = None
    timeout_ms: Optional[int] = None
    outputs: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        return cls(
            id=data["id"],
            kind=StepKind(data.get("kind") or data.get("type")),
            name=data.get("name", ""),
            enabled=data.get("enabled", True),
            config=dict(data.get("config") or {}),
            next_steps=data.get("nextSteps"),
            error_handler=ErrorHandler.from_dict(data.get("errorHandler")),
            retry_config=RetryConfig.from_dict(data.get("retryConfig")),
            timeout_ms=data.get("timeoutMs"),
            outputs=dict(data.get("outputs") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "name": self.name,
            "enabled": self.enabled,
            "config": self.config,
            "nextSteps": self.next_steps,
            "outputs": self.outputs,
        }
        if self.error_handler:
            data["errorHandler"] = self.error_handler.to_dict()
        if self.retry_config:
            data["retryConfig"] = self.retry_config.to_dict()
        if self.timeout_ms is not None:
            data["timeoutMs"] = self.timeout_ms
        return data

    def successor_ids(self) -> List[str]:
        """All step ids named by nextSteps"""
        if not self.next_steps:
            return []
        if isinstance(self.next_steps, str):
            return [self.next_steps]
        if isinstance(self.next_steps, list):
            return list(self.next_steps)
        return list(self.next_steps.values())

    def referenced_step_ids(self) -> List[str]:
        """Successors plus step ids referenced from config and the error handler"""
        refs = self.successor_ids()
        if self.error_handler and self.error_handler.fallback:
            refs.append(self.error_handler.fallback)
        if self.kind == StepKind.LOOP:
            refs.extend(self.config.get("steps") or [])
        elif self.kind == StepKind.PARALLEL:
            for branch in self.config.get("branches") or self.config.get("steps") or []:
                refs.extend(branch if isinstance(branch, list) else [branch])
        elif self.kind == StepKind.SWITCH:
            refs.extend(
                case["nextStep"] for case in self.config.get("cases") or []
                if isinstance(case, dict) and case.get("nextStep")
            )
            if self.config.get("default"):
                refs.append(self.config["default"])
        return refs


@dataclass
class WorkflowSettings:
    """Execution limits"""
    max_iterations: int = 1000
    max_execution_time_ms: int = 300000

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "WorkflowSettings":
        data = data or {}
        return cls(
            max_iterations=int(data.get("maxIterations", 1000)),
            max_execution_time_ms=int(data.get("maxExecutionTimeMs", 300000)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "maxIterations": self.max_iterations,
            "maxExecutionTimeMs": self.max_execution_time_ms,
        }


@dataclass
class WorkflowStats:
    """Aggregated execution statistics"""
    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    average_duration_ms: float = 0.0
    last_executed_at: Optional[datetime] = None

    def record(self, success: bool, duration_ms: float, at: datetime) -> None:
        """Fold one terminal execution into the running figures"""
        self.execution_count += 1
        if success:
            self.success_count += 1
        else:
            self.failure_count += 1
        self.average_duration_ms += (duration_ms - self.average_duration_ms) / self.execution_count
        self.last_executed_at = at

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "WorkflowStats":
        data = data or {}
        return cls(
            execution_count=data.get("execution_count", 0),
            success_count=data.get("success_count", 0),
            failure_count=data.get("failure_count", 0),
            average_duration_ms=data.get("average_duration_ms", 0.0),
            last_executed_at=from_iso(data.get("last_executed_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_count": self.execution_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "average_duration_ms": self.average_duration_ms,
            "last_executed_at": to_iso(self.last_executed_at),
        }


@dataclass
class Workflow:
    """Versioned workflow definition"""
    id: str = field(default_factory=new_id)
    version: int = 1
    name: str = ""
    description: str = ""
    status: WorkflowStatus = WorkflowStatus.DRAFT
    trigger_kind: TriggerKind = TriggerKind.MANUAL
    steps: List[Step] = field(default_factory=list)
    variables: Dict[str, Any] = field(default_factory=dict)
    settings: WorkflowSettings = field(default_factory=WorkflowSettings)
    stats: WorkflowStats = field(default_factory=WorkflowStats)
    owner_id: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def get_step(self, step_id: Optional[str]) -> Optional[Step]:
        """Look up a step by id"""
        if step_id is None:
            return None
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def entry_step_id(self) -> Optional[str]:
        """The trigger step, else the first declared step"""
        for step in self.steps:
            if step.kind == StepKind.TRIGGER:
                return step.id
        return self.steps[0].id if self.steps else None

    @property
    def is_active(self) -> bool:
        return self.status == WorkflowStatus.ACTIVE

    def definition(self) -> Dict[str, Any]:
        """Portable definition without identity or statistics"""
        return {
            "name": self.name,
            "description": self.description,
            "triggerKind": self.trigger_kind.value,
            "steps": [step.to_dict() for step in self.steps],
            "variables": self.variables,
            "settings": self.settings.to_dict(),
            "tags": list(self.tags),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.definition()
        data.update({
            "id": self.id,
            "version": self.version,
            "status": self.status.value,
            "stats": self.stats.to_dict(),
            "ownerId": self.owner_id,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Workflow":
        workflow = cls(
            name=data.get("name", ""),
            description=data.get("description", ""),
            status=WorkflowStatus(data.get("status", WorkflowStatus.DRAFT.value)),
            trigger_kind=TriggerKind(data.get("triggerKind", TriggerKind.MANUAL.value)),
            steps=[Step.from_dict(step) for step in data.get("steps") or []],
            variables=dict(data.get("variables") or {}),
            settings=WorkflowSettings.from_dict(data.get("settings")),
            stats=WorkflowStats.from_dict(data.get("stats")),
            owner_id=data.get("ownerId"),
            tags=list(data.get("tags") or []),
        )
        if data.get("id"):
            workflow.id = data["id"]
        if data.get("version"):
            workflow.version = int(data["version"])
        if data.get("createdAt"):
            workflow.created_at = from_iso(data["createdAt"])
        if data.get("updatedAt"):
            workflow.updated_at = from_iso(data["updatedAt"])
        return workflow
