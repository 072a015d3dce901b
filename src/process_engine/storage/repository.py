"""
Storage repository interfaces and in-memory implementations
"""
import asyncio
import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from ..exceptions import Conflict, NotFound, StaleLease, StateTransitionError
from ..models import (
    AuditEntry, AuditEventKind, Execution, ExecutionStatus, LogEntry, Schedule,
    WebhookConfig, Workflow, WorkflowStats, WorkflowStatus, is_legal_transition, utcnow,
)

# callback used by ExecutionRepository.mutate; returns log entries to append
Mutation = Callable[[Execution], Optional[List[LogEntry]]]


@dataclass
class ExecutionFilter:
    """Filters accepted by ExecutionRepository.list"""
    workflow_id: Optional[str] = None
    status: Union[None, ExecutionStatus, Sequence[ExecutionStatus]] = None
    labels: List[str] = field(default_factory=list)
    initiator: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    parent_execution_id: Optional[str] = None

    def statuses(self) -> Optional[List[ExecutionStatus]]:
        if self.status is None:
            return None
        if isinstance(self.status, ExecutionStatus):
            return [self.status]
        return list(self.status)

    def matches(self, execution: Execution) -> bool:
        statuses = self.statuses()
        if self.workflow_id and execution.workflow_id != self.workflow_id:
            return False
        if statuses and execution.status not in statuses:
            return False
        if self.labels and not set(self.labels).issubset(execution.labels):
            return False
        if self.initiator and execution.initiator != self.initiator:
            return False
        if self.created_after and execution.created_at < self.created_after:
            return False
        if self.created_before and execution.created_at > self.created_before:
            return False
        if self.parent_execution_id and execution.parent_execution_id != self.parent_execution_id:
            return False
        return True


@dataclass
class AuditFilter:
    kind: Optional[AuditEventKind] = None
    workflow_id: Optional[str] = None
    execution_id: Optional[str] = None
    step_id: Optional[str] = None
    actor: Optional[str] = None

    def matches(self, entry: AuditEntry) -> bool:
        return all((
            self.kind is None or entry.kind == self.kind,
            self.workflow_id is None or entry.workflow_id == self.workflow_id,
            self.execution_id is None or entry.execution_id == self.execution_id,
            self.step_id is None or entry.step_id == self.step_id,
            self.actor is None or entry.actor == self.actor,
        ))


def lease_available(execution: Execution, worker_id: str, now: datetime) -> bool:
    return (
        execution.lease_owner is None
        or execution.lease_owner == worker_id
        or execution.lease_until is None
        or execution.lease_until < now
    )


class WorkflowRepository(ABC):
    """Versioned workflow definitions"""

    @abstractmethod
    async def save(self, workflow: Workflow) -> Workflow:
        """Insert a new (id, version) row"""
        pass

    @abstractmethod
    async def get(self, workflow_id: str, version: Optional[int] = None) -> Optional[Workflow]:
        """Get a specific version, or the latest one"""
        pass

    @abstractmethod
    async def list(self, offset: int = 0, limit: int = 100,
                   filters: Dict[str, Any] = None) -> List[Workflow]:
        """List latest versions"""
        pass

    @abstractmethod
    async def update(self, workflow: Workflow) -> Workflow:
        """Overwrite an existing version in place"""
        pass

    @abstractmethod
    async def delete(self, workflow_id: str) -> bool:
        """Archive every version"""
        pass

    @abstractmethod
    async def record_outcome(self, workflow_id: str, success: bool,
                             duration_ms: float, at: datetime) -> WorkflowStats:
        """Fold a terminal execution into the workflow statistics atomically"""
        pass


class ExecutionRepository(ABC):
    """Execution rows and their append-only logs"""

    @abstractmethod
    async def create(self, execution: Execution, logs: Optional[List[LogEntry]] = None) -> Execution:
        pass

    @abstractmethod
    async def get(self, execution_id: str) -> Optional[Execution]:
        pass

    @abstractmethod
    async def get_status(self, execution_id: str) -> Optional[ExecutionStatus]:
        pass

    @abstractmethod
    async def acquire_lease(self, execution_id: str, worker_id: str,
                            ttl_seconds: float) -> Execution:
        """Claim the execution; raises NotFound or StaleLease"""
        pass

    @abstractmethod
    async def renew_lease(self, execution_id: str, worker_id: str, ttl_seconds: float) -> bool:
        pass

    @abstractmethod
    async def release_lease(self, execution_id: str, worker_id: str) -> None:
        pass

    @abstractmethod
    async def save(self, execution: Execution, worker_id: str,
                   logs: Optional[List[LogEntry]] = None,
                   ttl_seconds: Optional[float] = None) -> Execution:
        """Persist state held under lease; raises StaleLease or StateTransitionError"""
        pass

    @abstractmethod
    async def mutate(self, execution_id: str, mutation: Mutation) -> Execution:
        """Apply an external change (cancel, approve) under the row lock"""
        pass

    @abstractmethod
    async def append_logs(self, logs: List[LogEntry]) -> None:
        pass

    @abstractmethod
    async def list_logs(self, execution_id: str, after_id: Optional[int] = None,
                        limit: int = 100) -> List[LogEntry]:
        """Cursor over logs in insertion order"""
        pass

    @abstractmethod
    async def recent_logs(self, execution_id: str, limit: int = 100) -> List[LogEntry]:
        pass

    @abstractmethod
    async def list(self, filters: Optional[ExecutionFilter] = None, offset: int = 0,
                   limit: int = 50) -> Tuple[List[Execution], int]:
        """Ordered by (created_at desc, id desc)"""
        pass

    @abstractmethod
    async def find_runnable(self, now: datetime, limit: int = 100) -> List[str]:
        """Pending executions and running ones whose lease expired"""
        pass

    @abstractmethod
    async def find_waiting(self) -> List[Execution]:
        pass

    @abstractmethod
    async def purge_expired(self, logs_before: datetime,
                            executions_before: datetime) -> Dict[str, int]:
        """Archive then delete expired logs and terminal executions"""
        pass


class ScheduleRepository(ABC):
    """Cron schedules"""

    @abstractmethod
    async def create(self, schedule: Schedule) -> Schedule:
        pass

    @abstractmethod
    async def get(self, schedule_id: str) -> Optional[Schedule]:
        pass

    @abstractmethod
    async def list(self, workflow_id: Optional[str] = None) -> List[Schedule]:
        pass

    @abstractmethod
    async def update(self, schedule: Schedule) -> Schedule:
        pass

    @abstractmethod
    async def delete(self, schedule_id: str) -> bool:
        pass

    @abstractmethod
    async def list_due(self, now: datetime, limit: int = 100) -> List[Schedule]:
        pass

    @abstractmethod
    async def claim(self, schedule_id: str, expected_next_fire_at: datetime,
                    new_next_fire_at: datetime) -> bool:
        """Conditional update on the prior next_fire_at; True for the single winner"""
        pass


class WebhookRepository(ABC):
    """Webhook configurations keyed by workflow"""

    @abstractmethod
    async def save(self, config: WebhookConfig) -> WebhookConfig:
        pass

    @abstractmethod
    async def get(self, workflow_id: str) -> Optional[WebhookConfig]:
        pass

    @abstractmethod
    async def delete(self, workflow_id: str) -> bool:
        pass


class AuditRepository(ABC):
    """Append-only audit trail"""

    @abstractmethod
    async def append(self, entry: AuditEntry) -> AuditEntry:
        pass

    @abstractmethod
    async def list(self, filters: Optional[AuditFilter] = None, offset: int = 0,
                   limit: int = 100) -> List[AuditEntry]:
        pass

    @abstractmethod
    async def purge_expired(self, before: datetime) -> int:
        pass


@dataclass
class StateStore:
    """Bundle of repositories sharing one backend"""
    workflows: WorkflowRepository
    executions: ExecutionRepository
    schedules: ScheduleRepository
    webhooks: WebhookRepository
    audit: AuditRepository

    async def purge_expired(self, retention_days: Dict[str, int],
                            now: Optional[datetime] = None) -> Dict[str, int]:
        """Apply per-table retention windows"""
        now = now or utcnow()
        purged = await self.executions.purge_expired(
            logs_before=now - timedelta(days=retention_days.get("logs", 90)),
            executions_before=now - timedelta(days=retention_days.get("executions", 90)),
        )
        purged["audit"] = await self.audit.purge_expired(
            now - timedelta(days=retention_days.get("audit", 90))
        )
        return purged


# -- In-memory implementations -------------------------------------------------

class InMemoryWorkflowRepository(WorkflowRepository):
    """In-memory workflow repository"""

    def __init__(self):
        self.versions: Dict[str, Dict[int, Workflow]] = {}
        self.stats: Dict[str, WorkflowStats] = {}
        self._lock = asyncio.Lock()

    def _attach_stats(self, workflow: Workflow) -> Workflow:
        workflow = copy.deepcopy(workflow)
        workflow.stats = copy.deepcopy(self.stats.get(workflow.id, WorkflowStats()))
        return workflow

    async def save(self, workflow: Workflow) -> Workflow:
        async with self._lock:
            versions = self.versions.setdefault(workflow.id, {})
            if workflow.version in versions:
                raise Conflict(f"Workflow {workflow.id} version {workflow.version} already exists")
            versions[workflow.version] = copy.deepcopy(workflow)
            self.stats.setdefault(workflow.id, WorkflowStats())
            return self._attach_stats(workflow)

    async def get(self, workflow_id: str, version: Optional[int] = None) -> Optional[Workflow]:
        versions = self.versions.get(workflow_id)
        if not versions:
            return None
        if version is None:
            version = max(versions)
        workflow = versions.get(version)
        return self._attach_stats(workflow) if workflow else None

    async def list(self, offset: int = 0, limit: int = 100,
                   filters: Dict[str, Any] = None) -> List[Workflow]:
        filters = filters or {}
        latest = [versions[max(versions)] for versions in self.versions.values()]
        if filters.get("status"):
            latest = [w for w in latest if w.status.value == filters["status"]]
        if filters.get("owner_id"):
            latest = [w for w in latest if w.owner_id == filters["owner_id"]]
        latest.sort(key=lambda w: (w.created_at, w.id), reverse=True)
        return [self._attach_stats(w) for w in latest[offset:offset + limit]]

    async def update(self, workflow: Workflow) -> Workflow:
        async with self._lock:
            versions = self.versions.get(workflow.id)
            if not versions or workflow.version not in versions:
                raise NotFound(f"Workflow {workflow.id} version {workflow.version} not found")
            workflow.updated_at = utcnow()
            versions[workflow.version] = copy.deepcopy(workflow)
            return self._attach_stats(workflow)

    async def delete(self, workflow_id: str) -> bool:
        async with self._lock:
            versions = self.versions.get(workflow_id)
            if not versions:
                return False
            for workflow in versions.values():
                workflow.status = WorkflowStatus.ARCHIVED
                workflow.updated_at = utcnow()
            return True

    async def record_outcome(self, workflow_id: str, success: bool,
                             duration_ms: float, at: datetime) -> WorkflowStats:
        async with self._lock:
            stats = self.stats.setdefault(workflow_id, WorkflowStats())
            stats.record(success, duration_ms, at)
            return copy.deepcopy(stats)


class InMemoryExecutionRepository(ExecutionRepository):
    """In-memory execution repository; rows are copied in and out like a database"""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.executions: Dict[str, Execution] = {}
        self.logs: List[LogEntry] = []
        self.archived_executions: Dict[str, Execution] = {}
        self.archived_logs: List[LogEntry] = []
        self.clock = clock
        self._next_log_id = 1
        self._lock = asyncio.Lock()

    def _row(self, execution_id: str) -> Execution:
        row = self.executions.get(execution_id)
        if row is None:
            raise NotFound(f"Execution {execution_id} not found")
        return row

    def _append(self, logs: Optional[List[LogEntry]]):
        for entry in logs or []:
            stored = copy.deepcopy(entry)
            stored.id = self._next_log_id
            entry.id = stored.id
            self._next_log_id += 1
            self.logs.append(stored)

    async def create(self, execution: Execution, logs: Optional[List[LogEntry]] = None) -> Execution:
        async with self._lock:
            if execution.id in self.executions:
                raise Conflict(f"Execution {execution.id} already exists")
            self.executions[execution.id] = copy.deepcopy(execution)
            self._append(logs)
            return copy.deepcopy(execution)

    async def get(self, execution_id: str) -> Optional[Execution]:
        row = self.executions.get(execution_id)
        return copy.deepcopy(row) if row else None

    async def get_status(self, execution_id: str) -> Optional[ExecutionStatus]:
        row = self.executions.get(execution_id)
        return row.status if row else None

    async def acquire_lease(self, execution_id: str, worker_id: str,
                            ttl_seconds: float) -> Execution:
        async with self._lock:
            row = self._row(execution_id)
            now = self.clock()
            if not lease_available(row, worker_id, now):
                raise StaleLease(execution_id, row.lease_owner)
            row.lease_owner = worker_id
            row.lease_until = now + timedelta(seconds=ttl_seconds)
            return copy.deepcopy(row)

    async def renew_lease(self, execution_id: str, worker_id: str, ttl_seconds: float) -> bool:
        async with self._lock:
            row = self.executions.get(execution_id)
            if row is None or row.lease_owner != worker_id:
                return False
            row.lease_until = self.clock() + timedelta(seconds=ttl_seconds)
            return True

    async def release_lease(self, execution_id: str, worker_id: str) -> None:
        async with self._lock:
            row = self.executions.get(execution_id)
            if row is not None and row.lease_owner == worker_id:
                row.lease_owner = None
                row.lease_until = None

    async def save(self, execution: Execution, worker_id: str,
                   logs: Optional[List[LogEntry]] = None,
                   ttl_seconds: Optional[float] = None) -> Execution:
        async with self._lock:
            row = self._row(execution.id)
            if row.lease_owner != worker_id:
                raise StaleLease(execution.id, row.lease_owner)
            if not is_legal_transition(row.status, execution.status):
                raise StateTransitionError(row.status.value, execution.status.value)
            stored = copy.deepcopy(execution)
            stored.lease_owner = worker_id
            stored.lease_until = (
                self.clock() + timedelta(seconds=ttl_seconds) if ttl_seconds else row.lease_until
            )
            stored.updated_at = utcnow()
            self.executions[execution.id] = stored
            self._append(logs)
            execution.lease_until = stored.lease_until
            return copy.deepcopy(stored)

    async def mutate(self, execution_id: str, mutation: Mutation) -> Execution:
        async with self._lock:
            row = self._row(execution_id)
            working = copy.deepcopy(row)
            logs = mutation(working)
            if not is_legal_transition(row.status, working.status):
                raise StateTransitionError(row.status.value, working.status.value)
            working.updated_at = utcnow()
            self.executions[execution_id] = working
            self._append(logs)
            return copy.deepcopy(working)

    async def append_logs(self, logs: List[LogEntry]) -> None:
        async with self._lock:
            self._append(logs)

    async def list_logs(self, execution_id: str, after_id: Optional[int] = None,
                        limit: int = 100) -> List[LogEntry]:
        entries = [
            entry for entry in self.logs
            if entry.execution_id == execution_id and (after_id is None or entry.id > after_id)
        ]
        return copy.deepcopy(entries[:limit])

    async def recent_logs(self, execution_id: str, limit: int = 100) -> List[LogEntry]:
        entries = [entry for entry in self.logs if entry.execution_id == execution_id]
        return copy.deepcopy(entries[-limit:])

    async def list(self, filters: Optional[ExecutionFilter] = None, offset: int = 0,
                   limit: int = 50) -> Tuple[List[Execution], int]:
        filters = filters or ExecutionFilter()
        matched = [e for e in self.executions.values() if filters.matches(e)]
        matched.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return copy.deepcopy(matched[offset:offset + limit]), len(matched)

    async def find_runnable(self, now: datetime, limit: int = 100) -> List[str]:
        runnable = [
            e for e in self.executions.values()
            if e.status in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)
            and not e.dry_run
            and (e.lease_owner is None or e.lease_until is None or e.lease_until < now)
        ]
        runnable.sort(key=lambda e: (-e.priority, e.created_at))
        return [e.id for e in runnable[:limit]]

    async def find_waiting(self) -> List[Execution]:
        return copy.deepcopy([e for e in self.executions.values() if e.status.is_waiting])

    async def purge_expired(self, logs_before: datetime,
                            executions_before: datetime) -> Dict[str, int]:
        async with self._lock:
            expired = [
                e for e in self.executions.values()
                if e.is_terminal() and (e.completed_at or e.created_at) < executions_before
            ]
            expired_ids = {e.id for e in expired}
            kept_logs = []
            purged_logs = 0
            for entry in self.logs:
                if entry.execution_id in expired_ids or entry.timestamp < logs_before:
                    self.archived_logs.append(entry)
                    purged_logs += 1
                else:
                    kept_logs.append(entry)
            self.logs = kept_logs
            for execution in expired:
                self.archived_executions[execution.id] = self.executions.pop(execution.id)
            return {"executions": len(expired), "logs": purged_logs}


class InMemoryScheduleRepository(ScheduleRepository):
    """In-memory schedule repository"""

    def __init__(self):
        self.schedules: Dict[str, Schedule] = {}
        self._lock = asyncio.Lock()

    async def create(self, schedule: Schedule) -> Schedule:
        async with self._lock:
            if schedule.id in self.schedules:
                raise Conflict(f"Schedule {schedule.id} already exists")
            self.schedules[schedule.id] = copy.deepcopy(schedule)
            return copy.deepcopy(schedule)

    async def get(self, schedule_id: str) -> Optional[Schedule]:
        schedule = self.schedules.get(schedule_id)
        return copy.deepcopy(schedule) if schedule else None

    async def list(self, workflow_id: Optional[str] = None) -> List[Schedule]:
        schedules = [
            s for s in self.schedules.values()
            if workflow_id is None or s.workflow_id == workflow_id
        ]
        schedules.sort(key=lambda s: (s.created_at, s.id))
        return copy.deepcopy(schedules)

    async def update(self, schedule: Schedule) -> Schedule:
        async with self._lock:
            if schedule.id not in self.schedules:
                raise NotFound(f"Schedule {schedule.id} not found")
            schedule.updated_at = utcnow()
            self.schedules[schedule.id] = copy.deepcopy(schedule)
            return copy.deepcopy(schedule)

    async def delete(self, schedule_id: str) -> bool:
        async with self._lock:
            return self.schedules.pop(schedule_id, None) is not None

    async def list_due(self, now: datetime, limit: int = 100) -> List[Schedule]:
        due = [
            s for s in self.schedules.values()
            if s.enabled and s.next_fire_at is not None and s.next_fire_at <= now
        ]
        due.sort(key=lambda s: s.next_fire_at)
        return copy.deepcopy(due[:limit])

    async def claim(self, schedule_id: str, expected_next_fire_at: datetime,
                    new_next_fire_at: datetime) -> bool:
        async with self._lock:
            schedule = self.schedules.get(schedule_id)
            if schedule is None or not schedule.enabled:
                return False
            if schedule.next_fire_at != expected_next_fire_at:
                return False
            schedule.last_fire_at = expected_next_fire_at
            schedule.next_fire_at = new_next_fire_at
            schedule.updated_at = utcnow()
            return True


class InMemoryWebhookRepository(WebhookRepository):
    """In-memory webhook configuration repository"""

    def __init__(self):
        self.configs: Dict[str, WebhookConfig] = {}

    async def save(self, config: WebhookConfig) -> WebhookConfig:
        self.configs[config.workflow_id] = copy.deepcopy(config)
        return copy.deepcopy(config)

    async def get(self, workflow_id: str) -> Optional[WebhookConfig]:
        config = self.configs.get(workflow_id)
        return copy.deepcopy(config) if config else None

    async def delete(self, workflow_id: str) -> bool:
        return self.configs.pop(workflow_id, None) is not None


class InMemoryAuditRepository(AuditRepository):
    """In-memory audit repository"""

    def __init__(self):
        self.entries: List[AuditEntry] = []
        self.archived: List[AuditEntry] = []
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditEntry) -> AuditEntry:
        async with self._lock:
            entry.id = self._next_id
            self._next_id += 1
            self.entries.append(copy.deepcopy(entry))
            return entry

    async def list(self, filters: Optional[AuditFilter] = None, offset: int = 0,
                   limit: int = 100) -> List[AuditEntry]:
        filters = filters or AuditFilter()
        matched = [e for e in self.entries if filters.matches(e)]
        return copy.deepcopy(matched[offset:offset + limit])

    async def purge_expired(self, before: datetime) -> int:
        async with self._lock:
            expired = [e for e in self.entries if e.timestamp < before]
            self.entries = [e for e in self.entries if e.timestamp >= before]
            self.archived.extend(expired)
            return len(expired)


def create_in_memory_store(clock: Callable[[], datetime] = utcnow) -> StateStore:
    """Store used by tests, dry runs and single-process demos"""
    return StateStore(
        workflows=InMemoryWorkflowRepository(),
        executions=InMemoryExecutionRepository(clock=clock),
        schedules=InMemoryScheduleRepository(),
        webhooks=InMemoryWebhookRepository(),
        audit=InMemoryAuditRepository(),
    )
