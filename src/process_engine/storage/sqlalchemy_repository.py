"""
SQLAlchemy repository implementations
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import and_, delete, func, insert, or_, select, true, update
from sqlalchemy.exc import IntegrityError as SQLIntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from ..exceptions import Conflict, IntegrityError, NotFound, StaleLease, StateTransitionError
from ..models import (
    AuditEntry, AuditEventKind, Execution, ExecutionStatus, LogEntry, LogLevel, Schedule,
    Step, TriggerKind, WebhookConfig, Workflow, WorkflowSettings, WorkflowStats,
    WorkflowStatus, is_legal_transition, utcnow,
)
from .repository import (
    AuditFilter, AuditRepository, ExecutionFilter, ExecutionRepository, Mutation,
    ScheduleRepository, StateStore, WebhookRepository, WorkflowRepository,
)
from .sqlalchemy_models import (
    AuditArchiveRow, AuditColumns, AuditRow, Base, ExecutionArchiveRow, ExecutionColumns, ExecutionRow,
    LogArchiveRow, LogColumns, LogRow, ScheduleRow, WebhookRow, WorkflowRow,
    WorkflowStatsRow, WorkflowStepRow,
)

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Async engine and session factory"""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker = None

    async def initialize(self, create_schema: bool = False):
        """Open the connection pool, optionally creating tables"""
        options: Dict[str, Any] = {"echo": self.echo}
        if not self.database_url.startswith("sqlite"):
            options.update(pool_size=20, max_overflow=10, pool_pre_ping=True)
        self.engine = create_async_engine(self.database_url, **options)
        self.async_session_maker = sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )
        if create_schema:
            await self.create_schema()

    async def create_schema(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        if self.engine:
            await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self):
        """Transactional session: commit on success, rollback and re-raise on error"""
        async with self.async_session_maker() as session:
            try:
                yield session
                await session.commit()
            except SQLIntegrityError as exc:
                await session.rollback()
                logger.error("Integrity violation", extra={"errorKind": IntegrityError.kind})
                raise IntegrityError(str(exc.orig))
            except Exception:
                await session.rollback()
                raise


def _column_names(columns_cls) -> List[str]:
    return [name for name, value in vars(columns_cls).items() if not name.startswith("_")
            and hasattr(value, "type")]


EXECUTION_COLUMNS = _column_names(ExecutionColumns)
LOG_COLUMNS = _column_names(LogColumns)
AUDIT_COLUMNS = _column_names(AuditColumns)


class SQLAlchemyWorkflowRepository(WorkflowRepository):
    """SQLAlchemy workflow repository"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, workflow: Workflow) -> Workflow:
        async with self.db.get_session() as session:
            existing = await session.get(WorkflowRow, (workflow.id, workflow.version))
            if existing is not None:
                raise Conflict(f"Workflow {workflow.id} version {workflow.version} already exists")
            session.add(self._workflow_to_row(workflow))
            for position, step in enumerate(workflow.steps):
                session.add(self._step_to_row(workflow, step, position))
            stats = await session.get(WorkflowStatsRow, workflow.id)
            if stats is None:
                session.add(WorkflowStatsRow(workflow_id=workflow.id, execution_count=0,
                                             success_count=0, failure_count=0,
                                             average_duration_ms=0.0))
            await session.flush()
        return await self.get(workflow.id, workflow.version)

    async def get(self, workflow_id: str, version: Optional[int] = None) -> Optional[Workflow]:
        async with self.db.get_session() as session:
            query = select(WorkflowRow).where(WorkflowRow.id == workflow_id)
            if version is None:
                query = query.order_by(WorkflowRow.version.desc()).limit(1)
            else:
                query = query.where(WorkflowRow.version == version)
            row = (await session.execute(query)).scalar_one_or_none()
            if row is None:
                return None
            return await self._load(session, row)

    async def list(self, offset: int = 0, limit: int = 100,
                   filters: Dict[str, Any] = None) -> List[Workflow]:
        filters = filters or {}
        async with self.db.get_session() as session:
            latest = (
                select(WorkflowRow.id, func.max(WorkflowRow.version).label("version"))
                .group_by(WorkflowRow.id)
                .subquery()
            )
            query = select(WorkflowRow).join(
                latest, and_(WorkflowRow.id == latest.c.id, WorkflowRow.version == latest.c.version)
            )
            if filters.get("status"):
                query = query.where(WorkflowRow.status == filters["status"])
            if filters.get("owner_id"):
                query = query.where(WorkflowRow.owner_id == filters["owner_id"])
            query = query.order_by(WorkflowRow.created_at.desc(), WorkflowRow.id.desc())
            rows = (await session.execute(query.offset(offset).limit(limit))).scalars().all()
            return [await self._load(session, row) for row in rows]

    async def update(self, workflow: Workflow) -> Workflow:
        async with self.db.get_session() as session:
            row = await session.get(WorkflowRow, (workflow.id, workflow.version))
            if row is None:
                raise NotFound(f"Workflow {workflow.id} version {workflow.version} not found")
            workflow.updated_at = utcnow()
            for key, value in self._workflow_values(workflow).items():
                setattr(row, key, value)
            await session.execute(
                delete(WorkflowStepRow).where(and_(
                    WorkflowStepRow.workflow_id == workflow.id,
                    WorkflowStepRow.workflow_version == workflow.version,
                ))
            )
            for position, step in enumerate(workflow.steps):
                session.add(self._step_to_row(workflow, step, position))
        return await self.get(workflow.id, workflow.version)

    async def delete(self, workflow_id: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowRow)
                .where(WorkflowRow.id == workflow_id)
                .values(status=WorkflowStatus.ARCHIVED.value, updated_at=utcnow())
            )
            return result.rowcount > 0

    async def record_outcome(self, workflow_id: str, success: bool,
                             duration_ms: float, at: datetime) -> WorkflowStats:
        async with self.db.get_session() as session:
            row = (await session.execute(
                select(WorkflowStatsRow)
                .where(WorkflowStatsRow.workflow_id == workflow_id)
                .with_for_update()
            )).scalar_one_or_none()
            if row is None:
                row = WorkflowStatsRow(workflow_id=workflow_id, execution_count=0,
                                       success_count=0, failure_count=0,
                                       average_duration_ms=0.0)
                session.add(row)
            stats = self._stats(row)
            stats.record(success, duration_ms, at)
            row.execution_count = stats.execution_count
            row.success_count = stats.success_count
            row.failure_count = stats.failure_count
            row.average_duration_ms = stats.average_duration_ms
            row.last_executed_at = stats.last_executed_at
            return stats

    async def _load(self, session: AsyncSession, row: WorkflowRow) -> Workflow:
        steps = (await session.execute(
            select(WorkflowStepRow)
            .where(and_(
                WorkflowStepRow.workflow_id == row.id,
                WorkflowStepRow.workflow_version == row.version,
            ))
            .order_by(WorkflowStepRow.position)
        )).scalars().all()
        stats = await session.get(WorkflowStatsRow, row.id)
        return Workflow(
            id=row.id,
            version=row.version,
            name=row.name,
            description=row.description or "",
            status=WorkflowStatus(row.status),
            trigger_kind=TriggerKind(row.trigger_kind),
            steps=[Step.from_dict(step.definition) for step in steps],
            variables=dict(row.variables or {}),
            settings=WorkflowSettings.from_dict(row.settings),
            stats=self._stats(stats) if stats else WorkflowStats(),
            owner_id=row.owner_id,
            tags=list(row.tags or []),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _stats(row: WorkflowStatsRow) -> WorkflowStats:
        return WorkflowStats(
            execution_count=row.execution_count or 0,
            success_count=row.success_count or 0,
            failure_count=row.failure_count or 0,
            average_duration_ms=row.average_duration_ms or 0.0,
            last_executed_at=row.last_executed_at,
        )

    @staticmethod
    def _workflow_values(workflow: Workflow) -> Dict[str, Any]:
        return {
            "name": workflow.name,
            "description": workflow.description,
            "status": workflow.status.value,
            "trigger_kind": workflow.trigger_kind.value,
            "variables": workflow.variables,
            "settings": workflow.settings.to_dict(),
            "tags": workflow.tags,
            "owner_id": workflow.owner_id,
            "updated_at": workflow.updated_at,
        }

    def _workflow_to_row(self, workflow: Workflow) -> WorkflowRow:
        return WorkflowRow(id=workflow.id, version=workflow.version,
                           created_at=workflow.created_at, **self._workflow_values(workflow))

    @staticmethod
    def _step_to_row(workflow: Workflow, step: Step, position: int) -> WorkflowStepRow:
        return WorkflowStepRow(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            step_id=step.id,
            position=position,
            kind=step.kind.value,
            definition=step.to_dict(),
        )


def _execution_values(execution: Execution) -> Dict[str, Any]:
    return {
        "id": execution.id,
        "workflow_id": execution.workflow_id,
        "workflow_version": execution.workflow_version,
        "status": execution.status.value,
        "trigger_kind": execution.trigger_kind.value,
        "trigger_data": execution.trigger_data,
        "input_data": execution.input_data,
        "context": execution.context.to_dict(),
        "current_step_id": execution.current_step_id,
        "completed_step_ids": execution.completed_step_ids,
        "failed_step_ids": execution.failed_step_ids,
        "step_results": execution.step_results,
        "retry_count": execution.retry_count,
        "step_retries": execution.step_retries,
        "iteration_count": execution.iteration_count,
        "priority": execution.priority,
        "initiator": execution.initiator,
        "parent_execution_id": execution.parent_execution_id,
        "labels": execution.labels,
        "labels_text": "," + ",".join(execution.labels) + ("," if execution.labels else ""),
        "dry_run": execution.dry_run,
        "started_at": execution.started_at,
        "completed_at": execution.completed_at,
        "duration_ms": execution.duration_ms,
        "error": execution.error,
        "cancelled_by": execution.cancelled_by,
        "lease_owner": execution.lease_owner,
        "lease_until": execution.lease_until,
        "created_at": execution.created_at,
        "updated_at": execution.updated_at,
    }


def _row_to_execution(row: Any) -> Execution:
    data = {name: getattr(row, name) for name in EXECUTION_COLUMNS}
    data.pop("labels_text", None)
    return Execution.from_dict(data)


def _sources_for(target: ExecutionStatus) -> List[str]:
    """Statuses from which ``target`` may be reached"""
    return [status.value for status in ExecutionStatus if is_legal_transition(status, target)]


class SQLAlchemyExecutionRepository(ExecutionRepository):
    """SQLAlchemy execution repository.

    Lease and status checks are folded into conditional UPDATE statements so the
    guarantees hold on databases without row-level locking.
    """

    def __init__(self, db_manager: DatabaseManager, clock: Callable[[], datetime] = utcnow):
        self.db = db_manager
        self.clock = clock

    async def create(self, execution: Execution, logs: Optional[List[LogEntry]] = None) -> Execution:
        async with self.db.get_session() as session:
            session.add(ExecutionRow(**_execution_values(execution)))
            await session.flush()
            await self._append(session, logs)
        return execution

    async def get(self, execution_id: str) -> Optional[Execution]:
        async with self.db.get_session() as session:
            row = await session.get(ExecutionRow, execution_id)
            return _row_to_execution(row) if row else None

    async def get_status(self, execution_id: str) -> Optional[ExecutionStatus]:
        async with self.db.get_session() as session:
            status = (await session.execute(
                select(ExecutionRow.status).where(ExecutionRow.id == execution_id)
            )).scalar_one_or_none()
            return ExecutionStatus(status) if status else None

    async def acquire_lease(self, execution_id: str, worker_id: str,
                            ttl_seconds: float) -> Execution:
        now = self.clock()
        async with self.db.get_session() as session:
            result = await session.execute(
                update(ExecutionRow)
                .where(and_(
                    ExecutionRow.id == execution_id,
                    or_(
                        ExecutionRow.lease_owner.is_(None),
                        ExecutionRow.lease_owner == worker_id,
                        ExecutionRow.lease_until.is_(None),
                        ExecutionRow.lease_until < now,
                    ),
                ))
                .values(lease_owner=worker_id, lease_until=now + timedelta(seconds=ttl_seconds))
            )
            row = await session.get(ExecutionRow, execution_id, populate_existing=True)
            if row is None:
                raise NotFound(f"Execution {execution_id} not found")
            if result.rowcount == 0:
                raise StaleLease(execution_id, row.lease_owner)
            return _row_to_execution(row)

    async def renew_lease(self, execution_id: str, worker_id: str, ttl_seconds: float) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(ExecutionRow)
                .where(and_(ExecutionRow.id == execution_id, ExecutionRow.lease_owner == worker_id))
                .values(lease_until=self.clock() + timedelta(seconds=ttl_seconds))
            )
            return result.rowcount > 0

    async def release_lease(self, execution_id: str, worker_id: str) -> None:
        async with self.db.get_session() as session:
            await session.execute(
                update(ExecutionRow)
                .where(and_(ExecutionRow.id == execution_id, ExecutionRow.lease_owner == worker_id))
                .values(lease_owner=None, lease_until=None)
            )

    async def save(self, execution: Execution, worker_id: str,
                   logs: Optional[List[LogEntry]] = None,
                   ttl_seconds: Optional[float] = None) -> Execution:
        values = _execution_values(execution)
        values.pop("id")
        values.pop("created_at")
        values["lease_owner"] = worker_id
        values["updated_at"] = utcnow()
        if ttl_seconds:
            values["lease_until"] = self.clock() + timedelta(seconds=ttl_seconds)
        else:
            values.pop("lease_until")
        async with self.db.get_session() as session:
            result = await session.execute(
                update(ExecutionRow)
                .where(and_(
                    ExecutionRow.id == execution.id,
                    ExecutionRow.lease_owner == worker_id,
                    ExecutionRow.status.in_(_sources_for(execution.status)),
                ))
                .values(**values)
            )
            if result.rowcount == 0:
                row = await session.get(ExecutionRow, execution.id)
                if row is None:
                    raise NotFound(f"Execution {execution.id} not found")
                if row.lease_owner != worker_id:
                    raise StaleLease(execution.id, row.lease_owner)
                raise StateTransitionError(row.status, execution.status.value)
            await self._append(session, logs)
        if "lease_until" in values:
            execution.lease_until = values["lease_until"]
        return execution

    async def mutate(self, execution_id: str, mutation: Mutation) -> Execution:
        async with self.db.get_session() as session:
            row = (await session.execute(
                select(ExecutionRow).where(ExecutionRow.id == execution_id).with_for_update()
            )).scalar_one_or_none()
            if row is None:
                raise NotFound(f"Execution {execution_id} not found")
            execution = _row_to_execution(row)
            previous = execution.status
            previous_updated = row.updated_at
            logs = mutation(execution)
            if not is_legal_transition(previous, execution.status):
                raise StateTransitionError(previous.value, execution.status.value)
            values = _execution_values(execution)
            values.pop("id")
            values.pop("created_at")
            values.pop("lease_owner")
            values.pop("lease_until")
            values["updated_at"] = utcnow()
            result = await session.execute(
                update(ExecutionRow)
                .where(and_(
                    ExecutionRow.id == execution_id,
                    ExecutionRow.status == previous.value,
                    ExecutionRow.updated_at == previous_updated,
                ))
                .values(**values)
            )
            if result.rowcount == 0:
                raise Conflict(f"Execution {execution_id} changed concurrently")
            await self._append(session, logs)
            return execution

    async def append_logs(self, logs: List[LogEntry]) -> None:
        async with self.db.get_session() as session:
            await self._append(session, logs)

    async def _append(self, session: AsyncSession, logs: Optional[List[LogEntry]]):
        for entry in logs or []:
            row = LogRow(
                execution_id=entry.execution_id,
                workflow_id=entry.workflow_id,
                step_id=entry.step_id,
                level=entry.level.value,
                message=entry.message,
                data=entry.data,
                timestamp=entry.timestamp,
            )
            session.add(row)
            await session.flush()
            entry.id = row.id

    @staticmethod
    def _row_to_log(row: LogRow) -> LogEntry:
        return LogEntry(
            id=row.id,
            execution_id=row.execution_id,
            workflow_id=row.workflow_id,
            step_id=row.step_id,
            level=LogLevel(row.level),
            message=row.message,
            data=dict(row.data or {}),
            timestamp=row.timestamp,
        )

    async def list_logs(self, execution_id: str, after_id: Optional[int] = None,
                        limit: int = 100) -> List[LogEntry]:
        async with self.db.get_session() as session:
            query = select(LogRow).where(LogRow.execution_id == execution_id)
            if after_id is not None:
                query = query.where(LogRow.id > after_id)
            rows = (await session.execute(query.order_by(LogRow.id).limit(limit))).scalars().all()
            return [self._row_to_log(row) for row in rows]

    async def recent_logs(self, execution_id: str, limit: int = 100) -> List[LogEntry]:
        async with self.db.get_session() as session:
            rows = (await session.execute(
                select(LogRow)
                .where(LogRow.execution_id == execution_id)
                .order_by(LogRow.id.desc())
                .limit(limit)
            )).scalars().all()
            return [self._row_to_log(row) for row in reversed(rows)]

    async def list(self, filters: Optional[ExecutionFilter] = None, offset: int = 0,
                   limit: int = 50) -> Tuple[List[Execution], int]:
        filters = filters or ExecutionFilter()
        conditions = []
        if filters.workflow_id:
            conditions.append(ExecutionRow.workflow_id == filters.workflow_id)
        statuses = filters.statuses()
        if statuses:
            conditions.append(ExecutionRow.status.in_([s.value for s in statuses]))
        for label in filters.labels:
            conditions.append(ExecutionRow.labels_text.like(f"%,{label},%"))
        if filters.initiator:
            conditions.append(ExecutionRow.initiator == filters.initiator)
        if filters.created_after:
            conditions.append(ExecutionRow.created_at >= filters.created_after)
        if filters.created_before:
            conditions.append(ExecutionRow.created_at <= filters.created_before)
        if filters.parent_execution_id:
            conditions.append(ExecutionRow.parent_execution_id == filters.parent_execution_id)
        where = and_(*conditions) if conditions else true()
        async with self.db.get_session() as session:
            total = (await session.execute(
                select(func.count()).select_from(ExecutionRow).where(where)
            )).scalar_one()
            rows = (await session.execute(
                select(ExecutionRow)
                .where(where)
                .order_by(ExecutionRow.created_at.desc(), ExecutionRow.id.desc())
                .offset(offset)
                .limit(limit)
            )).scalars().all()
            return [_row_to_execution(row) for row in rows], total

    async def find_runnable(self, now: datetime, limit: int = 100) -> List[str]:
        async with self.db.get_session() as session:
            rows = (await session.execute(
                select(ExecutionRow.id)
                .where(and_(
                    ExecutionRow.status.in_([
                        ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value
                    ]),
                    ExecutionRow.dry_run.is_(False),
                    or_(
                        ExecutionRow.lease_owner.is_(None),
                        ExecutionRow.lease_until.is_(None),
                        ExecutionRow.lease_until < now,
                    ),
                ))
                .order_by(ExecutionRow.priority.desc(), ExecutionRow.created_at)
                .limit(limit)
            )).scalars().all()
            return list(rows)

    async def find_waiting(self) -> List[Execution]:
        async with self.db.get_session() as session:
            rows = (await session.execute(
                select(ExecutionRow).where(ExecutionRow.status.in_([
                    ExecutionStatus.WAITING_APPROVAL.value, ExecutionStatus.WAITING_TIMER.value
                ]))
            )).scalars().all()
            return [_row_to_execution(row) for row in rows]

    async def purge_expired(self, logs_before: datetime,
                            executions_before: datetime) -> Dict[str, int]:
        terminal = [s.value for s in ExecutionStatus if s.is_terminal]
        async with self.db.get_session() as session:
            expired_ids = (await session.execute(
                select(ExecutionRow.id).where(and_(
                    ExecutionRow.status.in_(terminal),
                    func.coalesce(ExecutionRow.completed_at, ExecutionRow.created_at) < executions_before,
                ))
            )).scalars().all()
            log_condition = LogRow.timestamp < logs_before
            if expired_ids:
                log_condition = or_(log_condition, LogRow.execution_id.in_(expired_ids))
            log_columns = [getattr(LogRow, name) for name in LOG_COLUMNS]
            await session.execute(
                insert(LogArchiveRow.__table__).from_select(LOG_COLUMNS, select(*log_columns).where(log_condition))
            )
            logs = await session.execute(delete(LogRow).where(log_condition))
            executions = 0
            if expired_ids:
                columns = [getattr(ExecutionRow, name) for name in EXECUTION_COLUMNS]
                await session.execute(
                    insert(ExecutionArchiveRow.__table__).from_select(
                        EXECUTION_COLUMNS,
                        select(*columns).where(ExecutionRow.id.in_(expired_ids)),
                    )
                )
                result = await session.execute(
                    delete(ExecutionRow).where(ExecutionRow.id.in_(expired_ids))
                )
                executions = result.rowcount
            return {"executions": executions, "logs": logs.rowcount}


class SQLAlchemyScheduleRepository(ScheduleRepository):
    """SQLAlchemy schedule repository"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    @staticmethod
    def _row_to_schedule(row: ScheduleRow) -> Schedule:
        return Schedule(
            id=row.id,
            workflow_id=row.workflow_id,
            name=row.name or "",
            cron_expr=row.cron_expr,
            timezone=row.timezone,
            preset=row.preset,
            enabled=row.enabled,
            next_fire_at=row.next_fire_at,
            last_fire_at=row.last_fire_at,
            input_data=dict(row.input_data or {}),
            created_by=row.created_by,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _values(schedule: Schedule) -> Dict[str, Any]:
        return {
            "workflow_id": schedule.workflow_id,
            "name": schedule.name,
            "cron_expr": schedule.cron_expr,
            "timezone": schedule.timezone,
            "preset": schedule.preset,
            "enabled": schedule.enabled,
            "next_fire_at": schedule.next_fire_at,
            "last_fire_at": schedule.last_fire_at,
            "input_data": schedule.input_data,
            "created_by": schedule.created_by,
            "updated_at": schedule.updated_at,
        }

    async def create(self, schedule: Schedule) -> Schedule:
        async with self.db.get_session() as session:
            session.add(ScheduleRow(id=schedule.id, created_at=schedule.created_at,
                                    **self._values(schedule)))
        return schedule

    async def get(self, schedule_id: str) -> Optional[Schedule]:
        async with self.db.get_session() as session:
            row = await session.get(ScheduleRow, schedule_id)
            return self._row_to_schedule(row) if row else None

    async def list(self, workflow_id: Optional[str] = None) -> List[Schedule]:
        async with self.db.get_session() as session:
            query = select(ScheduleRow)
            if workflow_id:
                query = query.where(ScheduleRow.workflow_id == workflow_id)
            rows = (await session.execute(
                query.order_by(ScheduleRow.created_at, ScheduleRow.id)
            )).scalars().all()
            return [self._row_to_schedule(row) for row in rows]

    async def update(self, schedule: Schedule) -> Schedule:
        schedule.updated_at = utcnow()
        async with self.db.get_session() as session:
            result = await session.execute(
                update(ScheduleRow).where(ScheduleRow.id == schedule.id).values(**self._values(schedule))
            )
            if result.rowcount == 0:
                raise NotFound(f"Schedule {schedule.id} not found")
        return schedule

    async def delete(self, schedule_id: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(delete(ScheduleRow).where(ScheduleRow.id == schedule_id))
            return result.rowcount > 0

    async def list_due(self, now: datetime, limit: int = 100) -> List[Schedule]:
        async with self.db.get_session() as session:
            rows = (await session.execute(
                select(ScheduleRow)
                .where(and_(ScheduleRow.enabled.is_(True), ScheduleRow.next_fire_at <= now))
                .order_by(ScheduleRow.next_fire_at)
                .limit(limit)
            )).scalars().all()
            return [self._row_to_schedule(row) for row in rows]

    async def claim(self, schedule_id: str, expected_next_fire_at: datetime,
                    new_next_fire_at: datetime) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(ScheduleRow)
                .where(and_(
                    ScheduleRow.id == schedule_id,
                    ScheduleRow.enabled.is_(True),
                    ScheduleRow.next_fire_at == expected_next_fire_at,
                ))
                .values(
                    last_fire_at=expected_next_fire_at,
                    next_fire_at=new_next_fire_at,
                    updated_at=utcnow(),
                )
            )
            return result.rowcount == 1


class SQLAlchemyWebhookRepository(WebhookRepository):
    """SQLAlchemy webhook configuration repository"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, config: WebhookConfig) -> WebhookConfig:
        async with self.db.get_session() as session:
            row = await session.get(WebhookRow, config.workflow_id)
            if row is None:
                row = WebhookRow(workflow_id=config.workflow_id, created_at=config.created_at)
                session.add(row)
            row.secret = config.secret
            row.require_signature = config.require_signature
            row.enabled = config.enabled
            row.allowed_ips = config.allowed_ips
            row.allowed_origins = config.allowed_origins
            row.rate_limit_max = config.rate_limit_max
            row.rate_limit_window_ms = config.rate_limit_window_ms
            row.input_mapping = config.input_mapping
            row.required_headers = config.required_headers
        return config

    async def get(self, workflow_id: str) -> Optional[WebhookConfig]:
        async with self.db.get_session() as session:
            row = await session.get(WebhookRow, workflow_id)
            if row is None:
                return None
            return WebhookConfig(
                workflow_id=row.workflow_id,
                secret=row.secret,
                require_signature=row.require_signature,
                enabled=row.enabled,
                allowed_ips=list(row.allowed_ips or []),
                allowed_origins=list(row.allowed_origins or []),
                rate_limit_max=row.rate_limit_max,
                rate_limit_window_ms=row.rate_limit_window_ms,
                input_mapping=dict(row.input_mapping or {}),
                required_headers=list(row.required_headers or []),
                created_at=row.created_at,
            )

    async def delete(self, workflow_id: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(delete(WebhookRow).where(WebhookRow.workflow_id == workflow_id))
            return result.rowcount > 0


class SQLAlchemyAuditRepository(AuditRepository):
    """SQLAlchemy audit repository"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def append(self, entry: AuditEntry) -> AuditEntry:
        async with self.db.get_session() as session:
            row = AuditRow(
                kind=entry.kind.value,
                actor=entry.actor,
                workflow_id=entry.workflow_id,
                execution_id=entry.execution_id,
                step_id=entry.step_id,
                success=entry.success,
                data=entry.data,
                timestamp=entry.timestamp,
            )
            session.add(row)
            await session.flush()
            entry.id = row.id
        return entry

    async def list(self, filters: Optional[AuditFilter] = None, offset: int = 0,
                   limit: int = 100) -> List[AuditEntry]:
        filters = filters or AuditFilter()
        query = select(AuditRow)
        if filters.kind:
            query = query.where(AuditRow.kind == filters.kind.value)
        if filters.workflow_id:
            query = query.where(AuditRow.workflow_id == filters.workflow_id)
        if filters.execution_id:
            query = query.where(AuditRow.execution_id == filters.execution_id)
        if filters.step_id:
            query = query.where(AuditRow.step_id == filters.step_id)
        if filters.actor:
            query = query.where(AuditRow.actor == filters.actor)
        async with self.db.get_session() as session:
            rows = (await session.execute(
                query.order_by(AuditRow.id).offset(offset).limit(limit)
            )).scalars().all()
            return [
                AuditEntry(
                    id=row.id,
                    kind=AuditEventKind(row.kind),
                    actor=row.actor,
                    workflow_id=row.workflow_id,
                    execution_id=row.execution_id,
                    step_id=row.step_id,
                    success=row.success,
                    data=dict(row.data or {}),
                    timestamp=row.timestamp,
                )
                for row in rows
            ]

    async def purge_expired(self, before: datetime) -> int:
        async with self.db.get_session() as session:
            await session.execute(
                insert(AuditArchiveRow.__table__).from_select(
                    AUDIT_COLUMNS,
                    select(*[getattr(AuditRow, name) for name in AUDIT_COLUMNS]).where(AuditRow.timestamp < before),
                )
            )
            result = await session.execute(delete(AuditRow).where(AuditRow.timestamp < before))
            return result.rowcount


def create_sql_store(db_manager: DatabaseManager,
                     clock: Callable[[], datetime] = utcnow) -> StateStore:
    """Store backed by the configured database"""
    return StateStore(
        workflows=SQLAlchemyWorkflowRepository(db_manager),
        executions=SQLAlchemyExecutionRepository(db_manager, clock=clock),
        schedules=SQLAlchemyScheduleRepository(db_manager),
        webhooks=SQLAlchemyWebhookRepository(db_manager),
        audit=SQLAlchemyAuditRepository(db_manager),
    )
