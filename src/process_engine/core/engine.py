"""
Process engine facade

Wires the store, evaluator, step executor, interpreter and wait manager
together and exposes the workflow and execution operations used by the API,
the scheduler, the webhook dispatcher and the CLI.
"""
import asyncio
import copy
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Union

from ..config import EngineSettings
from ..evaluator import Evaluator
from ..exceptions import (
    LimitExceeded, NotFound, StateTransitionError, ValidationError,
)
from ..integrations.action_registry import ActionRegistry
from ..integrations.collaborators import (
    ChangeRecorder, HttpClient, HttpxClient, LowCodeCRUD, Notifier,
)
from ..integrations.event_bus import EXECUTION_UPDATE, EventBus
from ..models import (
    AuditEventKind, Execution, ExecutionContext, ExecutionStatus, LogEntry, LogLevel,
    TriggerKind, Workflow, WorkflowStatus, new_id, to_iso, utcnow,
)
from ..monitoring.audit import AuditSink
from ..monitoring.metrics import MetricsRecorder
from ..storage.repository import ExecutionFilter, StateStore, lease_available
from .executor import StepExecutor
from .interpreter import GraphInterpreter, execution_summary
from .parser import WorkflowParser
from .retry import execute_with_retry, store_conflict_policy
from .steps import StepServices
from .waits import WaitManager


logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5
MAX_SUBWORKFLOW_DEPTH = 10
EXPORT_VERSION = "1.0.0"


class ProcessEngine:
    """Workflow lifecycle plus execution control"""

    def __init__(
        self,
        store: StateStore,
        settings: Optional[EngineSettings] = None,
        evaluator: Optional[Evaluator] = None,
        actions: Optional[ActionRegistry] = None,
        http: Optional[HttpClient] = None,
        notifier: Optional[Notifier] = None,
        crud: Optional[LowCodeCRUD] = None,
        cache: Any = None,
        activity: Any = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsRecorder] = None,
        clock: Callable = utcnow,
        sleep: Callable = asyncio.sleep,
        inline_dispatch: bool = True,
    ):
        self.store = store
        self.settings = settings or EngineSettings()
        self.evaluator = evaluator or Evaluator(
            self.settings.evaluator_limits(), isolation=self.settings.evaluator_isolation
        )
        self.event_bus = event_bus or EventBus()
        self.metrics = metrics or MetricsRecorder()
        self.audit = AuditSink(store.audit)
        self.parser = WorkflowParser()
        self.clock = clock
        self.inline_dispatch = inline_dispatch

        self.services = StepServices(
            evaluator=self.evaluator,
            actions=actions or ActionRegistry(),
            http=http or HttpxClient(),
            notifier=notifier,
            crud=crud,
            cache=cache,
            activity=activity,
            launcher=self.launch_subworkflow,
            clock=clock,
            sleep=sleep,
        )
        self.executor = StepExecutor(self.services)
        self.interpreter = GraphInterpreter(
            store, self.executor, self.evaluator, self.audit, self.metrics, self.event_bus,
            worker_id=self.settings.worker_id,
            lease_ttl_seconds=self.settings.lease_ttl_seconds,
            clock=clock,
            sleep=sleep,
        )
        self.waits = WaitManager(
            store, dispatch=self.dispatch, finalize=self.interpreter.finalize,
            metrics=self.metrics, clock=clock, sleep=sleep,
        )
        self.interpreter.waits = self.waits
        self.interpreter.on_terminal = self._on_terminal

        self._inflight: Dict[str, asyncio.Task] = {}
        self._rerun: Set[str] = set()

    async def start(self):
        """Rebuild wait indices from the store"""
        await self.waits.recover()

    async def shutdown(self):
        self.waits.stop()
        await self.drain()
        await self.services.http.close()

    # -- dispatch -------------------------------------------------------------

    def dispatch(self, execution_id: str) -> asyncio.Task:
        """Run the execution in a background task; one task per execution"""
        task = self._inflight.get(execution_id)
        if task is not None and not task.done():
            self._rerun.add(execution_id)
            return task
        task = asyncio.create_task(self._drive(execution_id))
        self._inflight[execution_id] = task
        return task

    def is_running(self, execution_id: str) -> bool:
        task = self._inflight.get(execution_id)
        return task is not None and not task.done()

    async def _drive(self, execution_id: str) -> Optional[Execution]:
        try:
            while True:
                self._rerun.discard(execution_id)
                result = await self.interpreter.run(execution_id)
                if execution_id not in self._rerun:
                    return result
        finally:
            self._inflight.pop(execution_id, None)
            self._rerun.discard(execution_id)

    async def drain(self):
        """Wait for every in-flight walk, including those they start"""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    async def _on_terminal(self, execution: Execution):
        self.waits.forget(execution.id)
        if execution.parent_execution_id:
            await self.waits.child_finished(execution)

    # -- executions -----------------------------------------------------------

    async def start_execution(
        self,
        workflow_id: str,
        input_data: Optional[Dict[str, Any]] = None,
        initiator: Optional[str] = None,
        trigger_kind: TriggerKind = TriggerKind.MANUAL,
        trigger_data: Optional[Dict[str, Any]] = None,
        priority: int = DEFAULT_PRIORITY,
        labels: Optional[List[str]] = None,
        parent_execution_id: Optional[str] = None,
        wait: bool = False,
    ) -> Execution:
        """Create a pending execution of the latest active version"""
        workflow = await self.get_workflow(workflow_id)
        if not workflow.is_active:
            raise ValidationError(f"Workflow {workflow_id} is not active")
        input_data = dict(input_data or {})
        trigger_data = dict(trigger_data or {})

        execution = Execution(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            trigger_kind=trigger_kind,
            trigger_data=trigger_data,
            input_data=input_data,
            context=ExecutionContext(variables={**copy.deepcopy(workflow.variables), **input_data}),
            priority=priority,
            initiator=initiator,
            parent_execution_id=parent_execution_id,
            labels=list(labels or []),
        )
        await self.store.executions.create(execution, [LogEntry(
            execution_id=execution.id,
            workflow_id=workflow.id,
            message=f"Execution created by {trigger_kind.value} trigger",
            data={"initiator": initiator},
        )])
        logger.info(f"Created execution {execution.id} for workflow {workflow.id} v{workflow.version}",
                    extra={"executionId": execution.id})

        await self.audit.record(
            AuditEventKind.WORKFLOW_EXECUTE, actor=initiator, workflow_id=workflow.id,
            execution_id=execution.id, triggerKind=trigger_kind.value,
        )
        await self.audit.record(
            AuditEventKind.EXECUTION_START, actor=initiator, workflow_id=workflow.id,
            execution_id=execution.id, triggerKind=trigger_kind.value, triggerData=trigger_data,
        )
        self.metrics.inc("executions_started_total", {"trigger": trigger_kind.value})
        await self.event_bus.publish(EXECUTION_UPDATE, execution_summary(execution))

        if wait:
            await self.dispatch(execution.id)
            return await self._get_execution(execution.id)
        if self.inline_dispatch:
            self.dispatch(execution.id)
        return execution

    async def get_execution(self, execution_id: str) -> Execution:
        return await self._get_execution(execution_id)

    async def get_execution_status(self, execution_id: str, log_limit: int = 100) -> Dict[str, Any]:
        """Execution row plus its most recent logs"""
        execution = await self._get_execution(execution_id)
        logs = await self.store.executions.recent_logs(execution_id, log_limit)
        data = execution.to_dict()
        data["logs"] = [entry.to_dict() for entry in logs]
        return data

    async def cancel_execution(self, execution_id: str, user_id: Optional[str] = None,
                               reason: Optional[str] = None) -> Execution:
        state: Dict[str, Any] = {}

        def mutation(execution: Execution) -> List[LogEntry]:
            if execution.is_terminal():
                raise StateTransitionError(
                    execution.status.value, ExecutionStatus.CANCELLED.value,
                    f"Execution {execution.id} is already {execution.status.value}",
                )
            # a walker holding the lease announces the end when it sees the cancel
            state["walked"] = not lease_available(execution, "", self.clock())
            execution.cancel(user_id)
            return [LogEntry(
                execution_id=execution.id,
                workflow_id=execution.workflow_id,
                message=f"Execution cancelled by {user_id or 'system'}",
                level=LogLevel.WARNING,
                data={"reason": reason},
            )]

        execution = await execute_with_retry(
            lambda: self.store.executions.mutate(execution_id, mutation),
            store_conflict_policy(),
        )
        logger.info(f"Execution {execution_id} cancelled by {user_id}",
                    extra={"executionId": execution_id})
        await self.audit.record(
            AuditEventKind.EXECUTION_CANCEL, actor=user_id, workflow_id=execution.workflow_id,
            execution_id=execution_id, reason=reason,
        )
        await self.audit.record(
            AuditEventKind.WORKFLOW_CANCEL, actor=user_id, workflow_id=execution.workflow_id,
            execution_id=execution_id,
        )
        if not state.get("walked"):
            await self.interpreter.finalize(execution)
        return execution

    async def approve_step(self, execution_id: str, step_id: str, user_id: str,
                           comments: Optional[str] = None, wait: bool = False) -> Execution:
        execution = await self.waits.approve(execution_id, step_id, user_id, comments)
        return await self._settle(execution, wait)

    async def reject_step(self, execution_id: str, step_id: str, user_id: str,
                          reason: Optional[str] = None, wait: bool = False) -> Execution:
        execution = await self.waits.reject(execution_id, step_id, user_id, reason)
        return await self._settle(execution, wait)

    async def _settle(self, execution: Execution, wait: bool) -> Execution:
        task = self._inflight.get(execution.id)
        if wait and task is not None:
            await task
            return await self._get_execution(execution.id)
        return execution

    async def list_executions(self, workflow_id: Optional[str] = None,
                              status: Union[None, str, List[str]] = None,
                              labels: Optional[List[str]] = None,
                              initiator: Optional[str] = None,
                              created_after: Optional[datetime] = None,
                              created_before: Optional[datetime] = None,
                              offset: int = 0, limit: int = 50) -> Dict[str, Any]:
        if isinstance(status, str):
            status = [status]
        filters = ExecutionFilter(
            workflow_id=workflow_id,
            status=[ExecutionStatus(s) for s in status] if status else None,
            labels=list(labels or []),
            initiator=initiator,
            created_after=created_after,
            created_before=created_before,
        )
        items, total = await self.store.executions.list(filters, offset, limit)
        return {"items": items, "total": total}

    async def retry_execution(self, execution_id: str, user_id: Optional[str] = None,
                              wait: bool = False) -> Execution:
        """Start a fresh execution with the input of a failed one"""
        original = await self._get_execution(execution_id)
        if original.status != ExecutionStatus.FAILED:
            raise StateTransitionError(
                original.status.value, ExecutionStatus.PENDING.value,
                f"Only failed executions can be retried; {execution_id} is {original.status.value}",
            )
        execution = await self.start_execution(
            original.workflow_id,
            original.input_data,
            initiator=user_id or original.initiator,
            trigger_kind=TriggerKind.RETRY,
            trigger_data={"retryOf": original.id},
            priority=original.priority,
            labels=original.labels,
            parent_execution_id=original.parent_execution_id,
            wait=wait,
        )
        await self.audit.record(
            AuditEventKind.EXECUTION_RETRY, actor=user_id, workflow_id=original.workflow_id,
            execution_id=execution.id, retryOf=original.id,
        )
        return execution

    async def test_execution(self, source: Union[str, Dict[str, Any]],
                             input_data: Optional[Dict[str, Any]] = None,
                             user_id: Optional[str] = None) -> Dict[str, Any]:
        """Dry run: side effects are recorded instead of performed"""
        workflow = None
        if isinstance(source, str) and "\n" not in source:
            workflow = await self.store.workflows.get(source)
        if workflow is None:
            workflow = self.parser.parse(source)
        if workflow.status == WorkflowStatus.ARCHIVED:
            raise ValidationError(f"Workflow {workflow.id} is archived")

        input_data = dict(input_data or {})
        execution = Execution(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            trigger_kind=TriggerKind.TEST,
            input_data=input_data,
            context=ExecutionContext(variables={**copy.deepcopy(workflow.variables), **input_data}),
            initiator=user_id,
            dry_run=True,
        )
        await self.store.executions.create(execution)

        recorder = ChangeRecorder()
        executor = StepExecutor(self.services.for_dry_run(recorder))
        result = await self.interpreter.run(execution.id, executor=executor, workflow=workflow)
        if result is None:
            result = await self._get_execution(execution.id)
        logs = await self.store.executions.list_logs(execution.id, limit=100000)
        return {
            "execution": result.to_dict(),
            "stepLogs": [entry.to_dict() for entry in logs],
            "wouldChange": recorder.would_change,
        }

    async def launch_subworkflow(self, workflow_id: str, input_data: Dict[str, Any],
                                 parent: Execution, step_id: str) -> Execution:
        depth = int(parent.trigger_data.get("depth", 0)) + 1
        if depth > MAX_SUBWORKFLOW_DEPTH:
            raise LimitExceeded(f"Subworkflow nesting deeper than {MAX_SUBWORKFLOW_DEPTH}")
        return await self.start_execution(
            workflow_id,
            input_data,
            initiator=parent.initiator,
            trigger_kind=TriggerKind.SUBWORKFLOW,
            trigger_data={"parentExecutionId": parent.id, "parentStepId": step_id, "depth": depth},
            priority=parent.priority,
            parent_execution_id=parent.id,
        )

    # -- workflows ------------------------------------------------------------

    def validate_workflow(self, definition: Union[str, Dict[str, Any]]) -> Dict[str, List[str]]:
        try:
            data = self.parser.load(definition)
        except ValidationError as e:
            return {"errors": [e.message], "warnings": []}
        return self.parser.validate(data)

    async def get_workflow(self, workflow_id: str, version: Optional[int] = None) -> Workflow:
        workflow = await self.store.workflows.get(workflow_id, version)
        if workflow is None:
            raise NotFound(f"Workflow {workflow_id} not found")
        return workflow

    async def list_workflows(self, offset: int = 0, limit: int = 100,
                             status: Optional[str] = None) -> List[Workflow]:
        filters = {"status": status} if status else None
        return await self.store.workflows.list(offset, limit, filters)

    async def create_workflow(self, definition: Union[str, Dict[str, Any]],
                              owner_id: Optional[str] = None) -> Workflow:
        workflow = self.parser.parse(definition)
        workflow.id = workflow.id or new_id()
        workflow.version = 1
        workflow.status = WorkflowStatus.DRAFT
        workflow.owner_id = owner_id or workflow.owner_id
        saved = await self.store.workflows.save(workflow)
        await self.audit.record(AuditEventKind.WORKFLOW_CREATE, actor=owner_id,
                                workflow_id=saved.id, name=saved.name)
        logger.info(f"Created workflow {saved.id} ({saved.name})")
        return saved

    async def update_workflow(self, workflow_id: str, changes: Dict[str, Any],
                              user_id: Optional[str] = None) -> Workflow:
        """Drafts change in place; an active workflow gets a new version"""
        current = await self.get_workflow(workflow_id)
        if current.status == WorkflowStatus.ARCHIVED:
            raise ValidationError(f"Workflow {workflow_id} is archived")
        definition = {**current.definition(), **changes}
        updated = self.parser.parse(definition)
        updated.id = current.id
        updated.owner_id = current.owner_id
        updated.created_at = current.created_at
        updated.status = current.status

        if current.status == WorkflowStatus.DRAFT:
            updated.version = current.version
            saved = await self.store.workflows.update(updated)
        else:
            updated.version = current.version + 1
            saved = await self.store.workflows.save(updated)
        await self.audit.record(AuditEventKind.WORKFLOW_UPDATE, actor=user_id,
                                workflow_id=workflow_id, version=saved.version,
                                fields=sorted(changes))
        return saved

    async def activate_workflow(self, workflow_id: str, user_id: Optional[str] = None) -> Workflow:
        workflow = await self.get_workflow(workflow_id)
        if workflow.status == WorkflowStatus.ARCHIVED:
            raise ValidationError(f"Workflow {workflow_id} is archived")
        report = self.parser.validate(workflow.definition())
        if report["errors"]:
            raise ValidationError("Workflow has validation errors", errors=report["errors"])
        workflow.status = WorkflowStatus.ACTIVE
        saved = await self.store.workflows.update(workflow)
        await self.audit.record(AuditEventKind.WORKFLOW_UPDATE, actor=user_id,
                                workflow_id=workflow_id, version=saved.version, status="active")
        return saved

    async def archive_workflow(self, workflow_id: str, user_id: Optional[str] = None) -> bool:
        if not await self.store.workflows.delete(workflow_id):
            raise NotFound(f"Workflow {workflow_id} not found")
        await self.audit.record(AuditEventKind.WORKFLOW_DELETE, actor=user_id, workflow_id=workflow_id)
        logger.info(f"Archived workflow {workflow_id}")
        return True

    delete_workflow = archive_workflow

    async def clone_workflow(self, workflow_id: str, user_id: Optional[str] = None,
                             name: Optional[str] = None) -> Workflow:
        source = await self.get_workflow(workflow_id)
        clone = Workflow.from_dict(source.definition())
        clone.name = name or f"{source.name} (Copy)"
        clone.owner_id = user_id or source.owner_id
        saved = await self.store.workflows.save(clone)
        await self.audit.record(AuditEventKind.WORKFLOW_CLONE, actor=user_id,
                                workflow_id=saved.id, sourceId=workflow_id)
        return saved

    async def export_workflow(self, workflow_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        workflow = await self.get_workflow(workflow_id)
        exported = workflow.definition()
        exported["metadata"] = {
            "id": workflow.id,
            "version": workflow.version,
            "status": workflow.status.value,
        }
        await self.audit.record(AuditEventKind.WORKFLOW_EXPORT, actor=user_id, workflow_id=workflow_id)
        return {
            "exportVersion": EXPORT_VERSION,
            "exportedAt": to_iso(self.clock()),
            "workflow": exported,
        }

    async def import_workflow(self, data: Dict[str, Any], user_id: Optional[str] = None,
                              conflict: str = "rename") -> Dict[str, Any]:
        """Create a draft from exported data; name clashes are renamed or skipped"""
        if not isinstance(data, dict) or not isinstance(data.get("workflow"), dict):
            raise ValidationError("Invalid import data: workflow required")
        definition = dict(data["workflow"])
        definition.pop("metadata", None)
        if not definition.get("name"):
            raise ValidationError("Invalid workflow data: name required")

        names = {w.name: w for w in await self.store.workflows.list(0, 100000)}
        existing = names.get(definition["name"])
        if existing is not None:
            if conflict == "skip":
                return {"skipped": True, "workflowId": existing.id, "name": existing.name}
            definition["name"] = _unique_name(definition["name"], set(names))

        workflow = self.parser.parse(definition)
        workflow.status = WorkflowStatus.DRAFT
        workflow.owner_id = user_id
        saved = await self.store.workflows.save(workflow)
        await self.audit.record(AuditEventKind.WORKFLOW_IMPORT, actor=user_id, workflow_id=saved.id,
                                exportVersion=data.get("exportVersion"))
        return {"skipped": False, "workflowId": saved.id, "name": saved.name}

    async def _get_execution(self, execution_id: str) -> Execution:
        execution = await self.store.executions.get(execution_id)
        if execution is None:
            raise NotFound(f"Execution {execution_id} not found")
        return execution


def _unique_name(name: str, taken: Set[str]) -> str:
    counter = 2
    while f"{name} ({counter})" in taken:
        counter += 1
    return f"{name} ({counter})"
