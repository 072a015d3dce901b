"""
Graph interpreter

Owns an execution (under a persisted lease) until it reaches a terminal or
waiting status. Every step observation is committed before events go out.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING

from ..evaluator import Evaluator
from ..exceptions import (
    EngineError, LimitExceeded, NotFound, StaleLease, StateTransitionError, ValidationError,
    error_kind,
)
from ..integrations.event_bus import EXECUTION_COMPLETE, EXECUTION_UPDATE, STEP_UPDATE, EventBus
from ..models import (
    AuditEventKind, Execution, ExecutionStatus, LogEntry, LogLevel, Step, StepKind,
    StepOutcome, Workflow, to_iso, utcnow,
)
from ..monitoring.audit import AuditSink
from ..monitoring.metrics import MetricsRecorder
from ..storage.repository import StateStore
from .executor import StepExecutor
from .steps import StepRun

if TYPE_CHECKING:
    from .waits import WaitManager


logger = logging.getLogger(__name__)

# evaluator failures are never retried
NON_RETRYABLE = frozenset({
    "ScriptError", "SyntaxError", "MemoryError", "ValidationError",
    "ApprovalRejected", "LimitExceeded",
})


def execution_summary(execution: Execution) -> Dict[str, Any]:
    return {
        "executionId": execution.id,
        "workflowId": execution.workflow_id,
        "status": execution.status.value,
        "currentStepId": execution.current_step_id,
        "completedStepIds": list(execution.completed_step_ids),
        "failedStepIds": list(execution.failed_step_ids),
        "error": execution.error,
    }


class GraphInterpreter:
    """Walks a workflow's step graph for one execution at a time"""

    def __init__(
        self,
        store: StateStore,
        executor: StepExecutor,
        evaluator: Evaluator,
        audit: AuditSink,
        metrics: MetricsRecorder,
        event_bus: EventBus,
        worker_id: str,
        lease_ttl_seconds: float = 30,
        clock: Callable[[], Any] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.executor = executor
        self.evaluator = evaluator
        self.audit = audit
        self.metrics = metrics
        self.event_bus = event_bus
        self.worker_id = worker_id
        self.lease_ttl_seconds = lease_ttl_seconds
        self.clock = clock
        self.sleep = sleep
        self.waits: Optional["WaitManager"] = None
        # called once an execution reaches a terminal status
        self.on_terminal: Optional[Callable[[Execution], Awaitable[None]]] = None

    async def run(self, execution_id: str, executor: Optional[StepExecutor] = None,
                  workflow: Optional[Workflow] = None) -> Optional[Execution]:
        """Drive the execution until it ends or parks; None when another worker owns it

        ``workflow`` short-circuits the definition lookup, used by dry runs of
        definitions that were never saved.
        """
        try:
            execution = await self.store.executions.acquire_lease(
                execution_id, self.worker_id, self.lease_ttl_seconds
            )
        except StaleLease as e:
            logger.debug(f"Execution {execution_id} is leased elsewhere: {e}")
            return None
        except NotFound:
            logger.warning(f"Execution {execution_id} not found")
            return None

        heartbeat = None
        parked = None
        try:
            if execution.is_terminal() or execution.status.is_waiting:
                return execution
            if workflow is None:
                workflow = await self.store.workflows.get(execution.workflow_id, execution.workflow_version)
            if workflow is None:
                error = NotFound(
                    f"Workflow {execution.workflow_id} v{execution.workflow_version} not found"
                )
                execution.start()
                return await self._finish_failed(execution, None, error.to_dict(), [])

            heartbeat = asyncio.create_task(self._heartbeat(execution_id))
            try:
                result = await self._walk(execution, workflow, executor or self.executor)
            except Exception as e:
                logger.exception(f"Unexpected failure while running execution {execution_id}")
                return await self._guard_failure(execution_id, workflow, e)
            if result is not None and result.status.is_waiting:
                parked = result
            return result
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)
            await self.store.executions.release_lease(execution_id, self.worker_id)
            # registered only once the lease is gone so an immediate resume can claim it
            if parked is not None and self.waits is not None:
                await self.waits.register(parked)

    async def _walk(self, execution: Execution, workflow: Workflow,
                    executor: StepExecutor) -> Optional[Execution]:
        fresh = execution.status == ExecutionStatus.PENDING
        execution.start()
        if fresh:
            execution.context.start_time_ms = int(time.time() * 1000)
            message = "Workflow execution started"
        else:
            message = "Workflow execution resumed"
        if not await self._commit(execution, [self._log(execution, message)]):
            return await self._abandon(execution)
        await self.event_bus.publish(EXECUTION_UPDATE, execution_summary(execution))

        settings = workflow.settings
        step_id = execution.current_step_id or workflow.entry_step_id()
        active_base = int(execution.context.flags.get("active_ms", 0))
        walk_started = time.monotonic()

        while step_id:
            status = await self.store.executions.get_status(execution.id)
            if status == ExecutionStatus.CANCELLED:
                return await self._observe_cancel(execution)

            execution.iteration_count += 1
            active_ms = active_base + int((time.monotonic() - walk_started) * 1000)
            execution.context.flags["active_ms"] = active_ms
            if execution.iteration_count > settings.max_iterations:
                error = LimitExceeded(f"Maximum iteration count exceeded ({settings.max_iterations})")
                return await self._finish_failed(execution, workflow, error.to_dict(), [])
            if active_ms > settings.max_execution_time_ms:
                error = LimitExceeded(
                    f"Maximum execution time exceeded ({settings.max_execution_time_ms} ms)"
                )
                return await self._finish_failed(execution, workflow, error.to_dict(), [])

            step = workflow.get_step(step_id)
            if step is None:
                error = ValidationError(f"Step not found: {step_id}")
                return await self._finish_failed(execution, workflow, error.to_dict(), [])

            if not step.enabled:
                step_id = await self.next_step(step, execution, None)
                execution.current_step_id = step_id
                logs = [self._log(execution, f"Skipping disabled step: {step.name or step.id}", step.id)]
                if not await self._commit(execution, logs):
                    return await self._abandon(execution)
                continue

            execution.current_step_id = step.id
            logs = [self._log(execution, f"Executing step: {step.name or step.id}", step.id)]
            if not await self._commit(execution, logs):
                return await self._abandon(execution)

            started_at = self.clock()
            started = time.monotonic()
            run = StepRun(execution, workflow, execution.context, dry_run=execution.dry_run)
            outcome = await executor.execute(step, run)
            duration_ms = int((time.monotonic() - started) * 1000)
            self.metrics.observe("step_duration_ms", duration_ms, {"kind": step.kind.value})

            if outcome.should_pause:
                return await self._pause(execution, step, outcome, run.logs)

            result = outcome.to_dict()
            result.update({"started_at": to_iso(started_at), "duration_ms": duration_ms})

            if outcome.success:
                step_id = await self._on_success(execution, step, outcome, result, run.logs)
                if step_id is False:
                    return await self._abandon(execution)
                continue

            decision, target = await self._decide(step, outcome, execution)
            committed = await self._on_failure(execution, step, outcome, result, run.logs,
                                               decision, target)
            if not committed:
                return await self._abandon(execution)
            if decision == "fail":
                error = {
                    "kind": outcome.error_code,
                    "message": outcome.error.get("message"),
                    "step_id": step.id,
                }
                return await self._finish_failed(execution, workflow, error, [])
            if decision == "retry":
                delay_ms = step.retry_config.retry_delay_ms if step.retry_config else 0
                if delay_ms > 0:
                    await self.sleep(delay_ms / 1000.0)
                continue
            step_id = target

        return await self._finish_completed(execution, workflow)

    async def _on_success(self, execution: Execution, step: Step, outcome: StepOutcome,
                          result: Dict[str, Any], step_logs: List[LogEntry]):
        """Commit the result and the chosen successor together; False when the commit failed"""
        execution.record_success(step.id, result)
        next_id = await self.next_step(step, execution, outcome)
        execution.current_step_id = next_id
        logs = list(step_logs)
        logs.append(self._log(
            execution, f"Step completed: {step.name or step.id}", step.id,
            duration_ms=result["duration_ms"], next_step=next_id,
        ))
        if not await self._commit(execution, logs):
            return False
        self.metrics.inc("steps_total", {"kind": step.kind.value, "status": "completed"})
        await self.audit.record(
            AuditEventKind.STEP_EXECUTE, actor=execution.initiator,
            workflow_id=execution.workflow_id, execution_id=execution.id, step_id=step.id,
            duration_ms=result["duration_ms"],
        )
        await self.event_bus.publish(STEP_UPDATE, {
            "executionId": execution.id, "stepId": step.id, "success": True,
            "durationMs": result["duration_ms"],
        })
        return next_id

    async def _decide(self, step: Step, outcome: StepOutcome,
                execution: Execution) -> Tuple[str, Optional[str]]:
        """retry, skip, fallback or fail"""
        handler = step.error_handler
        retries = step.retry_config.max_retries if step.retry_config else 0
        used = execution.step_retries.get(step.id, 0)
        retry_allowed = handler is None or handler.retry is not False
        if retry_allowed and used < retries and outcome.error_code not in NON_RETRYABLE:
            return "retry", step.id
        if handler and handler.skip:
            return "skip", await self.next_step(step, execution, None)
        if handler and handler.fallback:
            return "fallback", handler.fallback
        return "fail", None

    async def _on_failure(self, execution: Execution, step: Step, outcome: StepOutcome,
                          result: Dict[str, Any], step_logs: List[LogEntry],
                          decision: str, target: Optional[str]) -> bool:
        execution.record_failure(step.id, result)
        message = outcome.error.get("message")
        logs = list(step_logs)
        logs.append(self._log(
            execution, f"Step failed: {step.name or step.id} - {message}", step.id,
            level=LogLevel.ERROR, executionId=execution.id, stepId=step.id,
            errorKind=outcome.error_code, message=message,
        ))

        if decision == "retry":
            attempt = execution.step_retries.get(step.id, 0) + 1
            execution.step_retries[step.id] = attempt
            execution.retry_count += 1
            logs.append(self._log(
                execution, f"Retrying step: {step.name or step.id} "
                           f"(retry {attempt}/{step.retry_config.max_retries})",
                step.id, level=LogLevel.WARNING,
            ))
        elif decision == "skip":
            execution.current_step_id = target
            logs.append(self._log(execution, f"Skipping failed step: {step.name or step.id}",
                                  step.id, level=LogLevel.WARNING))
        elif decision == "fallback":
            execution.current_step_id = target
            logs.append(self._log(execution, f"Using fallback {target} for step: {step.name or step.id}",
                                  step.id, level=LogLevel.WARNING))

        if not await self._commit(execution, logs):
            return False
        self.metrics.inc("steps_total", {"kind": step.kind.value, "status": "failed"})
        logger.warning(f"Step {step.id} failed: {message}", extra={
            "executionId": execution.id, "stepId": step.id, "errorKind": outcome.error_code,
        })
        await self.audit.record(
            AuditEventKind.STEP_FAIL, actor=execution.initiator,
            workflow_id=execution.workflow_id, execution_id=execution.id, step_id=step.id,
            success=False, errorKind=outcome.error_code, message=message, decision=decision,
        )
        await self.event_bus.publish(STEP_UPDATE, {
            "executionId": execution.id, "stepId": step.id, "success": False,
            "error": outcome.error, "decision": decision,
        })
        return True

    async def next_step(self, step: Step, execution: Execution,
                  outcome: Optional[StepOutcome]) -> Optional[str]:
        """Literal id, first of a list, or the first true predicate of a mapping"""
        if outcome is not None and outcome.next_step_override:
            return outcome.next_step_override
        targets = step.next_steps
        if not targets:
            return None
        if isinstance(targets, str):
            return targets
        if isinstance(targets, list):
            return targets[0] if targets else None

        branch_keys = ()
        if step.kind == StepKind.CONDITION:
            branch_keys = ("true", "false")
            if outcome is not None and outcome.success and isinstance(outcome.data, dict):
                branch = "true" if outcome.data.get("condition") else "false"
                if branch in targets:
                    return targets[branch]

        variables = execution.context.variables
        for predicate, target in targets.items():
            if predicate == "default" or predicate in branch_keys:
                continue
            try:
                if await self.evaluator.evaluate_predicate(predicate, variables, self.clock()):
                    return target
            except EngineError as e:
                logger.warning(f"Branch predicate '{predicate}' on step {step.id} failed: {e}",
                               extra={"executionId": execution.id, "stepId": step.id})
        return targets.get("default")

    async def _pause(self, execution: Execution, step: Step, outcome: StepOutcome,
                     step_logs: List[LogEntry]) -> Optional[Execution]:
        execution.pause(outcome.wait_status)
        execution.current_step_id = step.id
        logs = list(step_logs)
        logs.append(self._log(
            execution, f"Execution paused at step: {step.name or step.id}", step.id,
            status=outcome.wait_status.value,
        ))
        if not await self._commit(execution, logs):
            return await self._abandon(execution)
        await self.event_bus.publish(EXECUTION_UPDATE, execution_summary(execution))
        return execution

    async def _finish_completed(self, execution: Execution, workflow: Workflow) -> Optional[Execution]:
        execution.complete()
        logs = [self._log(execution, "Workflow execution completed", duration_ms=execution.duration_ms)]
        if not await self._commit(execution, logs):
            return await self._abandon(execution)
        await self.finalize(execution)
        return execution

    async def _finish_failed(self, execution: Execution, workflow: Optional[Workflow],
                             error: Dict[str, Any], logs: List[LogEntry]) -> Optional[Execution]:
        execution.fail(error)
        logs = list(logs)
        logs.append(self._log(
            execution, f"Workflow execution failed: {error.get('message')}", error.get("step_id"),
            level=LogLevel.ERROR, executionId=execution.id, stepId=error.get("step_id"),
            errorKind=error.get("kind"), message=error.get("message"),
        ))
        if not await self._commit(execution, logs):
            return await self._abandon(execution)
        await self.finalize(execution)
        return execution

    async def finalize(self, execution: Execution):
        """Statistics, metrics, audit and events for a terminal execution"""
        status = execution.status
        if not execution.dry_run and status in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED):
            await self.store.workflows.record_outcome(
                execution.workflow_id, status == ExecutionStatus.COMPLETED,
                execution.duration_ms or 0, execution.completed_at or self.clock(),
            )
        self.metrics.inc("executions_total", {"status": status.value})
        if execution.duration_ms is not None:
            self.metrics.observe("execution_duration_ms", execution.duration_ms)

        if status == ExecutionStatus.COMPLETED:
            await self.audit.record(
                AuditEventKind.EXECUTION_COMPLETE, actor=execution.initiator,
                workflow_id=execution.workflow_id, execution_id=execution.id,
                duration_ms=execution.duration_ms,
            )
        elif status == ExecutionStatus.FAILED:
            error = execution.error or {}
            logger.error(f"Execution {execution.id} failed: {error.get('message')}", extra={
                "executionId": execution.id, "stepId": error.get("step_id"),
                "errorKind": error.get("kind"),
            })
            await self.audit.record(
                AuditEventKind.EXECUTION_FAIL, actor=execution.initiator,
                workflow_id=execution.workflow_id, execution_id=execution.id,
                step_id=error.get("step_id"), success=False,
                errorKind=error.get("kind"), message=error.get("message"),
            )
        await self.event_bus.publish(EXECUTION_COMPLETE, execution_summary(execution))
        if self.on_terminal is not None:
            await self.on_terminal(execution)

    async def _observe_cancel(self, execution: Execution) -> Optional[Execution]:
        """Cancelled from outside: record it and step away without touching state"""
        latest = await self.store.executions.get(execution.id)
        await self.store.executions.append_logs([self._log(
            execution, "Cancellation observed, stopping", execution.current_step_id,
            level=LogLevel.WARNING,
        )])
        logger.info(f"Execution {execution.id} cancelled", extra={"executionId": execution.id})
        await self.finalize(latest)
        return latest

    async def _abandon(self, execution: Execution) -> Optional[Execution]:
        """A commit was refused: either cancelled underneath us or the lease moved on"""
        status = await self.store.executions.get_status(execution.id)
        if status == ExecutionStatus.CANCELLED:
            return await self._observe_cancel(execution)
        logger.warning(f"Giving up execution {execution.id}; stored status is "
                       f"{status.value if status else 'missing'}",
                       extra={"executionId": execution.id})
        return None

    async def _guard_failure(self, execution_id: str, workflow: Workflow,
                             exc: Exception) -> Optional[Execution]:
        latest = await self.store.executions.get(execution_id)
        if latest is None or latest.is_terminal():
            return latest
        if latest.status == ExecutionStatus.PENDING:
            latest.start()
        error = {"kind": error_kind(exc), "message": str(exc) or type(exc).__name__,
                 "step_id": latest.current_step_id}
        return await self._finish_failed(latest, workflow, error, [])

    async def _commit(self, execution: Execution, logs: List[LogEntry]) -> bool:
        try:
            await self.store.executions.save(
                execution, self.worker_id, logs, ttl_seconds=self.lease_ttl_seconds
            )
            return True
        except StaleLease as e:
            logger.warning(f"Lost lease on execution {execution.id}: {e}",
                           extra={"executionId": execution.id})
        except StateTransitionError as e:
            logger.info(f"Execution {execution.id} changed underneath the walk: {e}",
                        extra={"executionId": execution.id})
        return False

    async def _heartbeat(self, execution_id: str):
        interval = max(self.lease_ttl_seconds / 3.0, 0.05)
        while True:
            await asyncio.sleep(interval)
            renewed = await self.store.executions.renew_lease(
                execution_id, self.worker_id, self.lease_ttl_seconds
            )
            if not renewed:
                logger.warning(f"Could not renew lease on execution {execution_id}",
                               extra={"executionId": execution_id})
                return

    def _log(self, execution: Execution, message: str, /, step_id: Optional[str] = None,
             level: LogLevel = LogLevel.INFO, **data: Any) -> LogEntry:
        return LogEntry(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            message=message,
            level=level,
            step_id=step_id,
            data=data,
        )
