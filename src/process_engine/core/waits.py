"""
Wait manager

Tracks executions parked on an approval, a timer or a child execution and
resumes them. The store is written first; the in-memory indices only speed up
lookups and are rebuilt from the store on startup.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..exceptions import NotFound, Unauthorized
from ..models import Execution, ExecutionStatus, LogEntry, LogLevel, from_iso, to_iso, utcnow
from ..monitoring.metrics import MetricsRecorder
from ..storage.repository import Mutation, StateStore
from .retry import execute_with_retry, store_conflict_policy


logger = logging.getLogger(__name__)


class WaitManager:
    """Approval, timer and child-completion waits"""

    def __init__(
        self,
        store: StateStore,
        dispatch: Callable[[str], Any],
        finalize: Optional[Callable[[Execution], Awaitable[None]]] = None,
        metrics: Optional[MetricsRecorder] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.dispatch = dispatch
        self.finalize = finalize
        self.metrics = metrics or MetricsRecorder()
        self.clock = clock
        self.sleep = sleep
        # (execution_id, step_id) -> pending approval entry
        self.approval_waits: Dict[Tuple[str, str], Dict[str, Any]] = {}
        # (execution_id, wake_at iso) -> step_id
        self.timer_waits: Dict[Tuple[str, str], str] = {}
        # child execution id -> (parent execution id, step_id)
        self.child_waits: Dict[str, Tuple[str, str]] = {}
        self._stop = asyncio.Event()

    async def recover(self) -> int:
        """Rebuild the indices from waiting executions; due timers fire at once"""
        waiting = await self.store.executions.find_waiting()
        for execution in waiting:
            await self.register(execution)
        fired = await self.tick()
        logger.info(f"Recovered {len(waiting)} waiting executions, {fired} timers already due")
        return len(waiting)

    async def register(self, execution: Execution):
        context = execution.context
        for step_id, pending in context.pending_approvals.items():
            self.approval_waits[(execution.id, step_id)] = pending
        if execution.status == ExecutionStatus.WAITING_TIMER:
            for step_id, timer in context.timers.items():
                if timer.get("wake_at"):
                    self.timer_waits[(execution.id, timer["wake_at"])] = step_id

        for step_id, child in list(context.children.items()):
            child_id = child.get("execution_id")
            if not child_id:
                continue
            if child.get("status") in _TERMINAL_VALUES:
                await self._resume(execution.id, ExecutionStatus.WAITING_TIMER,
                                   f"Subworkflow execution {child_id} already finished", step_id)
                continue
            self.child_waits[child_id] = (execution.id, step_id)
            # the child may have finished before the parent parked
            latest = await self.store.executions.get(child_id)
            if latest is not None and latest.is_terminal():
                await self.child_finished(latest)

    def forget(self, execution_id: str):
        self.approval_waits = {k: v for k, v in self.approval_waits.items() if k[0] != execution_id}
        self.timer_waits = {k: v for k, v in self.timer_waits.items() if k[0] != execution_id}
        self.child_waits = {k: v for k, v in self.child_waits.items() if v[0] != execution_id}

    def pending_approvals(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Pending approval entries, optionally only those a user may act on"""
        entries = []
        for (execution_id, step_id), pending in self.approval_waits.items():
            if user_id is None or user_id in pending.get("approvers", []):
                entries.append({"execution_id": execution_id, **pending})
        return entries

    # -- approvals ------------------------------------------------------------

    async def approve(self, execution_id: str, step_id: str, user_id: str,
                      comments: Optional[str] = None) -> Execution:
        state: Dict[str, bool] = {}

        def mutation(execution: Execution) -> List[LogEntry]:
            state.clear()
            context = execution.context
            pending = context.pending_approvals.get(step_id)
            record = context.approvals.get(step_id)
            self._authorize(execution, step_id, user_id, pending, record)

            if pending is None:
                if record and record.get("status") == "approved" \
                        and user_id in record.get("approvals_by", [record.get("approved_by")]):
                    return []
                raise NotFound(f"No pending approval for step {step_id} of execution {execution.id}")
            if user_id in pending.get("approved_by", []):
                return []

            now = to_iso(self.clock())
            pending.setdefault("approved_by", []).append(user_id)
            logs = [_log(execution, f"Approval granted by user: {user_id}", step_id,
                         userId=user_id, comments=comments)]
            done = not pending.get("require_all", True) \
                or set(pending["approvers"]) <= set(pending["approved_by"])
            if not done:
                return logs

            context.approvals[step_id] = {
                "status": "approved",
                "approved_by": user_id,
                "at": now,
                "comments": comments,
                "approvers": list(pending["approvers"]),
                "approvals_by": list(pending["approved_by"]),
            }
            del context.pending_approvals[step_id]
            state["granted"] = True
            if execution.status == ExecutionStatus.WAITING_APPROVAL:
                execution.start()
                state["resume"] = True
            return logs

        execution = await self._mutate(execution_id, mutation)
        if state.get("granted"):
            self.approval_waits.pop((execution_id, step_id), None)
            self.metrics.inc("approvals_total", {"outcome": "granted"})
            logger.info(f"Step {step_id} approved by {user_id}",
                        extra={"executionId": execution_id, "stepId": step_id})
        if state.get("resume"):
            self.dispatch(execution_id)
        return execution

    async def reject(self, execution_id: str, step_id: str, user_id: str,
                     reason: Optional[str] = None) -> Execution:
        state: Dict[str, bool] = {}

        def mutation(execution: Execution) -> List[LogEntry]:
            state.clear()
            context = execution.context
            pending = context.pending_approvals.get(step_id)
            record = context.approvals.get(step_id)
            self._authorize(execution, step_id, user_id, pending, record)

            if pending is None:
                if record and record.get("status") == "rejected" and record.get("rejected_by") == user_id:
                    return []
                raise NotFound(f"No pending approval for step {step_id} of execution {execution.id}")

            message = f"Approval rejected by {user_id}"
            context.approvals[step_id] = {
                "status": "rejected",
                "rejected_by": user_id,
                "at": to_iso(self.clock()),
                "reason": reason,
                "approvers": list(pending["approvers"]),
            }
            del context.pending_approvals[step_id]
            execution.record_failure(step_id, {
                "success": False,
                "data": None,
                "error": {"code": "ApprovalRejected", "message": message},
            })
            execution.fail({"kind": "ApprovalRejected", "message": message,
                            "step_id": step_id, "reason": reason})
            state["rejected"] = True
            return [_log(execution, message, step_id, LogLevel.WARNING, userId=user_id, reason=reason)]

        execution = await self._mutate(execution_id, mutation)
        if state.get("rejected"):
            self.forget(execution_id)
            self.metrics.inc("approvals_total", {"outcome": "rejected"})
            logger.info(f"Step {step_id} rejected by {user_id}",
                        extra={"executionId": execution_id, "stepId": step_id,
                               "errorKind": "ApprovalRejected"})
            if self.finalize is not None:
                await self.finalize(execution)
        return execution

    @staticmethod
    def _authorize(execution: Execution, step_id: str, user_id: str,
                   pending: Optional[Dict[str, Any]], record: Optional[Dict[str, Any]]):
        source = pending if pending is not None else record
        if source is None:
            raise NotFound(f"No approval for step {step_id} of execution {execution.id}")
        if user_id not in source.get("approvers", []):
            raise Unauthorized(f"User {user_id} is not an approver for step {step_id}")

    # -- timers ---------------------------------------------------------------

    async def tick(self, now: Optional[datetime] = None) -> int:
        """Resume every timer whose wake time has passed"""
        now = now or self.clock()
        due = [key for key in self.timer_waits if from_iso(key[1]) <= now]
        for key in due:
            step_id = self.timer_waits.pop(key, None)
            if step_id is not None:
                await self._resume(key[0], ExecutionStatus.WAITING_TIMER,
                                   f"Timer elapsed for step: {step_id}", step_id)
        return len(due)

    async def run(self, poll_interval: float = 0.5):
        """Timer loop until ``stop`` is called"""
        self._stop.clear()
        logger.info("Wait manager started")
        while not self._stop.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Timer sweep failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Wait manager stopped")

    def stop(self):
        self._stop.set()

    # -- children -------------------------------------------------------------

    async def child_finished(self, child: Execution):
        """Record a terminal child on its parent and resume the parent if it waits"""
        key = self.child_waits.pop(child.id, None)
        if key is None:
            if not child.parent_execution_id:
                return
            parent = await self.store.executions.get(child.parent_execution_id)
            if parent is None:
                return
            step_id = next((s for s, c in parent.context.children.items()
                            if c.get("execution_id") == child.id), None)
            if step_id is None:
                return
            key = (parent.id, step_id)

        parent_id, step_id = key
        error = child.error or {}
        state: Dict[str, bool] = {}

        def mutation(execution: Execution) -> List[LogEntry]:
            state.clear()
            entry = execution.context.children.get(step_id)
            if not entry or entry.get("execution_id") != child.id or execution.is_terminal():
                return []
            entry.update({
                "status": child.status.value,
                "output": child.context.variables if child.status == ExecutionStatus.COMPLETED else None,
                "error_kind": error.get("kind"),
            })
            if execution.status == ExecutionStatus.WAITING_TIMER:
                execution.start()
                state["resume"] = True
            return [_log(execution, f"Subworkflow execution {child.id} {child.status.value}", step_id,
                         childExecutionId=child.id)]

        try:
            await self._mutate(parent_id, mutation)
        except NotFound:
            logger.warning(f"Parent execution {parent_id} of {child.id} no longer exists")
            return
        if state.get("resume"):
            self.dispatch(parent_id)

    # -- helpers --------------------------------------------------------------

    async def _resume(self, execution_id: str, expected: ExecutionStatus, message: str,
                      step_id: Optional[str] = None) -> Optional[Execution]:
        state: Dict[str, bool] = {}

        def mutation(execution: Execution) -> List[LogEntry]:
            state.clear()
            if execution.status != expected:
                return []
            execution.start()
            state["resume"] = True
            return [_log(execution, message, step_id)]

        try:
            execution = await self._mutate(execution_id, mutation)
        except NotFound:
            logger.warning(f"Waiting execution {execution_id} disappeared")
            return None
        if state.get("resume"):
            self.dispatch(execution_id)
        return execution

    async def _mutate(self, execution_id: str, mutation: Mutation) -> Execution:
        return await execute_with_retry(
            lambda: self.store.executions.mutate(execution_id, mutation),
            store_conflict_policy(),
            sleep=self.sleep,
        )


_TERMINAL_VALUES = frozenset(s.value for s in ExecutionStatus if s.is_terminal)


def _log(execution: Execution, message: str, step_id: Optional[str] = None,
         level: LogLevel = LogLevel.INFO, **data: Any) -> LogEntry:
    return LogEntry(
        execution_id=execution.id,
        workflow_id=execution.workflow_id,
        message=message,
        level=level,
        step_id=step_id,
        data=data,
    )
