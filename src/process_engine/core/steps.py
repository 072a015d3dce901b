"""
Step handlers, one per step kind

Handlers mutate the run's context in place and return a StepOutcome. Errors
raised inside a handler are normalized by the StepExecutor.
"""
import asyncio
import copy
import hashlib
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING
from urllib.parse import urlsplit

from ..evaluator import Evaluator, get_path, set_path
from ..exceptions import ValidationError
from ..integrations.action_registry import ActionContext, ActionRegistry
from ..integrations.collaborators import (
    ChangeRecorder, HttpClient, HttpxClient, LowCodeCRUD, Notifier,
    RecordingCRUD, RecordingHttpClient, RecordingNotifier,
)
from ..models import (
    Execution, ExecutionContext, ExecutionStatus, LogEntry, LogLevel, Step, StepKind,
    StepOutcome, Workflow, from_iso, to_iso, utcnow,
)
from .resolver import ParameterResolver
from .retry import CircuitBreakerRegistry, RetryPolicy, execute_with_retry

if TYPE_CHECKING:
    from ..cache.tiered import MultiTierCache
    from ..cache.prefetch import ActivityTracker
    from .executor import StepExecutor


logger = logging.getLogger(__name__)

DEFAULT_LOOP_VARIABLE = "item"
DEFAULT_CRUD_OUTPUT = "lowcode_result"
DEFAULT_HTTP_TIMEOUT_MS = 30000
DEFAULT_PARALLEL_CONCURRENCY = 10
# waits up to this long sleep in place; longer ones park the execution
INLINE_WAIT_MS = 1000

# (workflow_id, input_data, parent execution, step_id) -> child execution
SubworkflowLauncher = Callable[[str, Dict[str, Any], Execution, str], Awaitable[Execution]]


@dataclass
class StepServices:
    """Collaborators shared by all step handlers"""
    evaluator: Evaluator
    actions: ActionRegistry = field(default_factory=ActionRegistry)
    http: HttpClient = field(default_factory=HttpxClient)
    notifier: Optional[Notifier] = None
    crud: Optional[LowCodeCRUD] = None
    cache: Optional["MultiTierCache"] = None
    activity: Optional["ActivityTracker"] = None
    breakers: CircuitBreakerRegistry = field(default_factory=CircuitBreakerRegistry)
    launcher: Optional[SubworkflowLauncher] = None
    recorder: Optional[ChangeRecorder] = None
    clock: Callable[[], datetime] = utcnow
    inline_wait_ms: int = INLINE_WAIT_MS
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    resolver: ParameterResolver = field(init=False)

    def __post_init__(self):
        self.resolver = ParameterResolver(self.evaluator)

    def for_dry_run(self, recorder: ChangeRecorder) -> "StepServices":
        """Copy whose outbound collaborators only record what they would do"""
        return replace(
            self,
            http=RecordingHttpClient(recorder),
            notifier=RecordingNotifier(recorder),
            crud=RecordingCRUD(recorder, self.crud),
            cache=None,
            activity=None,
            launcher=None,
            recorder=recorder,
        )


@dataclass
class StepRun:
    """The slice of an execution a handler works on"""
    execution: Execution
    workflow: Workflow
    context: ExecutionContext
    dry_run: bool = False
    logs: List[LogEntry] = field(default_factory=list)

    @property
    def variables(self) -> Dict[str, Any]:
        return self.context.variables

    def log(self, message: str, level: LogLevel = LogLevel.INFO,
            step_id: Optional[str] = None, **data: Any):
        self.logs.append(LogEntry(
            execution_id=self.execution.id,
            workflow_id=self.execution.workflow_id,
            message=message,
            level=level,
            step_id=step_id,
            data=data,
        ))

    def fork(self) -> "StepRun":
        """Branch copy working on its own snapshot of the variables"""
        context = replace(self.context, variables=copy.deepcopy(self.context.variables))
        return StepRun(self.execution, self.workflow, context, self.dry_run)


def merge_changes(target: Dict[str, Any], snapshot: Dict[str, Any], changed: Dict[str, Any]):
    """Apply what changed between ``snapshot`` and ``changed`` onto ``target``"""
    for key, value in changed.items():
        before = snapshot.get(key)
        if key in snapshot and before == value:
            continue
        if isinstance(value, dict) and isinstance(before, dict) and isinstance(target.get(key), dict):
            merge_changes(target[key], before, value)
        else:
            target[key] = copy.deepcopy(value)
    for key in snapshot:
        if key not in changed:
            target.pop(key, None)


def _flatten(values: List[Any]) -> List[Any]:
    flat = []
    for value in values:
        if isinstance(value, list):
            flat.extend(v for v in value if v is not None)
        elif value is not None:
            flat.append(value)
    return flat


def _same_value(left: Any, right: Any) -> bool:
    # keep True from matching 1
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


class StepHandler:
    """Base class for per-kind handlers"""
    # reserved output key that receives the kind's primary value
    primary_output: Optional[str] = None

    def __init__(self, services: StepServices, executor: "StepExecutor"):
        self.services = services
        self.executor = executor

    async def execute(self, step: Step, run: StepRun) -> StepOutcome:
        raise NotImplementedError

    def primary_value(self, outcome: StepOutcome) -> Any:
        return outcome.data

    def resolve(self, value: Any, run: StepRun) -> Any:
        return self.services.resolver.resolve(value, run.variables)

    def resolve_string(self, value: Any, run: StepRun) -> str:
        return self.services.resolver.resolve_string(value, run.variables)

    async def evaluate(self, expr: Any, run: StepRun) -> Any:
        """``$path`` and templates resolve; other strings are expressions"""
        if not isinstance(expr, str):
            return self.resolve(expr, run)
        if expr.startswith("$") or "${" in expr:
            return self.resolve(expr, run)
        return await self.services.evaluator.evaluate(expr, run.variables, self.services.clock())


class TriggerHandler(StepHandler):

    async def execute(self, step: Step, run: StepRun) -> StepOutcome:
        return StepOutcome.ok(copy.deepcopy(run.execution.input_data))


class ActionHandler(StepHandler):

    async def execute(self, step: Step, run: StepRun) -> StepOutcome:
        action = step.config.get("action")
        if not action:
            return StepOutcome.failed(ValidationError.kind, f"Action step {step.id} has no action")
        registry = self.services.actions
        definition = registry.get(action)
        if definition is None:
            raise ValidationError(f"Unknown action: {action}")

        parameters = self.resolve(step.config.get("parameters") or {}, run)
        if run.dry_run and definition.side_effects:
            if self.services.recorder is not None:
                self.services.recorder.record("action", action=action, parameters=parameters)
            return StepOutcome.ok({"action": action, "parameters": parameters, "dryRun": True})

        context = ActionContext(
            execution_id=run.execution.id,
            workflow_id=run.execution.workflow_id,
            step_id=step.id,
            variables=copy.deepcopy(run.variables),
            dry_run=run.dry_run,
        )
        response = await registry.invoke(action, parameters, context)
        for path, value in response.variables.items():
            set_path(run.variables, path, value)
        for entry in context.logs:
            run.log(entry["message"], step_id=step.id, **entry["data"])
        return StepOutcome.ok(response.result)


class ConditionHandler(StepHandler):
    primary_output = "result"

    async def execute(self, step: Step, run: StepRun) -> StepOutcome:
        expr = step.config.get("condition") or step.config.get("expression")
        if not expr:
            return StepOutcome.failed(ValidationError.kind, f"Condition step {step.id} has no condition")
        value = await self.services.evaluator.evaluate_predicate(expr, run.variables, self.services.clock())
        return StepOutcome.ok({"condition": value})

    def primary_value(self, outcome: StepOutcome) -> Any:
        return outcome.data["condition"]


class ScriptHandler(StepHandler):
    primary_output = "result"

    async def execute(self, step: Step, run: StepRun) -> StepOutcome:
        code = step.config.get("code") or step.config.get("script")
        if not code:
            return StepOutcome.failed(ValidationError.kind, f"Script step {step.id} has no code")
        evaluator = self.services.evaluator
        limits = evaluator.limits
        if step.timeout_ms:
            limits = replace(limits, timeout_ms=int(step.timeout_ms))
        result = await evaluator.run_script(code, run.variables, limits, self.services.clock())
        run.variables.update(result.updated_vars)
        return StepOutcome.ok(result.result_value)


class DataTransformHandler(StepHandler):
    primary_output = "result"

    async def execute(self, step: Step, run: StepRun) -> StepOutcome:
        config = step.config
        source_field = config.get("sourceField")
        source = get_path(run.variables, source_field) if source_field else None
        scope = {**run.variables, "input": copy.deepcopy(source)}
        evaluator = self.services.evaluator

        if config.get("expression"):
            value = await evaluator.evaluate(config["expression"], scope, self.services.clock())
        else:
            code = config.get("transformCode") or config.get("code")
            if not code:
                return StepOutcome.failed(
                    ValidationError.kind, f"Transform step {step.id} has no transformCode"
                )
            result = await evaluator.run_script(code, scope, now=self.services.clock())
            value = result.result_value

        if config.get("targetField"):
            set_path(run.variables, config["targetField"], value)
        return StepOutcome.ok(value)


class ApiCallHandler(StepHandler):
    primary_output = "response"

    async def execute(self, step: Step, run: StepRun) -> StepOutcome:
        config = step.config
        method = (config.get("method") or "GET").upper()
        url = self.resolve_string(config.get("url"), run)
        if not url:
            return StepOutcome.failed(ValidationError.kind, f"API call step {step.id} has no url")
        headers = {
            str(k): str(v) for k, v in (self.resolve(config.get("headers") or {}, run)).items()
        }
        body = self.resolve(config.get("body"), run)
        timeout_ms = int(step.timeout_ms or config.get("timeoutMs") or DEFAULT_HTTP_TIMEOUT_MS)
        target = urlsplit(url).netloc or url
        policy = RetryPolicy.from_dict(config["retry"]) if config.get("retry") else RetryPolicy(max_attempts=1)
        http = self.services.http

        async def send():
            return await self.services.breakers.call(
                target, lambda: http.request(method, url, headers, body, timeout_ms)
            )

        async def fetch():
            response = await execute_with_retry(send, policy, sleep=self.services.sleep)
            return {"status_code": response.status_code, "body": response.body}

        cache = self.services.cache
        if config.get("idempotent") and cache is not None and not run.dry_run:
            cache_config = config.get("cache") or {}
            tenant = cache_config.get("tenant") or run.execution.workflow_id
            key = self.cache_key(method, url, body)
            result = await cache.get_or_fetch(
                tenant=tenant, key=key, fetch=fetch,
                priority=cache_config.get("priority", "medium"),
            )
            if self.services.activity is not None:
                self.services.activity.record(
                    run.execution.initiator, tenant, key,
                    {"method": method, "url": url, "headers": headers, "body": body,
                     "timeoutMs": timeout_ms},
                )
        else:
            result = await fetch()

        data = result["body"]
        for target_field, source_path in (config.get("responseMapping") or {}).items():
            value = data if source_path == "$response" else get_path(data, source_path)
            set_path(run.variables, target_field, value)
        return StepOutcome.ok(data)

    @staticmethod
    def cache_key(method: str, url: str, body: Any) -> str:
        digest = hashlib.sha256(json.dumps(body, sort_keys=True, default=str).encode()).hexdigest()
        return f"api:{method}:{url}:{digest[:16]}"


class LoopHandler(StepHandler):
    primary_output = "results"

    async def execute(self, step: Step, run: StepRun) -> StepOutcome:
        items = await self.evaluate(step.config.get("collection"), run)
        if not isinstance(items, list):
            return StepOutcome.failed(ValidationError.kind, "Loop collection must be a list")
        item_var = step.config.get("itemVariable") or DEFAULT_LOOP_VARIABLE
        body_ids = step.config.get("steps") or []
        absorb = bool(step.error_handler and step.error_handler.skip)
        results: List[Any] = []

        for index, item in enumerate(items):
            run.variables[item_var] = item
            run.variables[f"{item_var}_index"] = index
            for body_id in body_ids:
                body = run.workflow.get_step(body_id)
                if body is None:
                    return StepOutcome.failed(ValidationError.kind, f"Loop step not found: {body_id}")
                if not body.enabled:
                    continue
                outcome = await self.executor.execute(body, run)
                if outcome.should_pause:
                    return StepOutcome.failed(
                        ValidationError.kind, f"Step {body_id} cannot pause inside a loop"
                    )
                if not outcome.success:
                    if absorb:
                        run.log(f"Loop step {body_id} failed at index {index}, continuing",
                                LogLevel.WARNING, step.id, error=outcome.error)
                        results.append({"error": outcome.error, "index": index})
                        continue
                    return StepOutcome(
                        success=False,
                        data=results,
                        error={
                            "code": outcome.error_code,
                            "message": f"Loop step {body_id} failed at index {index}: "
                                       f"{outcome.error.get('message')}",
                        },
                    )
                results.append(outcome.data)
        return StepOutcome.ok(results)


class SwitchHandler(StepHandler):

    async def execute(self, step: Step, run: StepRun) -> StepOutcome:
        expr = step.config.get("expression")
        if expr is None:
            return StepOutcome.failed(ValidationError.kind, f"Switch step {step.id} has no expression")
        value = await self.evaluate(expr, run)
        cases = step.config.get("cases") or []

        matched = next(
            (case for case in cases
             if not case.get("default") and "value" in case and _same_value(case["value"], value)),
            None,
        )
        if matched is None:
            matched = next((case for case in cases if case.get("default")), None)

        if matched is not None:
            next_step = matched.get("nextStep")
            name = matched.get("name") or ("default" if matched.get("default") else str(matched.get("value")))
        else:
            next_step = step.config.get("default")
            name = "default"
        return StepOutcome.ok({"value": value, "matchedCase": name}, next_step_override=next_step)


class WaitHandler(StepHandler):

    async def execute(self, step: Step, run: StepRun) -> StepOutcome:
        now = self.services.clock()
        timer = run.context.timers.get(step.id)
        if timer and timer.get("wake_at"):
            if now >= from_iso(timer["wake_at"]):
                run.context.timers.pop(step.id, None)
                return StepOutcome.ok({"waited": timer.get("duration_ms"), "resumed": True})
            return StepOutcome.paused(ExecutionStatus.WAITING_TIMER, {"wake_at": timer["wake_at"]})

        duration_ms = await self.duration_ms(step, run, now)
        if run.dry_run:
            return StepOutcome.ok({"waited": 0, "duration_ms": duration_ms, "dryRun": True})
        if duration_ms <= self.services.inline_wait_ms:
            if duration_ms > 0:
                await self.services.sleep(duration_ms / 1000.0)
            return StepOutcome.ok({"waited": duration_ms})

        wake_at = to_iso(now + timedelta(milliseconds=duration_ms))
        run.context.timers[step.id] = {"wake_at": wake_at, "duration_ms": duration_ms}
        return StepOutcome.paused(
            ExecutionStatus.WAITING_TIMER, {"wake_at": wake_at, "duration_ms": duration_ms}
        )

    async def duration_ms(self, step: Step, run: StepRun, now: datetime) -> int:
        if step.config.get("until") is not None:
            until = await self.evaluate(step.config["until"], run)
            moment = from_iso(until) if isinstance(until, str) else None
            if moment is None:
                raise ValidationError(f"Wait step {step.id} has an invalid 'until' value")
            return max(0, int((moment - now).total_seconds() * 1000))

        duration = step.config.get("duration", 0)
        if isinstance(duration, str):
            duration = await self.evaluate(duration, run)
        if isinstance(duration, bool) or not isinstance(duration, (int, float)):
            raise ValidationError(f"Wait step {step.id} duration must be a number of milliseconds")
        return max(0, int(duration))


class ParallelHandler(StepHandler):
    primary_output = "results"

    async def execute(self, step: Step, run: StepRun) -> StepOutcome:
        raw = step.config.get("branches") or step.config.get("steps") or []
        branches = [branch if isinstance(branch, list) else [branch] for branch in raw]
        if not branches:
            return StepOutcome.ok([])
        semaphore = asyncio.Semaphore(
            max(1, int(step.config.get("maxConcurrency", DEFAULT_PARALLEL_CONCURRENCY)))
        )
        snapshot = copy.deepcopy(run.variables)
        forks = [run.fork() for _ in branches]

        async def run_branch(index: int, step_ids: List[str], fork: StepRun) -> StepOutcome:
            async with semaphore:
                last: Any = None
                for step_id in step_ids:
                    child = run.workflow.get_step(step_id)
                    if child is None:
                        return StepOutcome.failed(ValidationError.kind, f"Parallel step not found: {step_id}")
                    if not child.enabled:
                        continue
                    outcome = await self.executor.execute(child, fork)
                    if outcome.should_pause:
                        return StepOutcome.failed(
                            ValidationError.kind, f"Step {step_id} cannot pause inside a parallel branch"
                        )
                    if not outcome.success:
                        if child.error_handler and child.error_handler.skip:
                            fork.log(f"Parallel branch {index} skipped failed step {step_id}",
                                     LogLevel.WARNING, step.id, error=outcome.error)
                            last = {"error": outcome.error}
                            continue
                        return outcome
                    last = outcome.data
                return StepOutcome.ok(last)

        outcomes = await asyncio.gather(
            *(run_branch(i, ids, fork) for i, (ids, fork) in enumerate(zip(branches, forks)))
        )
        for fork in forks:
            run.logs.extend(fork.logs)

        results = [outcome.data for outcome in outcomes]
        for index, outcome in enumerate(outcomes):
            if not outcome.success:
                return StepOutcome(
                    success=False,
                    data=results,
                    error={
                        "code": outcome.error_code,
                        "message": f"Parallel branch {index} failed: {outcome.error.get('message')}",
                    },
                )

        # branch order decides conflicts: the highest index is applied last
        for fork in forks:
            merge_changes(run.variables, snapshot, fork.variables)
        return StepOutcome.ok(results)


class SubworkflowHandler(StepHandler):

    async def execute(self, step: Step, run: StepRun) -> StepOutcome:
        child_state = run.context.children.get(step.id)
        if child_state:
            return self.resume(step, child_state)

        workflow_id = self.resolve(step.config.get("workflowId"), run)
        if not workflow_id:
            return StepOutcome.failed(ValidationError.kind, f"Subworkflow step {step.id} has no workflowId")
        input_data = self.resolve(step.config.get("inputMapping") or {}, run)
        await_completion = bool(step.config.get("awaitCompletion", False))

        if run.dry_run:
            if self.services.recorder is not None:
                self.services.recorder.record("subworkflow", workflowId=workflow_id, input=input_data)
            return StepOutcome.ok({"executionId": None, "dryRun": True})
        if self.services.launcher is None:
            return StepOutcome.failed(ValidationError.kind, "Subworkflows are not available here")

        child = await self.services.launcher(workflow_id, input_data, run.execution, step.id)
        run.log(f"Started subworkflow {workflow_id}", step_id=step.id, childExecutionId=child.id)
        if not await_completion:
            return StepOutcome.ok({"executionId": child.id})

        run.context.children[step.id] = {"execution_id": child.id, "status": child.status.value}
        return StepOutcome.paused(ExecutionStatus.WAITING_TIMER, {"executionId": child.id})

    def resume(self, step: Step, child_state: Dict[str, Any]) -> StepOutcome:
        status = child_state.get("status")
        data = {
            "executionId": child_state.get("execution_id"),
            "status": status,
            "output": child_state.get("output"),
        }
        if status == ExecutionStatus.COMPLETED.value:
            return StepOutcome.ok(data)
        if status in (ExecutionStatus.FAILED.value, ExecutionStatus.CANCELLED.value):
            outcome = StepOutcome.failed(
                child_state.get("error_kind") or "UpstreamError",
                f"Subworkflow execution {data['executionId']} {status}",
            )
            outcome.data = data
            return outcome
        return StepOutcome.paused(ExecutionStatus.WAITING_TIMER, data)


class ApprovalHandler(StepHandler):

    async def execute(self, step: Step, run: StepRun) -> StepOutcome:
        existing = run.context.approvals.get(step.id)
        if existing:
            if existing.get("status") == "approved":
                return StepOutcome.ok({
                    "approved": True,
                    "approved_by": existing.get("approved_by"),
                    "at": existing.get("at"),
                    "comments": existing.get("comments"),
                })
            if existing.get("status") == "rejected":
                outcome = StepOutcome.failed(
                    "ApprovalRejected", f"Approval rejected by {existing.get('rejected_by')}"
                )
                outcome.data = existing
                return outcome

        config = step.config
        approvers = config.get("approvers") or []
        if not isinstance(approvers, list):
            approvers = [approvers]
        resolved = [str(a) for a in _flatten([self.resolve(a, run) for a in approvers])]
        if not resolved:
            return StepOutcome.failed(ValidationError.kind, f"Approval step {step.id} has no approvers")

        if run.dry_run:
            return StepOutcome.ok({"approved": True, "approvers": resolved, "dryRun": True})

        pending = run.context.pending_approvals.get(step.id)
        if pending is None:
            require_all = config.get("requireAll", config.get("requireAllApprovals", True))
            pending = {
                "step_id": step.id,
                "approvers": resolved,
                "title": self.resolve_string(config.get("title") or step.name, run),
                "description": self.resolve_string(config.get("description") or "", run),
                "due_date": config.get("dueDate"),
                "require_all": require_all is not False,
                "approved_by": [],
                "status": "pending",
                "created_at": to_iso(self.services.clock()),
            }
            run.context.pending_approvals[step.id] = pending
            run.log(f"Approval requested from: {', '.join(resolved)}", step_id=step.id,
                    approvers=resolved)
        return StepOutcome.paused(ExecutionStatus.WAITING_APPROVAL, copy.deepcopy(pending))


class NotificationHandler(StepHandler):
    primary_output = "notificationId"

    async def execute(self, step: Step, run: StepRun) -> StepOutcome:
        config = step.config
        kind = config.get("type") or "email"
        recipients = config.get("recipients") or []
        if not isinstance(recipients, list):
            recipients = [recipients]
        recipients = _flatten([self.resolve(r, run) for r in recipients])
        now = self.services.clock()
        notification = {
            "type": kind,
            "recipients": recipients,
            "subject": self.resolve_string(config.get("subject") or "", run),
            "message": self.resolve_string(config.get("message") or "", run),
            "template": config.get("template"),
            "channel": config.get("channel") or "default",
            "priority": config.get("priority") or "normal",
            "data": self.resolve(config.get("data") or {}, run),
            "metadata": {
                "workflowId": run.execution.workflow_id,
                "executionId": run.execution.id,
                "stepId": step.id,
                "timestamp": to_iso(now),
            },
        }
        run.log(f"Sending {kind} notification to: {', '.join(map(str, recipients))}", step_id=step.id)

        notifier = self.services.notifier
        if notifier is not None:
            try:
                sent = await notifier.send(notification)
                return StepOutcome.ok({
                    "notificationId": sent.get("id"),
                    "status": sent.get("status", "sent"),
                    "recipients": recipients,
                })
            except Exception as e:
                reason = str(e) or type(e).__name__
        else:
            reason = "no notifier configured"

        # best effort: keep the message and let the workflow advance
        logger.warning(f"Notifier unavailable, notification logged locally: {reason}",
                       extra={"executionId": run.execution.id, "stepId": step.id})
        run.log(f"Notification logged locally: {reason}", LogLevel.WARNING, step.id,
                notification=notification)
        run.context.notifications.append(notification)
        return StepOutcome.ok({
            "notificationId": f"local_{int(now.timestamp() * 1000)}",
            "status": "logged",
            "recipients": recipients,
            "warning": "Notifier unavailable, notification logged locally",
        })

    def primary_value(self, outcome: StepOutcome) -> Any:
        return outcome.data.get("notificationId")


class CrudHandler(StepHandler):
    """Handles every crud.* kind"""

    REQUIRED = {
        StepKind.CRUD_CREATE: ("entityId", "data"),
        StepKind.CRUD_READ: ("entityId", "recordId"),
        StepKind.CRUD_UPDATE: ("entityId", "recordId", "data"),
        StepKind.CRUD_DELETE: ("entityId", "recordId"),
        StepKind.CRUD_QUERY: ("entityId",),
        StepKind.CRUD_FORMULA: ("entityId", "recordId", "formulaName"),
    }

    async def execute(self, step: Step, run: StepRun) -> StepOutcome:
        params = self.resolve(step.config.get("parameters") or {}, run)
        for name in self.REQUIRED[step.kind]:
            if params.get(name) in (None, ""):
                return StepOutcome.failed(ValidationError.kind, f"{name} is required")

        crud = self.services.crud
        if crud is None:
            return StepOutcome.failed("UpstreamError", "No low-code CRUD runtime configured")

        ctx = {
            "userId": run.execution.initiator,
            "applicationId": params.get("applicationId"),
            "executionId": run.execution.id,
        }
        entity_id = params["entityId"]
        if step.kind == StepKind.CRUD_CREATE:
            result = await crud.create(entity_id, params["data"], ctx)
        elif step.kind == StepKind.CRUD_READ:
            result = await crud.read(entity_id, params["recordId"], ctx)
        elif step.kind == StepKind.CRUD_UPDATE:
            result = await crud.update(entity_id, params["recordId"], params["data"], ctx)
        elif step.kind == StepKind.CRUD_DELETE:
            ctx["softDelete"] = params.get("softDelete", True)
            result = await crud.delete(entity_id, params["recordId"], ctx)
        elif step.kind == StepKind.CRUD_QUERY:
            result = await crud.query(entity_id, params.get("query") or {}, ctx)
        else:
            result = await crud.formula(entity_id, params["recordId"], params["formulaName"], ctx)

        if not result.success:
            return StepOutcome.failed("UpstreamError", result.error or f"{step.kind.value} failed")
        target = (step.outputs.get("outputVariable") or step.config.get("outputVariable")
                  or DEFAULT_CRUD_OUTPUT)
        set_path(run.variables, target, result.data)
        return StepOutcome.ok(result.data)
