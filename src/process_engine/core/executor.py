"""
Step executor: dispatches a step to its handler and normalizes the outcome
"""
import asyncio
import logging
from typing import Any, Dict

from ..evaluator import get_path, set_path
from ..exceptions import StepTimeoutError, UpstreamError, ValidationError
from ..models import Step, StepKind, StepOutcome
from .steps import (
    ActionHandler, ApiCallHandler, ApprovalHandler, ConditionHandler, CrudHandler,
    DataTransformHandler, LoopHandler, NotificationHandler, ParallelHandler, ScriptHandler,
    StepHandler, StepRun, StepServices, SubworkflowHandler, SwitchHandler, TriggerHandler,
    WaitHandler,
)


logger = logging.getLogger(__name__)


class StepExecutor:
    """Runs a single step of any kind; never raises for step-level failures"""

    def __init__(self, services: StepServices):
        self.services = services
        crud = CrudHandler(services, self)
        self.handlers: Dict[StepKind, StepHandler] = {
            StepKind.TRIGGER: TriggerHandler(services, self),
            StepKind.ACTION: ActionHandler(services, self),
            StepKind.CONDITION: ConditionHandler(services, self),
            StepKind.SCRIPT: ScriptHandler(services, self),
            StepKind.DATA_TRANSFORM: DataTransformHandler(services, self),
            StepKind.API_CALL: ApiCallHandler(services, self),
            StepKind.LOOP: LoopHandler(services, self),
            StepKind.SWITCH: SwitchHandler(services, self),
            StepKind.WAIT: WaitHandler(services, self),
            StepKind.PARALLEL: ParallelHandler(services, self),
            StepKind.SUBWORKFLOW: SubworkflowHandler(services, self),
            StepKind.APPROVAL: ApprovalHandler(services, self),
            StepKind.NOTIFICATION: NotificationHandler(services, self),
        }
        for kind in StepKind:
            if kind.is_crud:
                self.handlers[kind] = crud

    async def execute(self, step: Step, run: StepRun) -> StepOutcome:
        handler = self.handlers.get(step.kind)
        if handler is None:
            return StepOutcome.failed(ValidationError.kind, f"Unsupported step kind: {step.kind.value}")

        try:
            if step.timeout_ms:
                outcome = await asyncio.wait_for(
                    handler.execute(step, run), timeout=step.timeout_ms / 1000.0
                )
            else:
                outcome = await handler.execute(step, run)
            if outcome.success and not outcome.should_pause:
                self.apply_outputs(step, handler, outcome, run)
        except asyncio.TimeoutError:
            logger.warning(f"Step {step.id} timed out after {step.timeout_ms} ms",
                           extra={"executionId": run.execution.id, "stepId": step.id,
                                  "errorKind": StepTimeoutError.kind})
            return StepOutcome.failed(
                StepTimeoutError.kind, f"Step {step.id} exceeded {step.timeout_ms} ms"
            )
        except Exception as e:
            outcome = StepOutcome.from_error(e)
            if isinstance(e, UpstreamError):
                if e.status_code is not None:
                    outcome.error["status_code"] = e.status_code
                if e.body_excerpt:
                    outcome.error["body_excerpt"] = e.body_excerpt
            logger.warning(f"Step {step.id} failed: {outcome.error['message']}",
                           extra={"executionId": run.execution.id, "stepId": step.id,
                                  "errorKind": outcome.error_code})
        return outcome

    def apply_outputs(self, step: Step, handler: StepHandler, outcome: StepOutcome, run: StepRun):
        """Write the step result back into variables per ``step.outputs``"""
        for target, source in step.outputs.items():
            if handler.primary_output and target == handler.primary_output:
                set_path(run.variables, source, handler.primary_value(outcome))
            elif target == "outputVariable" and step.kind.is_crud:
                continue
            else:
                set_path(run.variables, target, self._select(outcome.data, source))

    @staticmethod
    def _select(data: Any, source: Any) -> Any:
        if source in (None, "", "$"):
            return data
        return get_path(data, source)
