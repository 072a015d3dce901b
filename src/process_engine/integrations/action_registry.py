"""
Registry of handlers behind ``action`` steps
"""
from typing import Dict, Any, Optional, List, Callable
from dataclasses import dataclass, field
import inspect
import logging
import time

from jsonschema import Draft7Validator

from ..exceptions import ValidationError


logger = logging.getLogger(__name__)


@dataclass
class ActionDefinition:
    """Action definition"""
    action_id: str
    name: str
    description: str = ""
    parameters_schema: Dict[str, Any] = field(default_factory=dict)
    # side-effect free actions still run during dry runs
    side_effects: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ActionContext:
    """What a handler may see of the running execution"""
    execution_id: str
    workflow_id: str
    step_id: str
    variables: Dict[str, Any]
    dry_run: bool = False
    logs: List[Dict[str, Any]] = field(default_factory=list)

    def log(self, message: str, **data: Any):
        self.logs.append({"message": message, "data": data})


@dataclass
class ActionResponse:
    result: Any
    duration_ms: float
    # variables the handler wants written back
    variables: Dict[str, Any] = field(default_factory=dict)


class ActionRegistry:
    """Maps action names to sync or async handlers"""

    def __init__(self, register_builtins: bool = True):
        self.actions: Dict[str, ActionDefinition] = {}
        self.handlers: Dict[str, Callable] = {}
        self._validators: Dict[str, Draft7Validator] = {}
        if register_builtins:
            for definition, handler in BuiltinActions.all():
                self.register(definition, handler)

    def register(self, definition: ActionDefinition, handler: Callable):
        if not callable(handler):
            raise ValueError(f"Handler for action {definition.action_id} must be callable")
        self.actions[definition.action_id] = definition
        self.handlers[definition.action_id] = handler
        if definition.parameters_schema:
            self._validators[definition.action_id] = Draft7Validator(definition.parameters_schema)
        logger.info(f"Registered action: {definition.action_id}")

    def unregister(self, action_id: str):
        if action_id in self.actions:
            del self.actions[action_id]
            del self.handlers[action_id]
            self._validators.pop(action_id, None)
            logger.info(f"Unregistered action: {action_id}")

    def get(self, action_id: str) -> Optional[ActionDefinition]:
        return self.actions.get(action_id)

    def list(self) -> List[ActionDefinition]:
        return list(self.actions.values())

    def validate_parameters(self, action_id: str, parameters: Dict[str, Any]) -> List[str]:
        if action_id not in self.actions:
            return [f"Unknown action: {action_id}"]
        validator = self._validators.get(action_id)
        if validator is None:
            return []
        return [
            f"{'.'.join(str(p) for p in error.path) or '<root>'}: {error.message}"
            for error in validator.iter_errors(parameters)
        ]

    async def invoke(self, action_id: str, parameters: Dict[str, Any],
                     context: ActionContext) -> ActionResponse:
        """Invoke a handler; raises ValidationError for unknown actions or bad parameters"""
        handler = self.handlers.get(action_id)
        if handler is None:
            raise ValidationError(f"Unknown action: {action_id}")

        errors = self.validate_parameters(action_id, parameters)
        if errors:
            raise ValidationError(f"Invalid parameters for action {action_id}", errors)

        start_time = time.monotonic()
        try:
            if inspect.iscoroutinefunction(handler):
                result = await handler(parameters, context)
            else:
                result = handler(parameters, context)
        except Exception as e:
            logger.error(f"Action {action_id} failed: {e}",
                         extra={"executionId": context.execution_id, "stepId": context.step_id})
            raise

        duration_ms = (time.monotonic() - start_time) * 1000
        logger.debug(f"Action {action_id} finished in {duration_ms:.2f}ms")

        variables = {}
        if isinstance(result, ActionResponse):
            return result
        if isinstance(result, dict) and "__variables__" in result:
            result = dict(result)
            variables = result.pop("__variables__") or {}
        return ActionResponse(result=result, duration_ms=duration_ms, variables=variables)


class BuiltinActions:
    """Actions every registry starts with"""

    @staticmethod
    def set_variables() -> tuple:
        definition = ActionDefinition(
            action_id="set_variables",
            name="Set variables",
            description="Write the resolved parameters into execution variables",
            parameters_schema={"type": "object"},
            side_effects=False,
        )

        def handler(params: Dict[str, Any], context: ActionContext):
            return {"__variables__": dict(params), "updated": sorted(params)}

        return definition, handler

    @staticmethod
    def log() -> tuple:
        definition = ActionDefinition(
            action_id="log",
            name="Log",
            description="Append an info entry to the execution log",
            parameters_schema={
                "type": "object",
                "properties": {"message": {"type": "string"}},
                "required": ["message"],
            },
            side_effects=False,
        )

        def handler(params: Dict[str, Any], context: ActionContext):
            extra = {k: v for k, v in params.items() if k != "message"}
            context.log(params["message"], **extra)
            return {"logged": params["message"]}

        return definition, handler

    @staticmethod
    def noop() -> tuple:
        definition = ActionDefinition(action_id="noop", name="No-op", side_effects=False)

        def handler(params: Dict[str, Any], context: ActionContext):
            return None

        return definition, handler

    @classmethod
    def all(cls) -> List[tuple]:
        return [cls.set_variables(), cls.log(), cls.noop()]
