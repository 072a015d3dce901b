"""
Workflow definition parser and validator
"""
import json
from collections import deque
from pathlib import Path
from typing import Any, Dict, List, Set, Union

import yaml
from jsonschema import Draft7Validator

from ..exceptions import ValidationError
from ..models import Step, StepKind, TriggerKind, Workflow, WorkflowStatus

# workflows this large still run but are flagged
LARGE_WORKFLOW_STEPS = 100

WORKFLOW_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["name", "steps"],
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "description": {"type": ["string", "null"]},
        "status": {"enum": [s.value for s in WorkflowStatus]},
        "triggerKind": {"enum": [t.value for t in TriggerKind]},
        "variables": {"type": "object"},
        "tags": {"type": "array", "items": {"type": "string"}},
        "settings": {
            "type": "object",
            "properties": {
                "maxIterations": {"type": "integer", "minimum": 1},
                "maxExecutionTimeMs": {"type": "integer", "minimum": 1},
            },
        },
        "steps": {"type": "array", "minItems": 1, "items": {"$ref": "#/definitions/step"}},
    },
    "definitions": {
        "step": {
            "type": "object",
            "required": ["id"],
            "anyOf": [{"required": ["kind"]}, {"required": ["type"]}],
            "properties": {
                "id": {"type": "string", "minLength": 1},
                "kind": {"type": "string"},
                "type": {"type": "string"},
                "name": {"type": "string"},
                "enabled": {"type": "boolean"},
                "config": {"type": "object"},
                "nextSteps": {
                    "anyOf": [
                        {"type": "null"},
                        {"type": "string"},
                        {"type": "array", "items": {"type": "string"}},
                        {"type": "object", "additionalProperties": {"type": "string"}},
                    ]
                },
                "errorHandler": {
                    "type": "object",
                    "properties": {
                        "retry": {"type": "boolean"},
                        "skip": {"type": "boolean"},
                        "fallback": {"type": "string"},
                    },
                },
                "retryConfig": {
                    "type": "object",
                    "properties": {
                        "maxRetries": {"type": "integer", "minimum": 0},
                        "retryDelayMs": {"type": "integer", "minimum": 0},
                    },
                },
                "timeoutMs": {"type": ["integer", "null"], "minimum": 1},
                "outputs": {"type": "object", "additionalProperties": {"type": "string"}},
            },
        }
    },
}

# config keys a step cannot run without; a tuple means any one of them
REQUIRED_CONFIG = {
    StepKind.ACTION: ["action"],
    StepKind.CONDITION: [("condition", "expression")],
    StepKind.SCRIPT: [("code", "script")],
    StepKind.API_CALL: ["url"],
    StepKind.LOOP: ["collection"],
    StepKind.SWITCH: ["expression"],
    StepKind.SUBWORKFLOW: ["workflowId"],
    StepKind.APPROVAL: ["approvers"],
}


class WorkflowParser:
    """Loads definitions from dicts, JSON or YAML and validates them"""

    def __init__(self):
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }
        self.validator = Draft7Validator(WORKFLOW_SCHEMA)

    def load(self, source: Union[str, Dict[str, Any]]) -> Dict[str, Any]:
        """Raw definition dict from a dict or a YAML/JSON string; file paths are refused"""
        if isinstance(source, dict):
            data = source
        elif isinstance(source, str):
            if _looks_like_path(source):
                raise ValidationError("Workflow definition must be YAML or JSON content, not a file path")
            data = self._parse_yaml(source)
        else:
            raise ValidationError(f"Unsupported definition source: {type(source).__name__}")
        return self._unwrap(data)

    def read_file(self, file_path: Union[str, Path]) -> Dict[str, Any]:
        """Raw definition dict from a local YAML or JSON file"""
        return self._unwrap(self.load_file(Path(file_path)))

    def load_file(self, file_path: Path) -> Dict[str, Any]:
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise ValidationError(f"Unsupported file format: {suffix}")
        if not file_path.is_file():
            raise ValidationError(f"Workflow file not found: {file_path}")
        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()
        return self.parsers[suffix](content)

    def parse(self, source: Union[str, Dict[str, Any]]) -> Workflow:
        """Load and validate; raises ValidationError listing every problem"""
        data = self.load(source)
        report = self.validate(data)
        if report["errors"]:
            raise ValidationError(
                f"Workflow validation failed: {'; '.join(report['errors'])}",
                errors=report["errors"],
            )
        return Workflow.from_dict(data)

    @staticmethod
    def _unwrap(data: Any) -> Dict[str, Any]:
        if isinstance(data, dict) and isinstance(data.get("workflow"), dict):
            data = data["workflow"]
        if not isinstance(data, dict):
            raise ValidationError("Workflow definition must be a mapping")
        return data

    def _parse_yaml(self, content: str) -> Any:
        try:
            return yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ValidationError(f"Failed to parse YAML: {e}")

    def _parse_json(self, content: str) -> Any:
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Failed to parse JSON: {e}")

    def validate(self, definition: Dict[str, Any]) -> Dict[str, List[str]]:
        """Structural errors and lint warnings for a definition"""
        errors: List[str] = []
        warnings: List[str] = []

        for error in self.validator.iter_errors(definition):
            path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "root"
            errors.append(f"{path}: {error.message}")
        if errors:
            return {"errors": errors, "warnings": warnings}

        steps: List[Step] = []
        seen: Set[str] = set()
        for raw in definition["steps"]:
            step_id = raw["id"]
            if step_id in seen:
                errors.append(f"Duplicate step id: {step_id}")
                continue
            seen.add(step_id)
            kind = raw.get("kind") or raw.get("type")
            if kind not in StepKind.values():
                errors.append(f"Unknown step kind '{kind}' on step {step_id}")
                continue
            step = Step.from_dict(raw)
            steps.append(step)
            errors.extend(self._check_config(step))
            if not step.name:
                warnings.append(f"Step {step_id} has no name")

        for step in steps:
            for ref in step.referenced_step_ids():
                if ref not in seen:
                    errors.append(f"Step {step.id} references unknown step {ref}")
            warnings.extend(self._lint_branches(step))

        triggers = [s.id for s in steps if s.kind == StepKind.TRIGGER]
        if len(triggers) > 1:
            warnings.append(f"Multiple trigger steps ({', '.join(triggers)}); only {triggers[0]} is an entry point")
        if steps:
            entry = triggers[0] if triggers else steps[0].id
            reached = _reachable(steps, entry)
            for step in steps:
                if step.id not in reached:
                    errors.append(f"Step {step.id} is not reachable from {entry}")
        if len(definition["steps"]) > LARGE_WORKFLOW_STEPS:
            warnings.append(
                f"Workflow has {len(definition['steps'])} steps (may impact performance)"
            )
        return {"errors": errors, "warnings": warnings}

    @staticmethod
    def _check_config(step: Step) -> List[str]:
        errors = []
        for key in REQUIRED_CONFIG.get(step.kind, []):
            options = key if isinstance(key, tuple) else (key,)
            if not any(step.config.get(option) not in (None, "", []) for option in options):
                errors.append(f"Step {step.id} ({step.kind.value}) requires config.{' or config.'.join(options)}")
        if step.kind == StepKind.DATA_TRANSFORM and not any(
                step.config.get(k) for k in ("expression", "transformCode", "code")):
            errors.append(f"Step {step.id} (dataTransform) requires an expression or transformCode")
        return errors

    @staticmethod
    def _lint_branches(step: Step) -> List[str]:
        warnings = []
        targets = step.next_steps
        if isinstance(targets, list) and len(targets) > 1:
            warnings.append(f"Step {step.id} lists several next steps; only {targets[0]} is followed")
        if isinstance(targets, dict):
            keys = list(targets)
            if step.kind == StepKind.CONDITION:
                for branch in ("true", "false"):
                    if branch not in targets and "default" not in targets:
                        warnings.append(f"Condition step {step.id} has no '{branch}' branch")
            else:
                if "default" not in targets:
                    warnings.append(f"Step {step.id} has conditional next steps without a default")
                predicates = [k for k in keys if k != "default"]
                if "true" in predicates and predicates.index("true") < len(predicates) - 1:
                    warnings.append(f"Branches after 'true' on step {step.id} are unreachable")
        if step.kind == StepKind.SWITCH:
            cases = step.config.get("cases") or []
            if not step.config.get("default") and not any(c.get("default") for c in cases if isinstance(c, dict)):
                warnings.append(f"Switch step {step.id} has no default case")
        return warnings


def _reachable(steps: List[Step], entry: str) -> Set[str]:
    by_id = {step.id: step for step in steps}
    reached = {entry}
    queue = deque([entry])
    while queue:
        step = by_id.get(queue.popleft())
        if step is None:
            continue
        for ref in step.referenced_step_ids():
            if ref in by_id and ref not in reached:
                reached.add(ref)
                queue.append(ref)
    return reached


def _looks_like_path(value: str) -> bool:
    if "\n" in value or len(value) > 1024:
        return False
    return Path(value).suffix.lower() in (".yaml", ".yml", ".json")
