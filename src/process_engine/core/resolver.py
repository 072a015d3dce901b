"""
Parameter resolution against execution variables

Three forms are understood: literals, ``$path.to.var`` lookups and ``${expr}``
templates evaluated by the sandboxed evaluator. Containers resolve recursively.
"""
import re
from typing import Any, Dict

from ..evaluator import Evaluator, get_path
from ..evaluator.language import to_string

TEMPLATE = re.compile(r"\$\{([^}]+)\}")


class ParameterResolver:

    def __init__(self, evaluator: Evaluator):
        self.evaluator = evaluator

    def resolve(self, value: Any, variables: Dict[str, Any]) -> Any:
        if isinstance(value, dict):
            return {key: self.resolve(item, variables) for key, item in value.items()}
        if isinstance(value, list):
            return [self.resolve(item, variables) for item in value]
        if not isinstance(value, str):
            return value
        if value.startswith("$$"):
            return value[1:]
        if "${" in value:
            return self.resolve_template(value, variables)
        if value.startswith("$"):
            if value == "$":
                return dict(variables)
            return get_path(variables, value[1:])
        return value

    def resolve_template(self, template: str, variables: Dict[str, Any]) -> Any:
        """A template that is exactly one ``${expr}`` keeps the value's type"""
        match = TEMPLATE.fullmatch(template.strip())
        if match:
            return self.evaluator.eval_expression(match.group(1), variables)

        def substitute(m: "re.Match") -> str:
            value = self.evaluator.eval_expression(m.group(1), variables)
            return "" if value is None else to_string(value)

        return TEMPLATE.sub(substitute, template)

    def resolve_string(self, value: Any, variables: Dict[str, Any]) -> str:
        resolved = self.resolve(value if value is not None else "", variables)
        return resolved if isinstance(resolved, str) else to_string(resolved)
