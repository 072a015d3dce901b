"""
Sandboxed expression and script evaluation
"""
from .language import Limits
from .paths import get_path, set_path, has_path, split_path
from .sandbox import Evaluator, ScriptResult

__all__ = ["Evaluator", "ScriptResult", "Limits", "get_path", "set_path", "has_path", "split_path"]
