"""
Sandboxed evaluator front end.

Predicates and expressions run inline under a wall-clock budget. Scripts run
either in a spawned child process whose address space is capped with
``RLIMIT_AS`` (``isolation="process"``) or in a worker thread under the same
cooperative budget (``isolation="inline"``).
"""
import asyncio
import copy
import json
import logging
import multiprocessing
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from ..exceptions import (
    EngineError, ScriptError, ScriptMemoryError, ScriptSyntaxError, StepTimeoutError,
)
from ..models.common import utcnow
from .language import Interpreter, Limits, Scope, parse_expression, parse_script

logger = logging.getLogger(__name__)

# seconds allowed for a spawned interpreter to boot before the script clock starts
SPAWN_GRACE_SECONDS = 5.0


@dataclass
class ScriptResult:
    """Outcome of runScript"""
    result_value: Any = None
    updated_vars: Dict[str, Any] = field(default_factory=dict)


def _frozen_now(now: Optional[datetime]) -> str:
    return (now or utcnow()).isoformat() + "Z"


def _check_output(value: Any, limits: Limits) -> None:
    try:
        encoded = json.dumps(value, default=str)
    except (TypeError, ValueError) as exc:
        raise ScriptError(f"Result is not serializable: {exc}")
    if len(encoded) > limits.max_output_bytes:
        raise ScriptError(f"Result exceeds {limits.max_output_bytes} bytes")


def execute_script(code: str, variables: Dict[str, Any], limits: Limits,
                   now_iso: str) -> Tuple[Any, Dict[str, Any]]:
    """Parse and run a script against a private copy of ``variables``"""
    original = copy.deepcopy(variables)
    working = copy.deepcopy(variables)
    program = parse_script(code)
    interpreter = Interpreter(working, limits, now_iso, allow_sleep=True)
    try:
        result = interpreter.run_program(program)
    except RecursionError:
        raise ScriptError("Script recursion limit reached")
    _check_output(result, limits)
    updated = {
        key: value for key, value in working.items()
        if key not in original or original[key] != value
    }
    _check_output(updated, limits)
    return result, updated


def _address_space_bytes() -> int:
    try:
        with open("/proc/self/statm") as fh:
            pages = int(fh.read().split()[0])
    except (OSError, ValueError, IndexError):
        return 0
    import resource
    return pages * resource.getpagesize()


def _script_worker(conn, code: str, variables: Dict[str, Any],
                   limits: Dict[str, int], now_iso: str) -> None:
    """Child-process entry point; replies with a single tuple over ``conn``"""
    import resource

    script_limits = Limits(**limits)
    ceiling = _address_space_bytes() + script_limits.memory_mb * 1024 * 1024
    try:
        resource.setrlimit(resource.RLIMIT_AS, (ceiling, ceiling))
    except (ValueError, OSError):
        logger.debug("Address space limit not applied")
    try:
        result, updated = execute_script(code, variables, script_limits, now_iso)
        conn.send(("ok", result, updated))
    except MemoryError:
        conn.send(("error", ScriptMemoryError.kind, "Script exceeded its memory ceiling"))
    except EngineError as exc:
        conn.send(("error", exc.kind, exc.message))
    except Exception as exc:
        conn.send(("error", ScriptError.kind, f"{type(exc).__name__}: {exc}"))
    finally:
        conn.close()


_ERRORS_BY_KIND = {
    ScriptSyntaxError.kind: ScriptSyntaxError,
    ScriptMemoryError.kind: ScriptMemoryError,
    StepTimeoutError.kind: StepTimeoutError,
    ScriptError.kind: ScriptError,
}


class Evaluator:
    """Entry point used by the step executor and the interpreter"""

    def __init__(self, limits: Optional[Limits] = None, isolation: str = "process"):
        if isolation not in ("process", "inline"):
            raise ValueError(f"Unknown isolation mode '{isolation}'")
        self.limits = limits or Limits()
        self.isolation = isolation
        self._mp = multiprocessing.get_context("spawn")

    def eval_expression(self, expr: str, variables: Dict[str, Any],
                        now: Optional[datetime] = None) -> Any:
        """Evaluate a single expression"""
        node = parse_expression(expr)
        interpreter = Interpreter(variables, self.limits, _frozen_now(now))
        try:
            value = interpreter.eval(node, Scope(variables))
        except RecursionError:
            raise ScriptError("Expression recursion limit reached")
        _check_output(value, self.limits)
        return value

    def eval_predicate(self, expr: str, variables: Dict[str, Any],
                       now: Optional[datetime] = None) -> bool:
        return bool(self.eval_expression(expr, variables, now))

    async def evaluate(self, expr: str, variables: Dict[str, Any],
                       now: Optional[datetime] = None) -> Any:
        """eval_expression in a worker thread so a slow expression does not stall the loop"""
        return await asyncio.to_thread(self.eval_expression, expr, variables, now)

    async def evaluate_predicate(self, expr: str, variables: Dict[str, Any],
                                 now: Optional[datetime] = None) -> bool:
        return bool(await self.evaluate(expr, variables, now))

    async def run_script(self, code: str, variables: Dict[str, Any],
                         limits: Optional[Limits] = None,
                         now: Optional[datetime] = None) -> ScriptResult:
        """Run a script; raises ScriptError, ScriptSyntaxError, StepTimeoutError or ScriptMemoryError"""
        limits = limits or self.limits
        now_iso = _frozen_now(now)
        if self.isolation == "inline":
            result, updated = await asyncio.wait_for(
                asyncio.to_thread(execute_script, code, variables, limits, now_iso),
                timeout=limits.timeout_ms / 1000.0 + 1.0,
            )
            return ScriptResult(result, updated)
        return await self._run_in_process(code, variables, limits, now_iso)

    async def _run_in_process(self, code: str, variables: Dict[str, Any],
                              limits: Limits, now_iso: str) -> ScriptResult:
        # syntax errors are reported without paying for a process spawn
        parse_script(code)
        parent_conn, child_conn = self._mp.Pipe(duplex=False)
        process = self._mp.Process(
            target=_script_worker,
            args=(child_conn, code, variables, limits.to_dict(), now_iso),
            daemon=True,
        )
        process.start()
        child_conn.close()
        loop = asyncio.get_running_loop()
        try:
            ready = await loop.run_in_executor(
                None, parent_conn.poll, limits.timeout_ms / 1000.0 + SPAWN_GRACE_SECONDS
            )
            if not ready:
                raise StepTimeoutError(f"Script exceeded {limits.timeout_ms} ms")
            try:
                message = parent_conn.recv()
            except EOFError:
                raise ScriptMemoryError("Script worker exited without a result")
        finally:
            parent_conn.close()
            if process.is_alive():
                process.kill()
            await loop.run_in_executor(None, process.join, 1.0)

        if message[0] == "ok":
            return ScriptResult(message[1], message[2])
        _, kind, text = message
        logger.debug("Script failed", extra={"errorKind": kind})
        raise _ERRORS_BY_KIND.get(kind, ScriptError)(text)
