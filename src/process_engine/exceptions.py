"""
Process engine exception hierarchy.

Every error carries a ``kind`` drawn from a closed taxonomy and the HTTP
status the API layer maps it to.
"""
import asyncio
from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base engine error"""
    kind = "InternalError"
    http_status = 500

    def __init__(self, message: str = "", **details: Any):
        self.message = message or self.__class__.__doc__ or self.kind
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """User-visible representation, without stack or secrets"""
        return {"kind": self.kind, "message": self.message}


class NotFound(EngineError):
    """Resource not found"""
    kind = "NotFound"
    http_status = 404


class Unauthorized(EngineError):
    """Caller is not allowed to perform this operation"""
    kind = "Unauthorized"
    http_status = 401


class Forbidden(EngineError):
    """Access forbidden"""
    kind = "Forbidden"
    http_status = 403


class Conflict(EngineError):
    """Concurrent modification conflict"""
    kind = "Conflict"
    http_status = 409


class StaleLease(Conflict):
    """Execution lease is held by another worker"""
    kind = "StaleLease"

    def __init__(self, execution_id: str, owner: Optional[str] = None):
        self.execution_id = execution_id
        self.owner = owner
        super().__init__(f"Execution '{execution_id}' is leased by '{owner}'")


class StateTransitionError(Conflict):
    """Illegal execution status transition"""

    def __init__(self, current_state: str, target_state: str, message: str = None):
        self.current_state = current_state
        self.target_state = target_state
        msg = f"Invalid state transition from '{current_state}' to '{target_state}'"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class ValidationError(EngineError):
    """Invalid input or definition"""
    kind = "ValidationError"
    http_status = 400

    def __init__(self, message: str = "", errors: Optional[list] = None, **details: Any):
        self.errors = errors or []
        super().__init__(message or "; ".join(self.errors), **details)


class LimitExceeded(EngineError):
    """Execution exceeded a configured limit"""
    kind = "LimitExceeded"
    http_status = 422


class StepTimeoutError(EngineError):
    """Operation timed out"""
    kind = "TimeoutError"
    http_status = 504


class ScriptError(EngineError):
    """Script evaluation failed"""
    kind = "ScriptError"
    http_status = 422


class ScriptSyntaxError(ScriptError):
    """Script could not be parsed"""
    kind = "SyntaxError"

    def __init__(self, message: str, position: Optional[int] = None):
        self.position = position
        if position is not None:
            message = f"{message} at position {position}"
        super().__init__(message)


class ScriptMemoryError(ScriptError):
    """Script exceeded its memory ceiling"""
    kind = "MemoryError"


class ApprovalRejected(EngineError):
    """Approval step was rejected"""
    kind = "ApprovalRejected"
    http_status = 422


class UpstreamError(EngineError):
    """External dependency failed"""
    kind = "UpstreamError"
    http_status = 502

    def __init__(self, message: str = "", status_code: Optional[int] = None,
                 body_excerpt: Optional[str] = None, **details: Any):
        self.status_code = status_code
        self.body_excerpt = body_excerpt
        super().__init__(message, **details)


class CircuitOpenError(UpstreamError):
    """Circuit breaker is open for the target"""

    def __init__(self, target: str):
        self.target = target
        super().__init__(f"Circuit breaker open for '{target}'")


class RateLimited(EngineError):
    """Too many requests"""
    kind = "RateLimited"
    http_status = 429

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class IntegrityError(EngineError):
    """Stored data is inconsistent"""
    kind = "IntegrityError"
    http_status = 500


class BadSignature(Unauthorized):
    """Webhook signature mismatch"""
    kind = "BadSignature"


class WebhookDisabled(Forbidden):
    """Webhook or workflow is disabled"""
    kind = "Disabled"


class BadPayload(ValidationError):
    """Webhook payload rejected"""
    kind = "BadPayload"


def error_kind(exc: BaseException) -> str:
    """Map any exception onto the engine taxonomy"""
    if isinstance(exc, EngineError):
        return exc.kind
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return StepTimeoutError.kind
    if isinstance(exc, MemoryError):
        return ScriptMemoryError.kind
    return EngineError.kind
