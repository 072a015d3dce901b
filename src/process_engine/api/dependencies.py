"""
FastAPI dependencies
"""
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from ..core import ProcessEngine
from ..exceptions import Forbidden, Unauthorized
from ..integrations import Principal
from ..runtime import EngineRuntime
from ..scheduling import CronScheduler
from ..webhooks import WebhookDispatcher


logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"


def get_runtime(request: Request) -> EngineRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "ServiceUnavailable", "message": "Engine not initialized"},
        )
    return runtime


def get_engine(runtime: EngineRuntime = Depends(get_runtime)) -> ProcessEngine:
    return runtime.engine


def get_scheduler(runtime: EngineRuntime = Depends(get_runtime)) -> CronScheduler:
    return runtime.scheduler


def get_dispatcher(runtime: EngineRuntime = Depends(get_runtime)) -> WebhookDispatcher:
    return runtime.dispatcher


async def get_current_user(
    request: Request,
    runtime: EngineRuntime = Depends(get_runtime),
    authorization: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
) -> Principal:
    """
    Identify the caller

    With a token validator configured a bearer token is mandatory. Without one
    (local development and tests) the ``X-User-Id`` header names the caller.
    """
    validator = runtime.token_validator
    if validator is None:
        return Principal(user_id=x_user_id or ANONYMOUS, permissions=["*"], roles=["admin"])

    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthorized("Missing or invalid authorization header")
    token = authorization.split(" ", 1)[1]
    return await validator.validate(token, resource_path=request.url.path)


def require_permission(permission: str):
    """Dependency that also checks one permission"""

    def permission_checker(current_user: Principal = Depends(get_current_user)) -> Principal:
        if "admin" in current_user.roles or "*" in current_user.permissions:
            return current_user
        if permission not in current_user.permissions:
            raise Forbidden(f"Permission '{permission}' required")
        return current_user

    return permission_checker


require_read = require_permission("read")
require_write = require_permission("write")
require_execute = require_permission("execute")
require_admin = require_permission("admin")
