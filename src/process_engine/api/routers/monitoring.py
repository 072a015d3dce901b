"""
Monitoring API routes
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from ... import __version__
from ...exceptions import NotFound, ValidationError
from ...integrations import Principal
from ...models import AuditEventKind, to_iso, utcnow
from ...runtime import EngineRuntime
from ...storage import AuditFilter
from ..dependencies import get_runtime, require_admin, require_read
from ..models import PaginatedResponse, SuccessResponse


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health")
async def health_check(runtime: EngineRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    checks: Dict[str, bool] = {}
    try:
        await runtime.store.workflows.list(0, 1)
        checks["database"] = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = False
    return {
        "status": "healthy" if all(checks.values()) else "unhealthy",
        "version": __version__,
        "timestamp": to_iso(utcnow()),
        "checks": checks,
        "waiting": {
            "approvals": len(runtime.engine.waits.approval_waits),
            "timers": len(runtime.engine.waits.timer_waits),
            "children": len(runtime.engine.waits.child_waits),
        },
    }


@router.get("/metrics")
async def get_metrics(
    runtime: EngineRuntime = Depends(get_runtime),
    current_user: Principal = Depends(require_read),
) -> Dict[str, Any]:
    return {
        **runtime.metrics.snapshot(),
        "circuitBreakers": runtime.engine.services.breakers.snapshot(),
    }


@router.get("/audit", response_model=PaginatedResponse)
async def list_audit_entries(
    kind: Optional[str] = Query(None, description="Event kind, e.g. execution.start"),
    workflow_id: Optional[str] = Query(None),
    execution_id: Optional[str] = Query(None),
    actor: Optional[str] = Query(None),
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    runtime: EngineRuntime = Depends(get_runtime),
    current_user: Principal = Depends(require_admin),
) -> PaginatedResponse:
    try:
        event_kind = AuditEventKind(kind) if kind else None
    except ValueError:
        raise ValidationError(f"Unknown audit event kind: {kind}")
    filters = AuditFilter(kind=event_kind, workflow_id=workflow_id,
                          execution_id=execution_id, actor=actor)
    entries = await runtime.store.audit.list(filters, offset, limit + 1)
    return PaginatedResponse(
        total=offset + len(entries),
        offset=offset,
        limit=limit,
        items=[e.to_dict() for e in entries[:limit]],
    )


@router.get("/prefetch/dead-letters")
async def list_dead_letters(
    runtime: EngineRuntime = Depends(get_runtime),
    current_user: Principal = Depends(require_admin),
) -> List[Dict[str, Any]]:
    return [job.to_dict() for job in await runtime.prefetch_queue.dead_letters()]


@router.post("/prefetch/dead-letters/{job_id}/retry", response_model=SuccessResponse)
async def retry_dead_letter(
    job_id: str,
    runtime: EngineRuntime = Depends(get_runtime),
    current_user: Principal = Depends(require_admin),
) -> SuccessResponse:
    if not await runtime.prefetch_queue.retry_dead_letter(job_id):
        raise NotFound(f"Dead-lettered job {job_id} not found")
    return SuccessResponse(message=f"Job {job_id} requeued")
