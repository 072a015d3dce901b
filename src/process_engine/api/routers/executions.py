"""
Execution API routes
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status

from ...core import ProcessEngine
from ...exceptions import ValidationError
from ...integrations import Principal
from ...models import TriggerKind
from ..dependencies import get_engine, require_execute, require_read
from ..models import (
    ApprovalRequest, CancelRequest, ExecutionStartRequest, ExecutionStatusEnum,
    PaginatedResponse, RejectionRequest, RetryRequest, TestExecutionRequest,
)


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def start_execution(
    request: ExecutionStartRequest,
    engine: ProcessEngine = Depends(get_engine),
    current_user: Principal = Depends(require_execute),
) -> Dict[str, Any]:
    execution = await engine.start_execution(
        request.workflow_id,
        request.input_data,
        initiator=current_user.user_id,
        trigger_kind=TriggerKind.API,
        priority=request.priority,
        labels=request.labels,
        wait=request.wait,
    )
    return execution.to_dict()


@router.get("", response_model=PaginatedResponse)
async def list_executions(
    workflow_id: Optional[str] = Query(None),
    status_filter: Optional[List[ExecutionStatusEnum]] = Query(None, alias="status"),
    label: Optional[List[str]] = Query(None),
    initiator: Optional[str] = Query(None),
    created_after: Optional[datetime] = Query(None),
    created_before: Optional[datetime] = Query(None),
    offset: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    engine: ProcessEngine = Depends(get_engine),
    current_user: Principal = Depends(require_read),
) -> PaginatedResponse:
    page = await engine.list_executions(
        workflow_id=workflow_id,
        status=[s.value for s in status_filter] if status_filter else None,
        labels=label,
        initiator=initiator,
        created_after=_naive_utc(created_after),
        created_before=_naive_utc(created_before),
        offset=offset,
        limit=limit,
    )
    return PaginatedResponse(
        total=page["total"],
        offset=offset,
        limit=limit,
        items=[e.to_dict() for e in page["items"]],
    )


@router.get("/approvals/pending")
async def pending_approvals(
    engine: ProcessEngine = Depends(get_engine),
    current_user: Principal = Depends(require_read),
) -> List[Dict[str, Any]]:
    """Approval steps the caller may act on"""
    return engine.waits.pending_approvals(current_user.user_id)


@router.post("/test")
async def test_execution(
    request: TestExecutionRequest,
    engine: ProcessEngine = Depends(get_engine),
    current_user: Principal = Depends(require_execute),
) -> Dict[str, Any]:
    source = request.workflow_id or request.definition
    if source is None:
        raise ValidationError("workflow_id or definition is required")
    return await engine.test_execution(source, request.test_data, user_id=current_user.user_id)


@router.get("/{execution_id}")
async def get_execution(
    execution_id: str,
    engine: ProcessEngine = Depends(get_engine),
    current_user: Principal = Depends(require_read),
) -> Dict[str, Any]:
    return await engine.get_execution_status(execution_id)


@router.get("/{execution_id}/logs")
async def get_execution_logs(
    execution_id: str,
    after_id: Optional[int] = Query(None, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    engine: ProcessEngine = Depends(get_engine),
    current_user: Principal = Depends(require_read),
) -> List[Dict[str, Any]]:
    await engine.get_execution(execution_id)
    logs = await engine.store.executions.list_logs(execution_id, after_id=after_id, limit=limit)
    return [entry.to_dict() for entry in logs]


@router.post("/{execution_id}/cancel")
async def cancel_execution(
    execution_id: str,
    request: CancelRequest,
    engine: ProcessEngine = Depends(get_engine),
    current_user: Principal = Depends(require_execute),
) -> Dict[str, Any]:
    execution = await engine.cancel_execution(execution_id, current_user.user_id, request.reason)
    return execution.to_dict()


@router.post("/{execution_id}/steps/{step_id}/approve")
async def approve_step(
    execution_id: str,
    step_id: str,
    request: ApprovalRequest,
    engine: ProcessEngine = Depends(get_engine),
    current_user: Principal = Depends(require_execute),
) -> Dict[str, Any]:
    execution = await engine.approve_step(
        execution_id, step_id, current_user.user_id, request.comments, wait=request.wait
    )
    return execution.to_dict()


@router.post("/{execution_id}/steps/{step_id}/reject")
async def reject_step(
    execution_id: str,
    step_id: str,
    request: RejectionRequest,
    engine: ProcessEngine = Depends(get_engine),
    current_user: Principal = Depends(require_execute),
) -> Dict[str, Any]:
    execution = await engine.reject_step(
        execution_id, step_id, current_user.user_id, request.reason, wait=request.wait
    )
    return execution.to_dict()


@router.post("/{execution_id}/retry", status_code=status.HTTP_202_ACCEPTED)
async def retry_execution(
    execution_id: str,
    request: RetryRequest,
    engine: ProcessEngine = Depends(get_engine),
    current_user: Principal = Depends(require_execute),
) -> Dict[str, Any]:
    execution = await engine.retry_execution(execution_id, current_user.user_id, wait=request.wait)
    return execution.to_dict()


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
