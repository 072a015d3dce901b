"""
Workflow API routes
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status

from ...core import ProcessEngine
from ...exceptions import NotFound
from ...integrations import Principal
from ...webhooks import WebhookDispatcher
from ..dependencies import get_dispatcher, get_engine, require_read, require_write
from ..models import (
    PaginatedResponse, SuccessResponse, WebhookConfigRequest, WorkflowCloneRequest,
    WorkflowCreateRequest, WorkflowImportRequest, WorkflowUpdateRequest, WorkflowValidateRequest,
)


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_workflow(
    request: WorkflowCreateRequest,
    engine: ProcessEngine = Depends(get_engine),
    current_user: Principal = Depends(require_write),
) -> Dict[str, Any]:
    workflow = await engine.create_workflow(request.definition, owner_id=current_user.user_id)
    return workflow.to_dict()


@router.get("", response_model=PaginatedResponse)
async def list_workflows(
    status_filter: Optional[str] = Query(None, alias="status"),
    offset: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    engine: ProcessEngine = Depends(get_engine),
    current_user: Principal = Depends(require_read),
) -> PaginatedResponse:
    # one extra row tells whether another page exists
    workflows = await engine.list_workflows(offset, limit + 1, status=status_filter)
    return PaginatedResponse(
        total=offset + len(workflows),
        offset=offset,
        limit=limit,
        items=[w.to_dict() for w in workflows[:limit]],
    )


@router.post("/validate")
async def validate_workflow(
    request: WorkflowValidateRequest,
    engine: ProcessEngine = Depends(get_engine),
    current_user: Principal = Depends(require_read),
) -> Dict[str, Any]:
    report = engine.validate_workflow(request.definition)
    return {"valid": not report["errors"], **report}


@router.post("/import", status_code=status.HTTP_201_CREATED)
async def import_workflow(
    request: WorkflowImportRequest,
    engine: ProcessEngine = Depends(get_engine),
    current_user: Principal = Depends(require_write),
) -> Dict[str, Any]:
    return await engine.import_workflow(request.data, current_user.user_id, request.conflict.value)


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    version: Optional[int] = Query(None, ge=1),
    engine: ProcessEngine = Depends(get_engine),
    current_user: Principal = Depends(require_read),
) -> Dict[str, Any]:
    workflow = await engine.get_workflow(workflow_id, version)
    return workflow.to_dict()


@router.put("/{workflow_id}")
async def update_workflow(
    workflow_id: str,
    request: WorkflowUpdateRequest,
    engine: ProcessEngine = Depends(get_engine),
    current_user: Principal = Depends(require_write),
) -> Dict[str, Any]:
    workflow = await engine.update_workflow(workflow_id, request.changes, current_user.user_id)
    return workflow.to_dict()


@router.delete("/{workflow_id}", response_model=SuccessResponse)
async def delete_workflow(
    workflow_id: str,
    engine: ProcessEngine = Depends(get_engine),
    current_user: Principal = Depends(require_write),
) -> SuccessResponse:
    await engine.delete_workflow(workflow_id, current_user.user_id)
    return SuccessResponse(message=f"Workflow {workflow_id} archived")


@router.post("/{workflow_id}/activate")
async def activate_workflow(
    workflow_id: str,
    engine: ProcessEngine = Depends(get_engine),
    current_user: Principal = Depends(require_write),
) -> Dict[str, Any]:
    workflow = await engine.activate_workflow(workflow_id, current_user.user_id)
    return workflow.to_dict()


@router.post("/{workflow_id}/clone", status_code=status.HTTP_201_CREATED)
async def clone_workflow(
    workflow_id: str,
    request: WorkflowCloneRequest,
    engine: ProcessEngine = Depends(get_engine),
    current_user: Principal = Depends(require_write),
) -> Dict[str, Any]:
    workflow = await engine.clone_workflow(workflow_id, current_user.user_id, request.name)
    return workflow.to_dict()


@router.get("/{workflow_id}/export")
async def export_workflow(
    workflow_id: str,
    engine: ProcessEngine = Depends(get_engine),
    current_user: Principal = Depends(require_read),
) -> Dict[str, Any]:
    return await engine.export_workflow(workflow_id, current_user.user_id)


@router.put("/{workflow_id}/webhook")
async def configure_webhook(
    workflow_id: str,
    request: WebhookConfigRequest,
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
    current_user: Principal = Depends(require_write),
) -> Dict[str, Any]:
    """The secret is returned only here and on rotation"""
    config = await dispatcher.configure(workflow_id, current_user.user_id, **request.model_dump())
    return config.to_dict(include_secret=True)


@router.get("/{workflow_id}/webhook")
async def get_webhook(
    workflow_id: str,
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
    current_user: Principal = Depends(require_read),
) -> Dict[str, Any]:
    config = await dispatcher.get_config(workflow_id)
    return config.to_dict()


@router.post("/{workflow_id}/webhook/rotate")
async def rotate_webhook_secret(
    workflow_id: str,
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
    current_user: Principal = Depends(require_write),
) -> Dict[str, Any]:
    config = await dispatcher.rotate_secret(workflow_id, current_user.user_id)
    return config.to_dict(include_secret=True)


@router.delete("/{workflow_id}/webhook", response_model=SuccessResponse)
async def delete_webhook(
    workflow_id: str,
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
    current_user: Principal = Depends(require_write),
) -> SuccessResponse:
    if not await dispatcher.delete_config(workflow_id, current_user.user_id):
        raise NotFound(f"No webhook configured for workflow {workflow_id}")
    return SuccessResponse(message=f"Webhook for workflow {workflow_id} removed")
