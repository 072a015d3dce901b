"""
Schedule API routes
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status

from ...integrations import Principal
from ...scheduling import CronScheduler
from ..dependencies import get_scheduler, require_execute, require_read, require_write
from ..models import ScheduleCreateRequest, ScheduleValidateRequest, SuccessResponse


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_schedule(
    request: ScheduleCreateRequest,
    scheduler: CronScheduler = Depends(get_scheduler),
    current_user: Principal = Depends(require_write),
) -> Dict[str, Any]:
    schedule = await scheduler.create_schedule(
        request.workflow_id,
        cron_expr=request.cron_expr,
        timezone=request.timezone,
        preset=request.preset,
        name=request.name,
        input_data=request.input_data,
        enabled=request.enabled,
        user_id=current_user.user_id,
    )
    return schedule.to_dict()


@router.get("")
async def list_schedules(
    workflow_id: Optional[str] = Query(None),
    scheduler: CronScheduler = Depends(get_scheduler),
    current_user: Principal = Depends(require_read),
) -> List[Dict[str, Any]]:
    return [s.to_dict() for s in await scheduler.list_schedules(workflow_id)]


@router.get("/presets")
async def list_presets(
    category: Optional[str] = Query(None),
    scheduler: CronScheduler = Depends(get_scheduler),
) -> List[Dict[str, str]]:
    return scheduler.presets(category)


@router.post("/validate")
async def validate_schedule(
    request: ScheduleValidateRequest,
    scheduler: CronScheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    return scheduler.validate_schedule(request.cron_expr, request.timezone, request.count)


@router.get("/{schedule_id}")
async def get_schedule(
    schedule_id: str,
    scheduler: CronScheduler = Depends(get_scheduler),
    current_user: Principal = Depends(require_read),
) -> Dict[str, Any]:
    return (await scheduler.get_schedule(schedule_id)).to_dict()


@router.post("/{schedule_id}/enable")
async def enable_schedule(
    schedule_id: str,
    scheduler: CronScheduler = Depends(get_scheduler),
    current_user: Principal = Depends(require_write),
) -> Dict[str, Any]:
    return (await scheduler.enable_schedule(schedule_id, current_user.user_id)).to_dict()


@router.post("/{schedule_id}/disable")
async def disable_schedule(
    schedule_id: str,
    scheduler: CronScheduler = Depends(get_scheduler),
    current_user: Principal = Depends(require_write),
) -> Dict[str, Any]:
    return (await scheduler.disable_schedule(schedule_id, current_user.user_id)).to_dict()


@router.post("/{schedule_id}/trigger", status_code=status.HTTP_202_ACCEPTED)
async def trigger_schedule(
    schedule_id: str,
    scheduler: CronScheduler = Depends(get_scheduler),
    current_user: Principal = Depends(require_execute),
) -> Dict[str, Any]:
    execution = await scheduler.trigger_now(schedule_id, current_user.user_id)
    return execution.to_dict()


@router.delete("/{schedule_id}", response_model=SuccessResponse)
async def delete_schedule(
    schedule_id: str,
    scheduler: CronScheduler = Depends(get_scheduler),
    current_user: Principal = Depends(require_write),
) -> SuccessResponse:
    await scheduler.delete_schedule(schedule_id, current_user.user_id)
    return SuccessResponse(message=f"Schedule {schedule_id} deleted")
