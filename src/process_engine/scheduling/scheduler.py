"""
Cron scheduler

Schedules live in the store. Every tick selects the due ones and claims each
with a conditional update on its previous ``next_fire_at``; only the replica
whose claim succeeds launches the execution.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from ..exceptions import EngineError, NotFound, ValidationError
from ..models import AuditEventKind, Schedule, TriggerKind, to_iso, utcnow
from ..monitoring.audit import AuditSink
from ..storage.repository import StateStore
from .cron import (
    DEFAULT_PREVIEW_COUNT, build_trigger, compute_next, describe_cron, list_presets,
    preset_to_cron, validate_schedule,
)


logger = logging.getLogger(__name__)

MAX_TICK_INTERVAL = 1.0
DUE_BATCH = 100


class CronScheduler:
    """Fires due schedules through the process engine"""

    def __init__(self, store: StateStore, engine: Any, tick_interval: float = MAX_TICK_INTERVAL,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.engine = engine
        self.audit = AuditSink(store.audit)
        self.tick_interval = min(tick_interval, MAX_TICK_INTERVAL)
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    # -- schedule management ----------------------------------------------------

    async def create_schedule(
        self,
        workflow_id: str,
        cron_expr: Optional[str] = None,
        timezone: str = "UTC",
        preset: Optional[Union[str, Dict[str, Any]]] = None,
        name: str = "",
        input_data: Optional[Dict[str, Any]] = None,
        enabled: bool = True,
        user_id: Optional[str] = None,
    ) -> Schedule:
        if preset is not None:
            cron_expr = preset_to_cron(preset)
        if not cron_expr:
            raise ValidationError("A cron expression or a preset is required")
        await self.engine.get_workflow(workflow_id)
        build_trigger(cron_expr, timezone)

        schedule = Schedule(
            workflow_id=workflow_id,
            cron_expr=cron_expr,
            timezone=timezone,
            enabled=enabled,
            input_data=dict(input_data or {}),
            name=name or describe_cron(cron_expr),
            preset=preset if isinstance(preset, str) else None,
            created_by=user_id,
        )
        if enabled:
            schedule.next_fire_at = compute_next(cron_expr, timezone, self.clock())
        schedule = await self.store.schedules.create(schedule)
        logger.info(f"Created schedule {schedule.id} ({cron_expr} {timezone}) for workflow {workflow_id}")
        await self.audit.record(
            AuditEventKind.CONFIG_CHANGE, actor=user_id, workflow_id=workflow_id,
            action="schedule.create", scheduleId=schedule.id, cronExpr=cron_expr,
        )
        return schedule

    async def get_schedule(self, schedule_id: str) -> Schedule:
        schedule = await self.store.schedules.get(schedule_id)
        if schedule is None:
            raise NotFound(f"Schedule {schedule_id} not found")
        return schedule

    async def list_schedules(self, workflow_id: Optional[str] = None) -> List[Schedule]:
        return await self.store.schedules.list(workflow_id)

    async def enable_schedule(self, schedule_id: str, user_id: Optional[str] = None) -> Schedule:
        schedule = await self.get_schedule(schedule_id)
        schedule.enabled = True
        schedule.next_fire_at = compute_next(schedule.cron_expr, schedule.timezone, self.clock())
        schedule = await self.store.schedules.update(schedule)
        await self._audit_change(schedule, "schedule.enable", user_id)
        return schedule

    async def disable_schedule(self, schedule_id: str, user_id: Optional[str] = None) -> Schedule:
        schedule = await self.get_schedule(schedule_id)
        schedule.enabled = False
        schedule.next_fire_at = None
        schedule = await self.store.schedules.update(schedule)
        await self._audit_change(schedule, "schedule.disable", user_id)
        return schedule

    async def delete_schedule(self, schedule_id: str, user_id: Optional[str] = None) -> bool:
        schedule = await self.get_schedule(schedule_id)
        deleted = await self.store.schedules.delete(schedule_id)
        if deleted:
            await self._audit_change(schedule, "schedule.delete", user_id)
        return deleted

    def validate_schedule(self, cron_expr: str, timezone: str = "UTC",
                          count: int = DEFAULT_PREVIEW_COUNT) -> Dict[str, Any]:
        return validate_schedule(cron_expr, timezone, count, self.clock())

    @staticmethod
    def presets(category: Optional[str] = None) -> List[Dict[str, str]]:
        return list_presets(category)

    async def trigger_now(self, schedule_id: str, user_id: Optional[str] = None):
        """Launch the schedule's workflow immediately; ``next_fire_at`` is untouched"""
        schedule = await self.get_schedule(schedule_id)
        return await self.engine.start_execution(
            schedule.workflow_id,
            schedule.input_data,
            initiator=user_id,
            trigger_kind=TriggerKind.MANUAL,
            trigger_data={"scheduleId": schedule.id, "triggeredManually": True},
        )

    async def _audit_change(self, schedule: Schedule, action: str, user_id: Optional[str]):
        await self.audit.record(
            AuditEventKind.CONFIG_CHANGE, actor=user_id, workflow_id=schedule.workflow_id,
            action=action, scheduleId=schedule.id,
        )

    # -- firing ----------------------------------------------------------------

    async def tick(self, now: Optional[datetime] = None) -> int:
        """Claim and fire every due schedule; returns how many this replica fired"""
        now = now or self.clock()
        fired = 0
        for schedule in await self.store.schedules.list_due(now, DUE_BATCH):
            try:
                new_next = compute_next(schedule.cron_expr, schedule.timezone, now)
            except ValidationError as e:
                logger.error(f"Schedule {schedule.id} has an unusable expression: {e.message}")
                continue
            claimed = await self.store.schedules.claim(schedule.id, schedule.next_fire_at, new_next)
            if not claimed:
                logger.debug(f"Schedule {schedule.id} already claimed by another replica")
                continue
            fired += 1
            await self._fire(schedule)
        return fired

    async def _fire(self, schedule: Schedule):
        try:
            execution = await self.engine.start_execution(
                schedule.workflow_id,
                schedule.input_data,
                initiator=schedule.created_by,
                trigger_kind=TriggerKind.CRON,
                trigger_data={
                    "scheduleId": schedule.id,
                    "scheduledFor": to_iso(schedule.next_fire_at),
                    "cronExpr": schedule.cron_expr,
                },
            )
        except EngineError as e:
            logger.error(f"Schedule {schedule.id} could not start workflow {schedule.workflow_id}: {e.message}",
                         extra={"errorKind": e.kind})
            return
        except Exception:
            # the claim already moved next_fire_at; the rest of the batch still fires
            logger.exception(f"Schedule {schedule.id} failed to start workflow {schedule.workflow_id}")
            return
        logger.info(f"Schedule {schedule.id} fired execution {execution.id}",
                    extra={"executionId": execution.id})

    async def start(self):
        if self._task:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run())
        logger.info("Cron scheduler started")

    async def stop(self):
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("Cron scheduler stopped")

    async def run(self):
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_interval)
            except asyncio.TimeoutError:
                pass
