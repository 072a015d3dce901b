import asyncio
from datetime import datetime
from unittest.mock import patch

import pytest

from process_engine.exceptions import NotFound, ValidationError
from process_engine.models import AuditEventKind, TriggerKind
from process_engine.scheduling import CronScheduler
from process_engine.storage import AuditFilter


@pytest.fixture
def scheduler(store, engine, clock):
    return CronScheduler(store, engine, tick_interval=0.01, clock=clock)


@pytest.fixture
async def workflow(deploy, linear_definition):
    return await deploy(linear_definition)


class TestScheduleManagement:

    @pytest.mark.asyncio
    async def test_create_from_preset(self, scheduler, workflow, store):
        schedule = await scheduler.create_schedule(
            workflow.id, preset="daily_9am", input_data={"amount": 3}, user_id="alice",
        )

        assert schedule.cron_expr == "0 9 * * *"
        assert schedule.preset == "daily_9am"
        assert schedule.name == "Daily at 09:00"
        assert schedule.next_fire_at == datetime(2024, 1, 15, 9, 0)
        assert schedule.created_by == "alice"

        entries = await store.audit.list(AuditFilter(kind=AuditEventKind.CONFIG_CHANGE))
        assert entries[0].data["action"] == "schedule.create"
        assert entries[0].data["scheduleId"] == schedule.id

    @pytest.mark.asyncio
    async def test_create_from_expression_with_timezone(self, scheduler, workflow):
        schedule = await scheduler.create_schedule(workflow.id, "30 9 * * *", "Europe/Berlin",
                                                   name="Morning run")
        assert schedule.name == "Morning run"
        assert schedule.next_fire_at == datetime(2024, 1, 15, 8, 30)

    @pytest.mark.asyncio
    async def test_create_validates_inputs(self, scheduler, workflow):
        with pytest.raises(ValidationError):
            await scheduler.create_schedule(workflow.id)
        with pytest.raises(ValidationError):
            await scheduler.create_schedule(workflow.id, "every tuesday")
        with pytest.raises(NotFound):
            await scheduler.create_schedule("missing", "0 9 * * *")

    @pytest.mark.asyncio
    async def test_disable_and_enable(self, scheduler, workflow, clock):
        schedule = await scheduler.create_schedule(workflow.id, "0 * * * *")

        disabled = await scheduler.disable_schedule(schedule.id, user_id="alice")
        assert disabled.enabled is False
        assert disabled.next_fire_at is None

        clock.advance(hours=3)
        assert await scheduler.tick() == 0

        enabled = await scheduler.enable_schedule(schedule.id)
        assert enabled.next_fire_at == datetime(2024, 1, 15, 12, 0)

    @pytest.mark.asyncio
    async def test_list_and_delete(self, scheduler, workflow):
        first = await scheduler.create_schedule(workflow.id, "0 9 * * *")
        second = await scheduler.create_schedule(workflow.id, "0 18 * * *")

        assert {s.id for s in await scheduler.list_schedules(workflow.id)} == {first.id, second.id}
        assert await scheduler.delete_schedule(first.id) is True
        assert [s.id for s in await scheduler.list_schedules()] == [second.id]
        with pytest.raises(NotFound):
            await scheduler.get_schedule(first.id)

    @pytest.mark.asyncio
    async def test_preview_uses_the_scheduler_clock(self, scheduler):
        report = scheduler.validate_schedule("0 9 * * *", count=1)
        assert report["nextFires"] == ["2024-01-15T09:00:00"]
        assert len(scheduler.presets("monthly")) == 2


class TestFiring:

    @pytest.mark.asyncio
    async def test_due_schedule_fires_once(self, scheduler, workflow, engine, clock):
        schedule = await scheduler.create_schedule(workflow.id, "0 9 * * *",
                                                   input_data={"amount": 4})

        assert await scheduler.tick() == 0
        clock.advance(hours=1)
        assert await scheduler.tick() == 1
        assert await scheduler.tick() == 0
        await engine.drain()

        executions = await engine.list_executions(workflow_id=workflow.id)
        assert executions["total"] == 1
        execution = executions["items"][0]
        assert execution.trigger_kind == TriggerKind.CRON
        assert execution.trigger_data == {
            "scheduleId": schedule.id,
            "scheduledFor": "2024-01-15T09:00:00",
            "cronExpr": "0 9 * * *",
        }
        assert execution.context.variables["doubled"] == 8

        stored = await scheduler.get_schedule(schedule.id)
        assert stored.last_fire_at == datetime(2024, 1, 15, 9, 0)
        assert stored.next_fire_at == datetime(2024, 1, 16, 9, 0)

    @pytest.mark.asyncio
    async def test_missed_firings_collapse_into_one(self, scheduler, workflow, engine, clock):
        await scheduler.create_schedule(workflow.id, "*/5 * * * *")
        clock.advance(hours=1)

        assert await scheduler.tick() == 1
        await engine.drain()
        assert (await engine.list_executions(workflow_id=workflow.id))["total"] == 1

    @pytest.mark.asyncio
    async def test_only_one_replica_claims_a_firing(self, store, engine, workflow, clock):
        first = CronScheduler(store, engine, clock=clock)
        second = CronScheduler(store, engine, clock=clock)
        await first.create_schedule(workflow.id, "0 9 * * *")
        clock.advance(hours=2)

        fired = await asyncio.gather(first.tick(), second.tick())
        await engine.drain()

        assert sum(fired) == 1
        assert (await engine.list_executions(workflow_id=workflow.id))["total"] == 1

    @pytest.mark.asyncio
    async def test_inactive_workflow_is_skipped_without_raising(self, scheduler, workflow,
                                                                engine, clock):
        await scheduler.create_schedule(workflow.id, "0 9 * * *")
        await engine.archive_workflow(workflow.id)
        clock.advance(hours=1)

        assert await scheduler.tick() == 1
        assert (await engine.list_executions(workflow_id=workflow.id))["total"] == 0

    @pytest.mark.asyncio
    async def test_unexpected_failure_does_not_stop_the_batch(self, scheduler, workflow,
                                                             engine, clock, caplog):
        await scheduler.create_schedule(workflow.id, "0 9 * * *")
        await scheduler.create_schedule(workflow.id, "0 9 * * *")
        clock.advance(hours=1)
        start_execution = engine.start_execution
        calls = []

        async def flaky_start(*args, **kwargs):
            calls.append(args[0])
            if len(calls) == 1:
                raise RuntimeError("connection reset")
            return await start_execution(*args, **kwargs)

        with patch.object(engine, "start_execution", side_effect=flaky_start):
            assert await scheduler.tick() == 2
        await engine.drain()

        assert len(calls) == 2
        assert (await engine.list_executions(workflow_id=workflow.id))["total"] == 1
        assert "failed to start workflow" in caplog.text

    @pytest.mark.asyncio
    async def test_trigger_now_leaves_the_schedule_alone(self, scheduler, workflow, engine):
        schedule = await scheduler.create_schedule(workflow.id, "0 9 * * *",
                                                   input_data={"amount": 1})

        execution = await scheduler.trigger_now(schedule.id, user_id="bob")
        await engine.drain()

        assert execution.trigger_kind == TriggerKind.MANUAL
        assert execution.trigger_data == {"scheduleId": schedule.id, "triggeredManually": True}
        assert execution.initiator == "bob"
        stored = await scheduler.get_schedule(schedule.id)
        assert stored.next_fire_at == schedule.next_fire_at
        assert stored.last_fire_at is None

    @pytest.mark.asyncio
    async def test_background_loop_starts_and_stops(self, scheduler, workflow, engine, clock):
        await scheduler.create_schedule(workflow.id, "0 9 * * *")
        clock.advance(hours=1)

        await scheduler.start()
        for _ in range(50):
            if (await engine.list_executions(workflow_id=workflow.id))["total"]:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()
        await engine.drain()

        assert (await engine.list_executions(workflow_id=workflow.id))["total"] == 1
