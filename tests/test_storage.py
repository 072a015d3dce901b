"""
State store tests, run against the in-memory and SQLite backends
"""
from datetime import datetime, timedelta

import pytest

from process_engine.exceptions import Conflict, NotFound, StaleLease, StateTransitionError
from process_engine.models import (
    AuditEntry, AuditEventKind, Execution, ExecutionStatus, LogEntry, Schedule,
    Step, StepKind, WebhookConfig, Workflow, WorkflowStatus,
)
from process_engine.storage import AuditFilter, ExecutionFilter, create_in_memory_store
from process_engine.storage.sqlalchemy_repository import DatabaseManager, create_sql_store


@pytest.fixture(params=["memory", "sqlite"])
async def store(request, clock, tmp_path):
    if request.param == "memory":
        yield create_in_memory_store(clock)
        return
    db_manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path}/store.db")
    await db_manager.initialize(create_schema=True)
    yield create_sql_store(db_manager, clock)
    await db_manager.close()


def make_workflow(**overrides) -> Workflow:
    values = dict(
        name="Invoice",
        steps=[Step(id="start", kind=StepKind.TRIGGER, name="Start")],
        owner_id="owner",
    )
    values.update(overrides)
    return Workflow(**values)


def make_execution(workflow_id="wf-1", **overrides) -> Execution:
    return Execution(workflow_id=workflow_id, **overrides)


class TestWorkflowRepository:

    @pytest.mark.asyncio
    async def test_versions_are_kept_side_by_side(self, store):
        workflow = await store.workflows.save(make_workflow())
        second = make_workflow(id=workflow.id, version=2, name="Invoice v2")
        await store.workflows.save(second)

        latest = await store.workflows.get(workflow.id)
        first = await store.workflows.get(workflow.id, version=1)
        assert latest.version == 2
        assert latest.name == "Invoice v2"
        assert first.name == "Invoice"
        assert first.steps[0].kind == StepKind.TRIGGER

    @pytest.mark.asyncio
    async def test_duplicate_version_is_rejected(self, store):
        workflow = await store.workflows.save(make_workflow())
        with pytest.raises(Conflict):
            await store.workflows.save(make_workflow(id=workflow.id))

    @pytest.mark.asyncio
    async def test_list_filters_by_status(self, store):
        draft = await store.workflows.save(make_workflow(name="Draft"))
        active = await store.workflows.save(make_workflow(name="Live", status=WorkflowStatus.ACTIVE))

        listed = await store.workflows.list(filters={"status": "active"})
        assert [w.id for w in listed] == [active.id]
        assert draft.id not in [w.id for w in listed]

    @pytest.mark.asyncio
    async def test_delete_archives_every_version(self, store):
        workflow = await store.workflows.save(make_workflow())
        assert await store.workflows.delete(workflow.id) is True
        assert (await store.workflows.get(workflow.id)).status == WorkflowStatus.ARCHIVED
        assert await store.workflows.delete("missing") is False

    @pytest.mark.asyncio
    async def test_record_outcome_folds_statistics(self, store):
        workflow = await store.workflows.save(make_workflow())
        at = datetime(2024, 1, 15, 9, 0, 0)
        await store.workflows.record_outcome(workflow.id, True, 100, at)
        stats = await store.workflows.record_outcome(workflow.id, False, 300, at)

        assert stats.execution_count == 2
        assert stats.success_count == 1
        assert stats.failure_count == 1
        assert stats.average_duration_ms == pytest.approx(200)
        assert (await store.workflows.get(workflow.id)).stats.execution_count == 2


class TestExecutionRepository:

    @pytest.mark.asyncio
    async def test_create_and_get_round_trip(self, store):
        execution = make_execution(input_data={"amount": 10}, labels=["billing"])
        execution.context.variables["amount"] = 10
        await store.executions.create(execution)

        loaded = await store.executions.get(execution.id)
        assert loaded.status == ExecutionStatus.PENDING
        assert loaded.input_data == {"amount": 10}
        assert loaded.context.variables == {"amount": 10}
        assert loaded.labels == ["billing"]
        assert await store.executions.get_status(execution.id) == ExecutionStatus.PENDING
        assert await store.executions.get("missing") is None

    @pytest.mark.asyncio
    async def test_lease_is_exclusive_until_it_expires(self, store, clock):
        execution = await store.executions.create(make_execution())
        await store.executions.acquire_lease(execution.id, "worker-a", ttl_seconds=5)

        with pytest.raises(StaleLease):
            await store.executions.acquire_lease(execution.id, "worker-b", ttl_seconds=5)

        clock.advance(seconds=6)
        leased = await store.executions.acquire_lease(execution.id, "worker-b", ttl_seconds=5)
        assert leased.lease_owner == "worker-b"

    @pytest.mark.asyncio
    async def test_acquire_lease_on_missing_execution(self, store):
        with pytest.raises(NotFound):
            await store.executions.acquire_lease("missing", "worker-a", ttl_seconds=5)

    @pytest.mark.asyncio
    async def test_save_requires_the_lease(self, store):
        execution = await store.executions.create(make_execution())
        leased = await store.executions.acquire_lease(execution.id, "worker-a", ttl_seconds=5)
        leased.start()

        with pytest.raises(StaleLease):
            await store.executions.save(leased, "worker-b")

        await store.executions.save(leased, "worker-a")
        assert await store.executions.get_status(execution.id) == ExecutionStatus.RUNNING

    @pytest.mark.asyncio
    async def test_save_rejects_illegal_transitions(self, store):
        execution = await store.executions.create(make_execution())
        leased = await store.executions.acquire_lease(execution.id, "worker-a", ttl_seconds=5)
        leased.start()
        leased.complete()
        await store.executions.save(leased, "worker-a")

        leased.status = ExecutionStatus.RUNNING
        with pytest.raises(StateTransitionError):
            await store.executions.save(leased, "worker-a")

    @pytest.mark.asyncio
    async def test_mutate_applies_under_the_row_lock(self, store):
        execution = await store.executions.create(make_execution())

        def cancel(row):
            row.cancel("alice")
            return [LogEntry(execution_id=row.id, workflow_id=row.workflow_id,
                             message="Cancelled by alice")]

        cancelled = await store.executions.mutate(execution.id, cancel)
        assert cancelled.status == ExecutionStatus.CANCELLED
        assert cancelled.cancelled_by == "alice"
        logs = await store.executions.list_logs(execution.id)
        assert [entry.message for entry in logs] == ["Cancelled by alice"]

        with pytest.raises(StateTransitionError):
            await store.executions.mutate(execution.id, lambda row: row.start())

    @pytest.mark.asyncio
    async def test_logs_page_by_cursor(self, store):
        execution = await store.executions.create(make_execution())
        await store.executions.append_logs([
            LogEntry(execution_id=execution.id, workflow_id="wf-1", message=f"line {i}")
            for i in range(5)
        ])

        first_page = await store.executions.list_logs(execution.id, limit=2)
        rest = await store.executions.list_logs(execution.id, after_id=first_page[-1].id)
        assert [e.message for e in first_page] == ["line 0", "line 1"]
        assert [e.message for e in rest] == ["line 2", "line 3", "line 4"]
        recent = await store.executions.recent_logs(execution.id, limit=2)
        assert [e.message for e in recent] == ["line 3", "line 4"]

    @pytest.mark.asyncio
    async def test_list_filters_and_orders_newest_first(self, store):
        base = datetime(2024, 1, 1)
        for i, status in enumerate([ExecutionStatus.PENDING, ExecutionStatus.FAILED,
                                    ExecutionStatus.PENDING]):
            await store.executions.create(make_execution(
                id=f"exec-{i}", status=status, created_at=base + timedelta(minutes=i),
                labels=["nightly"] if i else [], initiator="alice" if i < 2 else "bob",
            ))
        await store.executions.create(make_execution(workflow_id="wf-2", id="other"))

        items, total = await store.executions.list(ExecutionFilter(workflow_id="wf-1"))
        assert total == 3
        assert [e.id for e in items] == ["exec-2", "exec-1", "exec-0"]

        items, total = await store.executions.list(
            ExecutionFilter(workflow_id="wf-1", status=ExecutionStatus.PENDING)
        )
        assert [e.id for e in items] == ["exec-2", "exec-0"]

        items, _ = await store.executions.list(ExecutionFilter(labels=["nightly"], initiator="alice"))
        assert [e.id for e in items] == ["exec-1"]

        items, total = await store.executions.list(ExecutionFilter(workflow_id="wf-1"), offset=1, limit=1)
        assert total == 3
        assert [e.id for e in items] == ["exec-1"]

    @pytest.mark.asyncio
    async def test_find_runnable_orders_by_priority(self, store, clock):
        low = await store.executions.create(make_execution(id="low", priority=1))
        high = await store.executions.create(make_execution(id="high", priority=9))
        await store.executions.create(make_execution(id="dry", dry_run=True))
        leased = await store.executions.create(make_execution(id="leased"))
        await store.executions.acquire_lease(leased.id, "worker-a", ttl_seconds=5)

        assert await store.executions.find_runnable(clock()) == [high.id, low.id]
        clock.advance(seconds=10)
        assert "leased" in await store.executions.find_runnable(clock())

    @pytest.mark.asyncio
    async def test_purge_moves_expired_rows_to_archive(self, store, clock):
        old = make_execution(id="old")
        old.start()
        old.complete()
        old.completed_at = clock() - timedelta(days=100)
        await store.executions.create(old, logs=[
            LogEntry(execution_id="old", workflow_id="wf-1", message="done",
                     timestamp=clock() - timedelta(days=100)),
        ])
        await store.executions.create(make_execution(id="fresh"))
        await store.audit.append(AuditEntry(kind=AuditEventKind.EXECUTION_COMPLETE,
                                            timestamp=clock() - timedelta(days=400)))

        purged = await store.purge_expired({"executions": 90, "logs": 90, "audit": 365}, now=clock())

        assert purged == {"executions": 1, "logs": 1, "audit": 1}
        assert await store.executions.get("old") is None
        assert await store.executions.get("fresh") is not None


class TestScheduleRepository:

    @pytest.mark.asyncio
    async def test_claim_has_a_single_winner(self, store):
        fire_at = datetime(2024, 1, 15, 9, 0, 0)
        schedule = await store.schedules.create(Schedule(
            workflow_id="wf-1", cron_expr="0 9 * * *", next_fire_at=fire_at,
        ))
        following = fire_at + timedelta(days=1)

        assert await store.schedules.claim(schedule.id, fire_at, following) is True
        assert await store.schedules.claim(schedule.id, fire_at, following) is False

        claimed = await store.schedules.get(schedule.id)
        assert claimed.last_fire_at == fire_at
        assert claimed.next_fire_at == following

    @pytest.mark.asyncio
    async def test_list_due_skips_disabled_and_future(self, store):
        now = datetime(2024, 1, 15, 9, 0, 0)
        due = await store.schedules.create(Schedule(
            workflow_id="wf-1", cron_expr="* * * * *", next_fire_at=now - timedelta(minutes=1),
        ))
        await store.schedules.create(Schedule(
            workflow_id="wf-1", cron_expr="* * * * *", enabled=False,
            next_fire_at=now - timedelta(minutes=1),
        ))
        await store.schedules.create(Schedule(
            workflow_id="wf-1", cron_expr="* * * * *", next_fire_at=now + timedelta(minutes=1),
        ))

        assert [s.id for s in await store.schedules.list_due(now)] == [due.id]


class TestWebhookAndAuditRepositories:

    @pytest.mark.asyncio
    async def test_webhook_config_round_trip(self, store):
        await store.webhooks.save(WebhookConfig(
            workflow_id="wf-1", secret="s3cret", allowed_ips=["10.0.0.0/8"],
            input_mapping={"order.id": "orderId"},
        ))
        config = await store.webhooks.get("wf-1")
        assert config.secret == "s3cret"
        assert config.allowed_ips == ["10.0.0.0/8"]
        assert config.input_mapping == {"order.id": "orderId"}
        assert await store.webhooks.delete("wf-1") is True
        assert await store.webhooks.get("wf-1") is None

    @pytest.mark.asyncio
    async def test_audit_filters(self, store):
        await store.audit.append(AuditEntry(kind=AuditEventKind.WORKFLOW_CREATE, actor="alice",
                                            workflow_id="wf-1"))
        await store.audit.append(AuditEntry(kind=AuditEventKind.EXECUTION_START, actor="bob",
                                            workflow_id="wf-1", execution_id="exec-1"))

        by_actor = await store.audit.list(AuditFilter(actor="bob"))
        assert [e.kind for e in by_actor] == [AuditEventKind.EXECUTION_START]
        by_kind = await store.audit.list(AuditFilter(kind=AuditEventKind.WORKFLOW_CREATE))
        assert [e.actor for e in by_kind] == ["alice"]
        assert len(await store.audit.list(AuditFilter(workflow_id="wf-1"))) == 2
