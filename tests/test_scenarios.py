"""
End-to-end scenarios across engine, waits, webhooks, scheduler and workers
"""
import asyncio
import json
from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from process_engine.core import ExecutionWorker, ProcessEngine
from process_engine.exceptions import BadSignature, Unauthorized, UpstreamError
from process_engine.integrations import HttpResponse
from process_engine.models import AuditEventKind, ExecutionStatus, TriggerKind
from process_engine.scheduling import CronScheduler
from process_engine.storage import AuditFilter
from process_engine.webhooks import WebhookDispatcher, sign


def trigger(next_steps):
    return {"id": "start", "kind": "trigger", "name": "Start", "nextSteps": next_steps}


def mark(step_id, **extra):
    return {
        "id": step_id, "kind": "action", "name": step_id.title(),
        "config": {"action": "set_variables", "parameters": {f"ran_{step_id}": True}},
        **extra,
    }


class TestScenarios:

    @pytest.mark.asyncio
    async def test_linear_success(self, engine, deploy):
        workflow = await deploy({
            "name": "Linear success",
            "steps": [
                trigger("set"),
                {"id": "set", "kind": "action", "name": "Set x",
                 "config": {"action": "set_variables", "parameters": {"x": 2}},
                 "nextSteps": "script"},
                {"id": "script", "kind": "script", "name": "Triple",
                 "config": {"code": "return x * 3"}, "nextSteps": "end"},
                mark("end"),
            ],
        })

        execution = await engine.start_execution(workflow.id, {}, wait=True)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.context.variables["x"] == 2
        assert execution.step_results["script"]["data"] == 6
        assert execution.duration_ms > 0

    @pytest.mark.asyncio
    async def test_conditional_branch(self, engine, deploy):
        workflow = await deploy({
            "name": "Conditional branch",
            "steps": [
                trigger("check"),
                {"id": "check", "kind": "condition", "name": "Check",
                 "config": {"condition": "x > 10"},
                 "nextSteps": {"true": "A", "false": "B", "default": "B"}},
                mark("A"),
                mark("B"),
            ],
        })

        execution = await engine.start_execution(workflow.id, {"x": 5}, wait=True)

        assert execution.status == ExecutionStatus.COMPLETED
        assert "A" not in execution.completed_step_ids
        assert "B" in execution.completed_step_ids

    @pytest.mark.asyncio
    async def test_approval_gate(self, engine, deploy):
        workflow = await deploy({
            "name": "Approval gate",
            "steps": [
                trigger("gate"),
                {"id": "gate", "kind": "approval", "name": "Gate", "config": {"approvers": ["u1"]}},
            ],
        })

        execution = await engine.start_execution(workflow.id, {}, initiator="u0", wait=True)
        assert execution.status == ExecutionStatus.WAITING_APPROVAL

        approved = await engine.approve_step(execution.id, "gate", "u1", "ok", wait=True)
        assert approved.status == ExecutionStatus.COMPLETED
        record = approved.context.approvals["gate"]
        assert record["approved_by"] == "u1"
        assert record["comments"] == "ok"

        second = await engine.start_execution(workflow.id, {}, wait=True)
        with pytest.raises(Unauthorized):
            await engine.reject_step(second.id, "gate", "u2", "no")
        assert (await engine.get_execution(second.id)).status == ExecutionStatus.WAITING_APPROVAL

    @pytest.mark.asyncio
    async def test_retry_then_succeed(self, engine, deploy, http):
        http.queue(UpstreamError("reset", status_code=503), HttpResponse(200, {"id": 7}))
        workflow = await deploy({
            "name": "Retry then succeed",
            "steps": [
                trigger("call"),
                {"id": "call", "kind": "apiCall", "name": "Call",
                 "config": {"url": "https://api.example.com/orders", "method": "POST"},
                 "retryConfig": {"maxRetries": 2, "retryDelayMs": 100}},
            ],
        })

        execution = await engine.start_execution(workflow.id, {}, wait=True)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.step_retries == {"call": 1}
        assert (await engine.get_workflow(workflow.id)).stats.execution_count == 1

        entries = await engine.store.audit.list(AuditFilter(execution_id=execution.id, step_id="call"))
        kinds = [e.kind for e in entries]
        assert kinds.count(AuditEventKind.STEP_FAIL) == 1
        assert kinds.count(AuditEventKind.STEP_EXECUTE) == 1

    @pytest.mark.asyncio
    async def test_webhook_trigger(self, store, engine, deploy, linear_definition):
        workflow = await deploy(linear_definition)
        dispatcher = WebhookDispatcher(store, engine)
        await dispatcher.configure(workflow.id, secret="s", input_mapping={"order": "order"})
        body = json.dumps({"order": "A1"}).encode()

        accepted = await dispatcher.receive(workflow.id, body, {"x-webhook-signature": sign("s", body)})

        execution = await engine.get_execution(accepted["executionId"])
        assert execution.input_data == {"order": "A1"}
        assert execution.initiator == "webhook"
        assert execution.trigger_kind == TriggerKind.WEBHOOK

        altered = json.dumps({"order": "B2"}).encode()
        with pytest.raises(BadSignature) as info:
            await dispatcher.receive(workflow.id, altered, {"x-webhook-signature": sign("s", body)})
        assert info.value.http_status == 401
        await engine.drain()

    @pytest.mark.asyncio
    async def test_cron_fire_exclusivity(self, store, engine, deploy, linear_definition, clock):
        workflow = await deploy(linear_definition)
        replicas = [CronScheduler(store, engine, clock=clock) for _ in range(2)]
        schedule = await replicas[0].create_schedule(workflow.id, "0 9 * * *",
                                                     input_data={"amount": 1})
        clock.advance(hours=1, minutes=1)

        fired = await asyncio.gather(*(replica.tick() for replica in replicas))
        await engine.drain()

        assert sum(fired) == 1
        assert (await engine.list_executions(workflow_id=workflow.id))["total"] == 1
        stored = await replicas[1].get_schedule(schedule.id)
        assert stored.next_fire_at == datetime(2024, 1, 16, 9, 0)


class TestWorkerFailover:

    @pytest.fixture
    async def queued_engine(self, store, settings, http, crud, clock):
        """Executions wait in the store until a worker picks them up"""
        engine = ProcessEngine(store, settings=settings, http=http, crud=crud,
                               clock=clock, sleep=AsyncMock(), inline_dispatch=False)
        await engine.start()
        yield engine
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_expired_lease_resumes_at_the_pending_step(self, queued_engine, store, clock,
                                                             linear_definition):
        engine = queued_engine
        workflow = await engine.create_workflow(linear_definition, owner_id="owner")
        await engine.activate_workflow(workflow.id, "owner")
        execution = await engine.start_execution(workflow.id, {"amount": 5})
        assert execution.status == ExecutionStatus.PENDING

        # a worker ran the trigger step and died before the next one
        crashed = await store.executions.acquire_lease(execution.id, "crashed-worker", 5)
        crashed.start()
        crashed.record_success("start", {"success": True, "data": None})
        crashed.current_step_id = "double"
        await store.executions.save(crashed, "crashed-worker")

        worker = ExecutionWorker(engine, clock=clock)
        assert await worker.poll_once() == 0

        clock.advance(seconds=6)
        assert await worker.poll_once() == 1
        await engine.drain()

        resumed = await engine.get_execution(execution.id)
        assert resumed.status == ExecutionStatus.COMPLETED
        assert resumed.completed_step_ids == ["start", "double", "shout"]
        assert resumed.context.variables["doubled"] == 10
        logs = await store.executions.list_logs(execution.id)
        assert any(entry.message == "Workflow execution resumed" for entry in logs)

    @pytest.mark.asyncio
    async def test_pending_executions_run_in_priority_order(self, queued_engine, clock,
                                                            linear_definition):
        engine = queued_engine
        workflow = await engine.create_workflow(linear_definition, owner_id="owner")
        await engine.activate_workflow(workflow.id, "owner")
        low = await engine.start_execution(workflow.id, {"amount": 1}, priority=1)
        high = await engine.start_execution(workflow.id, {"amount": 2}, priority=9)

        worker = ExecutionWorker(engine, concurrency=1, clock=clock)
        assert await worker.poll_once() == 1
        await engine.drain()

        assert (await engine.get_execution(high.id)).status == ExecutionStatus.COMPLETED
        assert (await engine.get_execution(low.id)).status == ExecutionStatus.PENDING
