"""
Approval, timer and subworkflow wait tests
"""
from unittest.mock import AsyncMock

import pytest

from process_engine.core import ProcessEngine
from process_engine.exceptions import NotFound, Unauthorized
from process_engine.models import ExecutionStatus, TriggerKind


def timer_definition(duration_ms: int):
    return {
        "name": "Timer",
        "steps": [
            {"id": "start", "kind": "trigger", "name": "Start", "nextSteps": "pause"},
            {"id": "pause", "kind": "wait", "name": "Pause", "config": {"duration": duration_ms},
             "nextSteps": "done"},
            {"id": "done", "kind": "action", "name": "Done",
             "config": {"action": "set_variables", "parameters": {"finished": True}}},
        ],
    }


class TestApprovals:

    @pytest.mark.asyncio
    async def test_execution_parks_with_a_pending_approval(self, engine, deploy, approval_definition):
        workflow = await deploy(approval_definition)
        execution = await engine.start_execution(workflow.id, {"amount": 250}, wait=True)

        assert execution.status == ExecutionStatus.WAITING_APPROVAL
        assert execution.current_step_id == "approve"
        pending = execution.context.pending_approvals["approve"]
        assert pending["title"] == "Approve 250"
        assert pending["approvers"] == ["alice", "bob"]

        listed = engine.waits.pending_approvals("bob")
        assert [(p["execution_id"], p["step_id"]) for p in listed] == [(execution.id, "approve")]
        assert engine.waits.pending_approvals("mallory") == []

    @pytest.mark.asyncio
    async def test_all_approvers_are_required_by_default(self, engine, deploy, approval_definition):
        workflow = await deploy(approval_definition)
        execution = await engine.start_execution(workflow.id, {"amount": 1}, wait=True)

        partial = await engine.approve_step(execution.id, "approve", "alice", wait=True)
        assert partial.status == ExecutionStatus.WAITING_APPROVAL
        assert partial.context.pending_approvals["approve"]["approved_by"] == ["alice"]

        done = await engine.approve_step(execution.id, "approve", "bob", comments="fine", wait=True)
        assert done.status == ExecutionStatus.COMPLETED
        assert done.completed_step_ids == ["start", "approve", "record"]
        record = done.context.approvals["approve"]
        assert record["status"] == "approved"
        assert record["approvals_by"] == ["alice", "bob"]
        assert done.step_results["approve"]["data"]["approved"] is True
        assert done.step_results["approve"]["data"]["comments"] == "fine"
        assert done.context.variables["approved"] is True

    @pytest.mark.asyncio
    async def test_any_single_approver_when_require_all_is_off(self, engine, deploy,
                                                               approval_definition):
        approval_definition["steps"][1]["config"]["requireAll"] = False
        workflow = await deploy(approval_definition)
        execution = await engine.start_execution(workflow.id, {"amount": 1}, wait=True)

        done = await engine.approve_step(execution.id, "approve", "bob", wait=True)
        assert done.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_duplicate_approval_is_a_no_op(self, engine, deploy, approval_definition):
        workflow = await deploy(approval_definition)
        execution = await engine.start_execution(workflow.id, {"amount": 1}, wait=True)

        await engine.approve_step(execution.id, "approve", "alice")
        again = await engine.approve_step(execution.id, "approve", "alice")
        assert again.context.pending_approvals["approve"]["approved_by"] == ["alice"]

    @pytest.mark.asyncio
    async def test_non_approver_is_refused(self, engine, deploy, approval_definition):
        workflow = await deploy(approval_definition)
        execution = await engine.start_execution(workflow.id, {"amount": 1}, wait=True)

        with pytest.raises(Unauthorized):
            await engine.approve_step(execution.id, "approve", "mallory")
        with pytest.raises(NotFound):
            await engine.approve_step(execution.id, "record", "alice")

    @pytest.mark.asyncio
    async def test_rejection_fails_the_execution(self, engine, deploy, approval_definition):
        workflow = await deploy(approval_definition)
        execution = await engine.start_execution(workflow.id, {"amount": 1}, wait=True)

        rejected = await engine.reject_step(execution.id, "approve", "bob", reason="over budget")

        assert rejected.status == ExecutionStatus.FAILED
        assert rejected.error["kind"] == "ApprovalRejected"
        assert rejected.error["step_id"] == "approve"
        assert rejected.context.approvals["approve"]["reason"] == "over budget"
        assert rejected.failed_step_ids == ["approve"]
        assert engine.waits.pending_approvals() == []
        assert engine.metrics.get_counter("executions_total", {"status": "failed"}) == 1


class TestTimers:

    @pytest.mark.asyncio
    async def test_long_wait_resumes_when_due(self, engine, deploy, clock):
        workflow = await deploy(timer_definition(90_000))
        execution = await engine.start_execution(workflow.id, {}, wait=True)

        assert execution.status == ExecutionStatus.WAITING_TIMER
        assert execution.context.timers["pause"]["duration_ms"] == 90_000
        assert len(engine.waits.timer_waits) == 1

        clock.advance(seconds=30)
        assert await engine.waits.tick() == 0

        clock.advance(seconds=60)
        assert await engine.waits.tick() == 1
        await engine.drain()

        finished = await engine.get_execution(execution.id)
        assert finished.status == ExecutionStatus.COMPLETED
        assert finished.context.variables["finished"] is True
        assert finished.context.timers == {}
        assert engine.waits.timer_waits == {}

    @pytest.mark.asyncio
    async def test_short_wait_runs_inline(self, engine, deploy):
        workflow = await deploy(timer_definition(200))
        execution = await engine.start_execution(workflow.id, {}, wait=True)
        assert execution.status == ExecutionStatus.COMPLETED
        engine.services.sleep.assert_any_await(0.2)

    @pytest.mark.asyncio
    async def test_waits_are_recovered_after_restart(self, engine, deploy, store, settings, http,
                                                     crud, clock, approval_definition):
        approval = await deploy(approval_definition)
        timer = await deploy(timer_definition(60_000))
        waiting = await engine.start_execution(approval.id, {"amount": 3}, wait=True)
        sleeping = await engine.start_execution(timer.id, {}, wait=True)

        restarted = ProcessEngine(store, settings=settings, http=http, crud=crud, clock=clock,
                                  sleep=AsyncMock())
        clock.advance(minutes=2)
        await restarted.start()
        await restarted.drain()

        assert [p["execution_id"] for p in restarted.waits.pending_approvals()] == [waiting.id]
        assert (await restarted.get_execution(sleeping.id)).status == ExecutionStatus.COMPLETED
        await restarted.shutdown()


class TestSubworkflows:

    @pytest.fixture
    async def child(self, deploy):
        return await deploy({
            "name": "Child",
            "steps": [
                {"id": "start", "kind": "trigger", "name": "Start", "nextSteps": "work"},
                {"id": "work", "kind": "script", "name": "Work",
                 "config": {"code": "result = value * 10\nreturn result"}},
            ],
        })

    def parent_definition(self, child_id: str, await_completion: bool):
        return {
            "name": "Parent",
            "steps": [
                {"id": "start", "kind": "trigger", "name": "Start", "nextSteps": "call"},
                {"id": "call", "kind": "subworkflow", "name": "Call child",
                 "config": {"workflowId": child_id, "inputMapping": {"value": "$amount"},
                            "awaitCompletion": await_completion},
                 "outputs": {"childResult": "output.result"},
                 "nextSteps": "after"},
                {"id": "after", "kind": "action", "name": "After",
                 "config": {"action": "set_variables", "parameters": {"after": True}}},
            ],
        }

    @pytest.mark.asyncio
    async def test_parent_waits_for_the_child(self, engine, deploy, child):
        parent = await deploy(self.parent_definition(child.id, await_completion=True))

        execution = await engine.start_execution(parent.id, {"amount": 4}, initiator="alice")
        await engine.drain()

        finished = await engine.get_execution(execution.id)
        assert finished.status == ExecutionStatus.COMPLETED
        assert finished.context.variables["childResult"] == 40
        assert finished.context.variables["after"] is True

        children = await engine.list_executions(workflow_id=child.id)
        assert children["total"] == 1
        spawned = children["items"][0]
        assert spawned.parent_execution_id == execution.id
        assert spawned.trigger_kind == TriggerKind.SUBWORKFLOW
        assert spawned.initiator == "alice"
        assert spawned.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_fire_and_forget_child(self, engine, deploy, child):
        definition = self.parent_definition(child.id, await_completion=False)
        definition["steps"][1]["outputs"] = {"childId": "executionId"}
        parent = await deploy(definition)

        execution = await engine.start_execution(parent.id, {"amount": 2}, wait=True)
        await engine.drain()

        assert execution.status == ExecutionStatus.COMPLETED
        child_id = execution.context.variables["childId"]
        assert (await engine.get_execution(child_id)).status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failed_child_fails_the_step(self, engine, deploy):
        broken = await deploy({
            "name": "Broken child",
            "steps": [{"id": "start", "kind": "script", "name": "Boom",
                       "config": {"code": "return explode()"}}],
        })
        parent = await deploy(self.parent_definition(broken.id, await_completion=True))

        execution = await engine.start_execution(parent.id, {"amount": 1})
        await engine.drain()

        finished = await engine.get_execution(execution.id)
        assert finished.status == ExecutionStatus.FAILED
        assert finished.error["step_id"] == "call"
        assert finished.error["kind"] == "ScriptError"
