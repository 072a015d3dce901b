"""
Graph interpreter tests: routing, failure policy and limits
"""
import time

import pytest

from process_engine.exceptions import StateTransitionError, UpstreamError
from process_engine.integrations import HttpResponse
from process_engine.integrations.action_registry import ActionDefinition
from process_engine.integrations.event_bus import EXECUTION_COMPLETE
from process_engine.models import AuditEventKind, ExecutionStatus
from process_engine.storage import AuditFilter


def trigger(next_steps):
    return {"id": "start", "kind": "trigger", "name": "Start", "nextSteps": next_steps}


def script(step_id, code, **extra):
    return {"id": step_id, "kind": "script", "name": step_id.title(), "config": {"code": code}, **extra}


def mark(step_id, **extra):
    """Action step that records it ran"""
    return {
        "id": step_id, "kind": "action", "name": step_id.title(),
        "config": {"action": "set_variables", "parameters": {f"ran_{step_id}": True}},
        **extra,
    }


class TestLinearRun:

    @pytest.mark.asyncio
    async def test_runs_every_step_in_order(self, engine, deploy, linear_definition):
        workflow = await deploy(linear_definition)

        execution = await engine.start_execution(workflow.id, {"amount": 21}, initiator="alice",
                                                 wait=True)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.completed_step_ids == ["start", "double", "shout"]
        assert execution.failed_step_ids == []
        variables = execution.context.variables
        assert variables["doubled"] == 42
        assert variables["total"] == 42
        assert variables["loud"] == "HELLO"
        assert execution.step_results["start"]["data"] == {"amount": 21}
        assert execution.duration_ms >= 1

    @pytest.mark.asyncio
    async def test_logs_audit_metrics_and_stats(self, engine, deploy, linear_definition):
        workflow = await deploy(linear_definition)
        execution = await engine.start_execution(workflow.id, {"amount": 1}, initiator="alice",
                                                 wait=True)

        messages = [e.message for e in await engine.store.executions.list_logs(execution.id)]
        assert messages[0] == "Execution created by manual trigger"
        assert "Workflow execution started" in messages
        assert messages[-1] == "Workflow execution completed"

        steps = await engine.store.audit.list(AuditFilter(kind=AuditEventKind.STEP_EXECUTE,
                                                          execution_id=execution.id))
        assert [e.step_id for e in steps] == ["start", "double", "shout"]
        assert all(e.actor == "alice" for e in steps)

        assert engine.metrics.get_counter("executions_total", {"status": "completed"}) == 1
        assert engine.metrics.get_counter("steps_total", {"kind": "script", "status": "completed"}) == 1
        stats = (await engine.get_workflow(workflow.id)).stats
        assert stats.execution_count == 1
        assert stats.success_count == 1

    @pytest.mark.asyncio
    async def test_inactive_workflow_cannot_start(self, engine, linear_definition):
        from process_engine.exceptions import ValidationError

        draft = await engine.create_workflow(linear_definition, owner_id="owner")
        with pytest.raises(ValidationError):
            await engine.start_execution(draft.id, {})


class TestRouting:

    @pytest.mark.asyncio
    async def test_condition_true_and_false_branches(self, engine, deploy):
        workflow = await deploy({
            "name": "Branch",
            "steps": [
                trigger("check"),
                {"id": "check", "kind": "condition", "name": "Check",
                 "config": {"condition": "amount > 100"},
                 "nextSteps": {"true": "big", "false": "small"}},
                mark("big"),
                mark("small"),
            ],
        })

        big = await engine.start_execution(workflow.id, {"amount": 500}, wait=True)
        small = await engine.start_execution(workflow.id, {"amount": 5}, wait=True)

        assert big.completed_step_ids == ["start", "check", "big"]
        assert small.completed_step_ids == ["start", "check", "small"]

    @pytest.mark.asyncio
    async def test_predicate_map_falls_back_to_default(self, engine, deploy):
        workflow = await deploy({
            "name": "Predicates",
            "steps": [
                trigger({"region == 'eu'": "eu", "region == 'us'": "us", "default": "other"}),
                mark("eu"), mark("us"), mark("other"),
            ],
        })

        us = await engine.start_execution(workflow.id, {"region": "us"}, wait=True)
        other = await engine.start_execution(workflow.id, {"region": "apac"}, wait=True)

        assert us.completed_step_ids[-1] == "us"
        assert other.completed_step_ids[-1] == "other"

    @pytest.mark.asyncio
    async def test_list_next_steps_follow_the_first_entry(self, engine, deploy):
        workflow = await deploy({
            "name": "List",
            "steps": [trigger(["a", "b"]), mark("a"), mark("b")],
        })
        execution = await engine.start_execution(workflow.id, {}, wait=True)
        assert execution.completed_step_ids == ["start", "a"]

    @pytest.mark.asyncio
    async def test_switch_overrides_next_steps(self, engine, deploy):
        workflow = await deploy({
            "name": "Switch",
            "steps": [
                trigger("route"),
                {"id": "route", "kind": "switch", "name": "Route",
                 "config": {"expression": "$tier", "cases": [
                     {"value": "gold", "nextStep": "gold"},
                     {"default": True, "nextStep": "standard"},
                 ]}},
                mark("gold"), mark("standard"),
            ],
        })
        execution = await engine.start_execution(workflow.id, {"tier": "gold"}, wait=True)
        assert execution.completed_step_ids == ["start", "route", "gold"]
        assert execution.step_results["route"]["data"] == {"value": "gold", "matchedCase": "gold"}

    @pytest.mark.asyncio
    async def test_disabled_step_is_passed_over(self, engine, deploy):
        workflow = await deploy({
            "name": "Disabled",
            "steps": [trigger("a"), mark("a", nextSteps="b", enabled=False), mark("b")],
        })
        execution = await engine.start_execution(workflow.id, {}, wait=True)
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.completed_step_ids == ["start", "b"]
        assert "ran_a" not in execution.context.variables


class TestFailurePolicy:

    @pytest.mark.asyncio
    async def test_unhandled_failure_fails_the_execution(self, engine, deploy):
        workflow = await deploy({
            "name": "Boom",
            "steps": [trigger("bad"), script("bad", "return explode()", nextSteps="after"), mark("after")],
        })
        execution = await engine.start_execution(workflow.id, {}, wait=True)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error["kind"] == "ScriptError"
        assert execution.error["step_id"] == "bad"
        assert execution.failed_step_ids == ["bad"]
        assert "after" not in execution.completed_step_ids
        assert engine.metrics.get_counter("executions_total", {"status": "failed"}) == 1

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, engine, deploy, http):
        http.queue(UpstreamError("reset", status_code=503), HttpResponse(200, {"ok": True}))
        workflow = await deploy({
            "name": "Flaky",
            "steps": [
                trigger("call"),
                {"id": "call", "kind": "apiCall", "name": "Call",
                 "config": {"url": "https://api.example.com/ping"},
                 "retryConfig": {"maxRetries": 2, "retryDelayMs": 500}},
            ],
        })

        execution = await engine.start_execution(workflow.id, {}, wait=True)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.step_retries == {"call": 1}
        assert execution.retry_count == 1
        assert execution.completed_step_ids == ["start", "call"]
        assert execution.failed_step_ids == []
        engine.interpreter.sleep.assert_any_await(0.5)

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, engine, deploy, http):
        http.queue(*[UpstreamError("down", status_code=503)] * 3)
        workflow = await deploy({
            "name": "Down",
            "steps": [
                trigger("call"),
                {"id": "call", "kind": "apiCall", "name": "Call",
                 "config": {"url": "https://api.example.com/ping"},
                 "retryConfig": {"maxRetries": 2, "retryDelayMs": 0}},
            ],
        })
        execution = await engine.start_execution(workflow.id, {}, wait=True)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.step_retries == {"call": 2}
        assert len(http.requests) == 3
        assert execution.error["kind"] == "UpstreamError"

    @pytest.mark.asyncio
    async def test_script_errors_are_not_retried(self, engine, deploy):
        workflow = await deploy({
            "name": "Script",
            "steps": [trigger("bad"),
                      script("bad", "return explode()", retryConfig={"maxRetries": 3})],
        })
        execution = await engine.start_execution(workflow.id, {}, wait=True)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.step_retries == {}

    @pytest.mark.asyncio
    async def test_retry_disabled_by_error_handler(self, engine, deploy, http):
        http.queue(UpstreamError("down", status_code=503))
        workflow = await deploy({
            "name": "NoRetry",
            "steps": [
                trigger("call"),
                {"id": "call", "kind": "apiCall", "name": "Call",
                 "config": {"url": "https://api.example.com/ping"},
                 "retryConfig": {"maxRetries": 3}, "errorHandler": {"retry": False}},
            ],
        })
        execution = await engine.start_execution(workflow.id, {}, wait=True)
        assert execution.status == ExecutionStatus.FAILED
        assert len(http.requests) == 1

    @pytest.mark.asyncio
    async def test_skip_continues_with_the_next_step(self, engine, deploy):
        workflow = await deploy({
            "name": "Skip",
            "steps": [
                trigger("bad"),
                script("bad", "return explode()", nextSteps="after", errorHandler={"skip": True}),
                mark("after"),
            ],
        })
        execution = await engine.start_execution(workflow.id, {}, wait=True)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.failed_step_ids == ["bad"]
        assert execution.completed_step_ids == ["start", "after"]
        assert execution.step_results["bad"]["error"]["code"] == "ScriptError"

    @pytest.mark.asyncio
    async def test_fallback_step_takes_over(self, engine, deploy):
        workflow = await deploy({
            "name": "Fallback",
            "steps": [
                trigger("bad"),
                script("bad", "return explode()", nextSteps="after",
                       errorHandler={"fallback": "recover"}),
                mark("after"),
                mark("recover"),
            ],
        })
        execution = await engine.start_execution(workflow.id, {}, wait=True)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.completed_step_ids == ["start", "recover"]
        assert execution.context.variables["ran_recover"] is True

    @pytest.mark.asyncio
    async def test_step_failure_is_audited(self, engine, deploy):
        workflow = await deploy({
            "name": "Audit",
            "steps": [trigger("bad"), script("bad", "return explode()")],
        })
        execution = await engine.start_execution(workflow.id, {}, initiator="bob", wait=True)

        failures = await engine.store.audit.list(AuditFilter(kind=AuditEventKind.STEP_FAIL))
        assert len(failures) == 1
        assert failures[0].step_id == "bad"
        assert failures[0].success is False
        assert failures[0].data["errorKind"] == "ScriptError"
        ends = await engine.store.audit.list(AuditFilter(kind=AuditEventKind.EXECUTION_FAIL,
                                                         execution_id=execution.id))
        assert ends[0].actor == "bob"


class TestLimits:

    @pytest.mark.asyncio
    async def test_max_iterations_stops_a_cycle(self, engine, deploy):
        workflow = await deploy({
            "name": "Cycle",
            "settings": {"maxIterations": 5},
            "variables": {"count": 0},
            "steps": [trigger("tick"), script("tick", "count = count + 1", nextSteps="tick")],
        })
        execution = await engine.start_execution(workflow.id, {}, wait=True)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error["kind"] == "LimitExceeded"
        assert execution.iteration_count == 6
        assert execution.context.variables["count"] == 4

    @pytest.mark.asyncio
    async def test_max_execution_time_fails_between_steps(self, engine, deploy):
        def slow(parameters, context):
            time.sleep(0.02)
            return {}

        engine.services.actions.register(ActionDefinition("slow", "Slow"), slow)
        workflow = await deploy({
            "name": "Too slow",
            "settings": {"maxExecutionTimeMs": 1},
            "steps": [
                trigger("slow"),
                {"id": "slow", "kind": "action", "name": "Slow",
                 "config": {"action": "slow"}, "nextSteps": "after"},
                mark("after"),
            ],
        })

        execution = await engine.start_execution(workflow.id, {}, wait=True)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error["kind"] == "LimitExceeded"
        assert "Maximum execution time" in execution.error["message"]
        assert "slow" in execution.completed_step_ids
        assert "after" not in execution.completed_step_ids


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_a_waiting_execution(self, engine, deploy, approval_definition):
        workflow = await deploy(approval_definition)
        execution = await engine.start_execution(workflow.id, {"amount": 10}, wait=True)
        assert execution.status == ExecutionStatus.WAITING_APPROVAL

        cancelled = await engine.cancel_execution(execution.id, user_id="carol", reason="duplicate")

        assert cancelled.status == ExecutionStatus.CANCELLED
        assert cancelled.cancelled_by == "carol"
        assert engine.waits.pending_approvals() == []
        with pytest.raises(StateTransitionError):
            await engine.cancel_execution(execution.id, user_id="carol")

    @pytest.mark.asyncio
    async def test_cancel_a_pending_execution_before_it_runs(self, engine, deploy, linear_definition):
        engine.inline_dispatch = False
        workflow = await deploy(linear_definition)
        execution = await engine.start_execution(workflow.id, {"amount": 1})

        await engine.cancel_execution(execution.id, user_id="carol")
        result = await engine.interpreter.run(execution.id)

        assert result.status == ExecutionStatus.CANCELLED
        assert result.completed_step_ids == []
        assert engine.metrics.get_counter("executions_total", {"status": "cancelled"}) == 1

    @pytest.mark.asyncio
    async def test_cancel_while_running_stops_at_the_next_step(self, engine, deploy):
        async def cancel_from_outside(parameters, context):
            await engine.cancel_execution(context.execution_id, user_id="carol", reason="stop")
            return {"cancelled": True}

        engine.services.actions.register(ActionDefinition("cancel_me", "Cancel me"), cancel_from_outside)
        completions = []
        await engine.event_bus.subscribe(EXECUTION_COMPLETE, completions.append)
        workflow = await deploy({
            "name": "Cancelled midway",
            "steps": [
                trigger("work"),
                {"id": "work", "kind": "action", "name": "Work",
                 "config": {"action": "cancel_me"}, "nextSteps": "after"},
                mark("after"),
            ],
        })

        execution = await engine.start_execution(workflow.id, {}, wait=True)

        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.cancelled_by == "carol"
        assert "after" not in execution.completed_step_ids
        assert "ran_after" not in execution.context.variables
        messages = [e.message for e in await engine.store.executions.list_logs(execution.id)]
        assert "Cancellation observed, stopping" in messages
        assert engine.metrics.get_counter("executions_total", {"status": "cancelled"}) == 1
        assert [event.payload["status"] for event in completions] == ["cancelled"]
