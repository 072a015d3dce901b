"""
Metrics recorder and audit sink tests
"""
import logging

import pytest

from process_engine.models import AuditEventKind
from process_engine.monitoring import AuditSink, MetricsRecorder
from process_engine.storage import AuditFilter


class TestMetricsRecorder:

    def test_counters_are_keyed_by_labels(self):
        metrics = MetricsRecorder()
        metrics.inc("executions_total", {"status": "completed"})
        metrics.inc("executions_total", {"status": "completed"})
        metrics.inc("executions_total", {"status": "failed"}, value=3)

        assert metrics.get_counter("executions_total", {"status": "completed"}) == 2
        assert metrics.get_counter("executions_total", {"status": "cancelled"}) == 0
        assert metrics.total("executions_total") == 5

    def test_label_order_does_not_matter(self):
        metrics = MetricsRecorder()
        metrics.inc("hits", {"a": "1", "b": "2"})
        assert metrics.get_counter("hits", {"b": "2", "a": "1"}) == 1

    def test_nearest_rank_percentiles(self):
        metrics = MetricsRecorder()
        for value in range(1, 101):
            metrics.observe("step_duration_ms", value)

        assert metrics.summary("step_duration_ms") == {"count": 100, "p50": 50, "p95": 95, "p99": 99}
        assert metrics.percentile("unknown", 50) is None

    def test_window_keeps_the_latest_samples(self):
        metrics = MetricsRecorder(window=3)
        for value in (100, 1, 2, 3):
            metrics.observe("latency", value)
        assert metrics.samples("latency") == [1, 2, 3]

    def test_snapshot(self):
        metrics = MetricsRecorder()
        metrics.inc("executions_total", {"status": "completed"})
        metrics.observe("step_duration_ms", 10, {"kind": "script"})
        metrics.observe("execution_duration_ms", 20)

        snapshot = metrics.snapshot()
        assert snapshot["counters"] == {"executions_total": {"status=completed": 1}}
        assert snapshot["durations"]["step_duration_ms"]["kind=script"]["p50"] == 10
        assert snapshot["durations"]["execution_duration_ms"]["__no_labels__"]["count"] == 1


class TestAuditSink:

    @pytest.mark.asyncio
    async def test_entries_are_stored_and_logged(self, store, caplog):
        sink = AuditSink(store.audit)

        with caplog.at_level(logging.INFO, logger="process_engine.audit"):
            entry = await sink.record(
                AuditEventKind.STEP_FAIL, actor="alice", workflow_id="wf", execution_id="ex",
                step_id="s1", success=False, errorKind="ScriptError",
            )

        assert entry.id == 1
        assert entry.data == {"errorKind": "ScriptError"}
        assert "step.fail" in caplog.text

        stored = await sink.entries(AuditFilter(step_id="s1"))
        assert [e.kind for e in stored] == [AuditEventKind.STEP_FAIL]
        assert stored[0].success is False

    @pytest.mark.asyncio
    async def test_count_by_filter(self, store):
        sink = AuditSink(store.audit)
        await sink.record(AuditEventKind.WORKFLOW_CREATE, actor="alice", workflow_id="a")
        await sink.record(AuditEventKind.WORKFLOW_CREATE, actor="bob", workflow_id="b")
        await sink.record(AuditEventKind.WORKFLOW_DELETE, actor="alice", workflow_id="a")

        assert await sink.count(actor="alice") == 2
        assert await sink.count(kind=AuditEventKind.WORKFLOW_CREATE) == 2
        assert await sink.count(workflow_id="c") == 0
