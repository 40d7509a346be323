"""Unit tests for gr_trace.py: request-scoped tracing.

Covers stage recording and status, per-thread stage attribution of API
calls, degraded stages, the summary and the timed_stage helpers.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from gr_trace import (
    TraceContext,
    clear_trace,
    current_stage,
    degrade_stage,
    get_trace,
    set_trace,
    stage,
    timed_stage,
    timed_stage_in_thread,
)


@pytest.fixture(autouse=True)
def _clean_trace():
    clear_trace()
    yield
    clear_trace()


@pytest.fixture
def ctx():
    trace = TraceContext(trace_id="t-1")
    set_trace(trace)
    return trace


class TestStageRecords:
    def test_record_stage(self):
        trace = TraceContext(trace_id="t-1")
        rec = trace.record_stage("ranking", 250)
        assert trace.stages == [rec]
        assert rec.elapsed_ms == 250
        assert rec.status == "ok"

    def test_error_and_degraded_status(self):
        trace = TraceContext(trace_id="t-1")
        assert trace.record_stage("routing", 5, error=ValueError("bad")).status == "error"
        assert trace.record_stage("describing", 5, degraded="fallback narrative").status == "degraded"

    def test_calls_attributed_to_running_stage(self, ctx):
        with stage("routing"):
            ctx.record_api_call("mapbox", "walking_route", 120, 200)
        ctx.record_api_call("openai", "chat_completion", 900, 200)

        assert [c.stage for c in ctx.api_calls] == ["routing", ""]
        assert ctx.stages[0].api_calls_made == 1


class TestOutcome:
    def test_empty(self):
        assert TraceContext(trace_id="t-1").final_outcome == "empty"

    def test_success(self):
        trace = TraceContext(trace_id="t-1")
        trace.record_stage("locating", 1)
        assert trace.final_outcome == "success"

    def test_all_errors(self):
        trace = TraceContext(trace_id="t-1")
        trace.record_stage("layer:parks", 1, error=RuntimeError("down"))
        assert trace.final_outcome == "error"

    def test_mixed_is_partial(self):
        trace = TraceContext(trace_id="t-1")
        trace.record_stage("layer:parks", 1, error=RuntimeError("down"))
        trace.record_stage("layer:bike_paths", 1)
        assert trace.final_outcome == "partial"

    def test_degraded_is_partial(self):
        trace = TraceContext(trace_id="t-1")
        trace.record_stage("describing", 1, degraded="fallback narrative")
        assert trace.final_outcome == "partial"


class TestSummary:
    def test_fields(self, ctx):
        with stage("ranking"):
            ctx.record_api_call("sandag", "parks", 10, 200)
            ctx.record_api_call("sandag", "parks", 30, 200)
            ctx.record_api_call("hpi", "environmental", 5, 200)

        summary = ctx.summary_dict()
        assert summary["trace_id"] == "t-1"
        assert summary["final_outcome"] == "success"
        assert summary["total_api_calls"] == 3
        assert summary["stages"] == [
            {"name": "ranking", "status": "ok", "elapsed_ms": ctx.stages[0].elapsed_ms}
        ]
        assert summary["services"] == {
            "sandag": {"calls": 2, "elapsed_ms": 40},
            "hpi": {"calls": 1, "elapsed_ms": 5},
        }
        assert summary["calls"][0]["stage"] == "ranking"

    def test_call_list_is_capped(self, ctx):
        for _ in range(TraceContext.MAX_CALL_RECORDS + 10):
            ctx.record_api_call("sandag", "parks", 1, 200)
        summary = ctx.summary_dict()
        assert summary["total_api_calls"] == TraceContext.MAX_CALL_RECORDS + 10
        assert len(summary["calls"]) == TraceContext.MAX_CALL_RECORDS

    def test_log_summary(self, ctx, caplog):
        ctx.record_stage("locating", 3)
        with caplog.at_level("INFO", logger="gr_trace"):
            ctx.log_summary()
        assert "trace=t-1 outcome=success" in caplog.text


class TestThreadLocal:
    def test_set_get_clear(self):
        trace = TraceContext(trace_id="t-1")
        set_trace(trace)
        assert get_trace() is trace
        clear_trace()
        assert get_trace() is None

    def test_other_threads_do_not_see_trace(self, ctx):
        seen = []
        t = threading.Thread(target=lambda: seen.append(get_trace()))
        t.start()
        t.join()
        assert seen == [None]


class TestTimedStage:
    def test_records_success(self, ctx):
        assert timed_stage("ranking", lambda x: x * 2, 21) == 42
        assert ctx.stages[0].stage_name == "ranking"
        assert current_stage() == ""

    def test_records_and_reraises_failure(self, ctx):
        def _boom():
            raise ValueError("bad parcel")

        with pytest.raises(ValueError):
            timed_stage("ranking", _boom)

        assert ctx.stages[0].error_class == "ValueError"
        assert ctx.stages[0].error_message == "bad parcel"
        assert current_stage() == ""

    def test_degrade_marks_only_the_running_stage(self, ctx):
        def _fallback():
            degrade_stage("fallback narrative")
            return "text"

        timed_stage("describing", _fallback)
        timed_stage("routing", lambda: None)

        assert [s.status for s in ctx.stages] == ["degraded", "ok"]
        assert ctx.stages[0].degraded == "fallback narrative"

    def test_nested_stage_restores_outer(self, ctx):
        with stage("ranking"):
            with stage("layer:parks"):
                assert current_stage() == "layer:parks"
            assert current_stage() == "ranking"

    def test_works_without_trace(self):
        assert timed_stage("ranking", lambda: "ok") == "ok"

    def test_pool_threads_attribute_their_own_stage(self):
        trace = TraceContext(trace_id="parent")
        barrier = threading.Barrier(2)

        def _work(name):
            barrier.wait(timeout=5)
            get_trace().record_api_call(name, name, 5, 200)
            return name

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [
                pool.submit(timed_stage_in_thread, trace, f"layer:{name}", _work, name)
                for name in ("parks", "hpi")
            ]
            assert [f.result() for f in futures] == ["parks", "hpi"]

        stages_by_service = {c.service: c.stage for c in trace.api_calls}
        assert stages_by_service == {"parks": "layer:parks", "hpi": "layer:hpi"}
        assert sorted(s.stage_name for s in trace.stages) == ["layer:hpi", "layer:parks"]
