import pytest

from agent_adk.context import AgentContext
from agent_adk.storage import session_store
from agent_adk.tracer import Tracer

from fakes import BrokenAgent, EchoAgent, ScriptedProvider, make_runtime


def _by_name(spans):
    return {s["name"]: s for s in spans}


def test_spans_nest_under_the_trace():
    tracer = Tracer()
    ctx = AgentContext("s1", user_input="hi")

    trace_id = tracer.start_trace(ctx, "helper")
    llm = tracer.start_span("llm_call", "gpt-4o-mini", context=ctx)
    tool = tracer.start_span("tool_call", "word_count", input={"text": "a b"})
    tracer.end_span(tool, output='{"count": 2}')
    tracer.end_span(llm, output={"text": "two words"})
    tracer.end_trace(output="two words")

    assert ctx.get_state("trace_id") == trace_id
    assert tracer.get_current_trace_id() is None

    spans = _by_name(tracer.get_spans(trace_id))
    root = spans["helper"]
    assert root["type"] == "agent_run"
    assert root["parent_span_id"] is None
    assert root["input"] == "hi"
    assert root["output"] == "two words"
    assert spans["gpt-4o-mini"]["parent_span_id"] == root["span_id"]
    assert spans["word_count"]["parent_span_id"] == spans["gpt-4o-mini"]["span_id"]
    assert spans["word_count"]["input"] == {"text": "a b"}
    assert spans["word_count"]["session_id"] == "s1"
    assert {s["agent_name"] for s in spans.values()} == {"helper"}
    assert all(s["status"] == "success" and s["duration_ms"] is not None for s in spans.values())


def test_failed_span_records_the_error():
    tracer = Tracer()
    trace_id = tracer.start_trace(AgentContext("s1"), "helper")
    span = tracer.start_span("tool_call", "boom")
    tracer.fail_span(ValueError("disk full"), span)
    tracer.fail_trace(RuntimeError("run failed"))

    spans = _by_name(tracer.get_spans(trace_id))
    assert spans["boom"]["status"] == "error"
    assert spans["boom"]["error"] == {"type": "ValueError", "message": "disk full"}
    assert spans["helper"]["error"]["message"] == "run failed"


def test_ending_a_parent_discards_open_children():
    tracer = Tracer()
    tracer.start_trace(AgentContext("s1"), "helper")
    root = tracer.get_current_span_id()
    tracer.start_span("llm_call", "dangling")

    tracer.end_span(root)

    assert tracer.get_current_span_id() is None
    assert tracer.get_current_trace_id() is None


def test_disabled_tracer_records_nothing():
    tracer = Tracer(enabled=False)
    ctx = AgentContext("s1")
    assert tracer.start_trace(ctx, "helper") is None
    assert tracer.start_span("llm_call", "x") is None
    tracer.end_trace()
    assert not ctx.has_state("trace_id")


def test_agent_runs_are_traced():
    runtime = make_runtime(ScriptedProvider("hello"))
    runtime.registry.register("echo", EchoAgent)
    runtime.manager.run("echo", "hi", "sess-1")

    trace_id = session_store.get_session("sess-1", "echo")["state_data"]["trace_id"]
    spans = runtime.tracer.get_spans(trace_id)
    assert sorted(s["type"] for s in spans) == ["agent_run", "llm_call"]


def test_failed_runs_close_the_trace_with_an_error():
    runtime = make_runtime()
    runtime.registry.register("broken", BrokenAgent)
    with pytest.raises(RuntimeError):
        runtime.manager.run("broken", "X", "sess-1")

    trace_id = session_store.get_session("sess-1", "broken")["state_data"]["trace_id"]
    [root] = runtime.tracer.get_spans(trace_id)
    assert root["status"] == "error"
    assert root["error"] == {"type": "RuntimeError", "message": "cannot handle X"}
    assert runtime.tracer.get_current_trace_id() is None


def test_cleanup_keeps_recent_spans():
    tracer = Tracer()
    trace_id = tracer.start_trace(AgentContext("s1"), "helper")
    tracer.end_trace()
    assert tracer.cleanup(older_than_days=30) == 0
    assert len(tracer.get_spans(trace_id)) == 1
