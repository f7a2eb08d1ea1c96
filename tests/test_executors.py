import base64
import json
import time
from pathlib import Path

import pytest

from agent_adk.agents import ImageAgent
from agent_adk.exceptions import AgentError
from agent_adk.execution.jobs import Worker
from agent_adk.media import ImageResponse
from agent_adk.storage import job_store, session_store
from agent_adk.storage.db import connect

from fakes import (
    BrokenAgent,
    EchoAgent,
    FlakyAgent,
    GuardedAgent,
    PNG_B64,
    PosterAgent,
    ResearchPlanner,
    ScriptedProvider,
    SlowAgent,
    make_runtime,
    tool_call,
)


def _state(session_id, agent_name):
    return session_store.get_session(session_id, agent_name)["state_data"]


def _spans_of_type(runtime, span_type):
    with connect() as conn:
        rows = conn.execute("SELECT DISTINCT trace_id FROM agent_trace_spans WHERE type = ?", (span_type,)).fetchall()
    spans = [s for row in rows for s in runtime.tracer.get_spans(row["trace_id"])]
    return [s for s in spans if s["type"] == span_type]


def _run_finished(runtime, session_id):
    """True once the abandoned run has saved its session and closed its trace."""
    trace_id = _state(session_id, "slow").get("trace_id")
    if not trace_id:
        return False
    return any(s["type"] == "agent_run" and s["status"] != "running" for s in runtime.tracer.get_spans(trace_id))


# -- agent executor ---------------------------------------------------------------


def test_sync_run_injects_user_context_and_parameters():
    provider = ScriptedProvider("hello")
    runtime = make_runtime(provider)
    calls = []

    result = (
        EchoAgent.run("hi", runtime=runtime)
        .for_user({"id": 7, "name": "Ada", "email": "ada@example.com"})
        .with_context({"plan": "pro"})
        .with_context_value("tier", "gold")
        .temperature(0.2)
        .max_tokens(64)
        .then(lambda value, meta: calls.append((value, meta)))
        .go()
    )

    assert result == "hello"
    value, meta = calls[0]
    assert value == "hello"
    assert meta["agent"] == "echo"
    assert meta["user_id"] == "7"
    assert meta["session_id"].startswith("user_7_")

    state = _state(meta["session_id"], "echo")
    assert state["user_id"] == "7"
    assert state["user_name"] == "Ada"
    assert state["user_email"] == "ada@example.com"
    assert state["plan"] == "pro"
    assert state["tier"] == "gold"
    assert state["execution_mode"] == "sync"
    assert provider.calls[0]["temperature"] == 0.2
    assert provider.calls[0]["max_tokens"] == 64


def test_parameters_do_not_leak_into_later_runs_on_the_session():
    provider = ScriptedProvider("one", "two")
    runtime = make_runtime(provider)

    EchoAgent.run("first", runtime=runtime).with_session("shared").using("gpt-4o").go()
    EchoAgent.run("second", runtime=runtime).with_session("shared").go()

    assert provider.calls[0]["model"] == "gpt-4o"
    assert provider.calls[1]["model"] is None
    assert "agent_parameters" not in _state("shared", "echo")
    history = [m["content"] for m in provider.calls[1]["messages"][1:]]
    assert history == ["first", "one", "second"]


def test_anonymous_sessions_use_the_executor_prefix():
    runtime = make_runtime()
    executor = EchoAgent.run("hi", runtime=runtime)
    executor.go()
    assert executor.session_id.startswith("session_")
    assert len(executor.session_id) == len("session_") + 12


def test_attachments_are_base64_encoded(tmp_path):
    doc = tmp_path / "notes.txt"
    doc.write_text("meeting notes", encoding="utf-8")
    runtime = make_runtime()

    executor = (
        EchoAgent.run("summarise", runtime=runtime)
        .with_image(b"\x89PNG fake", mime_type="image/png")
        .with_document(doc)
    )
    executor.go()

    image, document = _state(executor.session_id, "echo")["attachments"]
    assert image["type"] == "image"
    assert base64.b64decode(image["data"]) == b"\x89PNG fake"
    assert document["mime_type"] == "text/plain"
    assert document["title"] == "notes.txt"


def test_errors_propagate_from_go_but_not_from_str():
    runtime = make_runtime()
    runtime.registry.register("broken", BrokenAgent)

    with pytest.raises(RuntimeError):
        BrokenAgent.run("X", runtime=runtime).go()
    assert str(BrokenAgent.run("X", runtime=runtime)) == "Error executing agent: cannot handle X"


def test_timeout_abandons_a_slow_run():
    runtime = make_runtime()
    runtime.registry.register("slow", SlowAgent)

    with pytest.raises(AgentError) as excinfo:
        SlowAgent.run("x", runtime=runtime).with_session("slow-1").timeout(1).go()
    assert str(excinfo.value) == "Agent execution timed out after 1 seconds"

    runtime.registry.get_agent("slow").release.set()
    deadline = time.time() + 5
    while time.time() < deadline and not _run_finished(runtime, "slow-1"):
        time.sleep(0.05)
    assert _state("slow-1", "slow")["finished"] is True


# -- background jobs --------------------------------------------------------------


def test_async_dispatch_and_worker():
    runtime = make_runtime(ScriptedProvider("hello"))

    receipt = EchoAgent.run("hi", runtime=runtime).for_user("u1").async_().go()

    assert receipt["job_dispatched"] is True
    assert (receipt["queue"], receipt["agent"], receipt["mode"]) == ("default", "echo", "agent")
    job = job_store.get_job(receipt["job_id"])
    assert job["status"] == "queued"
    assert job["payload"]["input"] == "hi"
    assert job["payload"]["user_id"] == "u1"

    assert Worker(runtime, retry_delay=0).run(once=True) == 1

    job = job_store.get_job(receipt["job_id"])
    assert job["status"] == "completed"
    assert job["result"] == "hello"
    state = _state(job["payload"]["session_id"], "echo")
    assert state["background_job"] is True
    assert state["job_id"] == receipt["job_id"]
    assert state["execution_mode"] == "async"


def test_worker_retries_until_max_tries():
    runtime = make_runtime()
    runtime.registry.register("flaky", FlakyAgent)

    receipt = FlakyAgent.run("x", runtime=runtime).on_queue("slow-lane").tries(2).go()

    assert Worker(runtime, queue="slow-lane", retry_delay=0).run(once=True) == 2
    job = job_store.get_job(receipt["job_id"])
    assert job["status"] == "completed"
    assert job["attempts"] == 2
    assert job["result"] == "ok after 2"


def test_worker_fails_jobs_without_tries_left():
    runtime = make_runtime()
    receipt = BrokenAgent.run("X", runtime=runtime).async_().go()

    worker = Worker(runtime, retry_delay=0)
    record = worker.process_next()

    assert record["status"] == "failed"
    assert record["error"] == "cannot handle X"
    assert worker.process_next() is None
    assert job_store.get_job(receipt["job_id"])["attempts"] == 1


def test_delayed_jobs_wait():
    runtime = make_runtime()
    EchoAgent.run("later", runtime=runtime).async_().delay(3600).go()
    assert Worker(runtime).run(once=True) == 0


def test_interrupted_jobs_complete_with_the_interrupt(write_config):
    write_config({"tool_permissions": {"delete_record": True}})
    runtime = make_runtime(ScriptedProvider(tool_call("delete_record", {"id": 3})))
    receipt = GuardedAgent.run("delete 3", runtime=runtime).async_().go()

    Worker(runtime).run(once=True)

    result = job_store.get_job(receipt["job_id"])["result"]
    assert result["interrupted"] is True
    assert result["data"] == {"tool": "delete_record", "arguments": {"id": 3}}
    assert runtime.interrupts.get(result["interrupt_id"])["status"] == "pending"


# -- planning ---------------------------------------------------------------------

PLAN = {
    "goal": "Summarise X",
    "steps": [
        {"id": 1, "action": "Find sources", "dependencies": []},
        {"id": 2, "action": "Write summary", "dependencies": [1]},
    ],
    "success_criteria": ["accurate"],
}


def test_planning_run_plans_executes_and_reflects():
    provider = ScriptedProvider(
        "Here is the plan: " + json.dumps(PLAN),
        "sources found",
        "summary text",
        '{"satisfactory": true, "score": 0.9, "strengths": ["clear"]}',
    )
    runtime = make_runtime(provider)

    executor = ResearchPlanner.run("Summarise X", runtime=runtime).balanced()
    response = executor.go()

    assert response.result == "summary text"
    assert response.is_success()
    assert response.attempts == 1
    assert response.score == 0.9
    assert [s.id for s in response.steps] == [1, 2]
    assert executor.session_id.startswith("planning_")
    assert "Step 1: sources found" in provider.calls[2]["messages"][-1]["content"]
    state = _state(executor.session_id, "research_planner")
    assert state["planning_max_attempts"] == 3
    assert state["step_2_result"] == "summary text"


def test_planning_replans_after_a_weak_reflection():
    provider = ScriptedProvider(
        json.dumps({"goal": "Draft", "steps": [{"id": 1, "action": "Draft it"}]}),
        "draft",
        '{"satisfactory": false, "score": 0.3, "weaknesses": ["thin"], "suggestions": ["add detail"]}',
        json.dumps({"goal": "Better draft", "steps": [{"id": 1, "action": "Draft with detail"}]}),
        "better",
        '{"satisfactory": true, "score": 0.95}',
    )
    runtime = make_runtime(provider)

    response = ResearchPlanner.run("Write it", runtime=runtime).max_attempts(2).go()

    assert response.result == "better"
    assert response.attempts == 2
    assert response.goal == "Better draft"
    assert "Weaknesses: thin" in provider.calls[3]["messages"][-1]["content"]


def test_planning_gives_up_when_the_plan_cannot_run():
    broken_plan = {"goal": "Loop", "steps": [{"id": 1, "action": "Wait", "dependencies": [2]}]}
    runtime = make_runtime(ScriptedProvider(json.dumps(broken_plan)))

    response = ResearchPlanner.run("Impossible", runtime=runtime).fast().go()

    assert not response.success
    assert response.result == "Unable to complete task after 1 attempts."


def test_planning_settings_are_validated():
    executor = ResearchPlanner.run("x")
    with pytest.raises(ValueError):
        executor.max_attempts(0)
    with pytest.raises(ValueError):
        executor.threshold(1.5)
    with pytest.raises(ValueError):
        executor.preset("turbo")
    assert executor.high_accuracy().planning == {"planning_max_attempts": 5, "planning_threshold": 0.9}


# -- media ------------------------------------------------------------------------


def test_image_generation_with_presets_and_storage():
    provider = ScriptedProvider()
    runtime = make_runtime(provider)
    runtime.registry.register_builtin_agents()

    executor = ImageAgent.run("a red fox", runtime=runtime).landscape().hd().store()
    image = executor.go()

    assert provider.image_calls[0]["options"] == {
        "size": "1792x1024",
        "quality": "hd",
        "style": "vivid",
        "response_format": "url",
    }
    assert isinstance(image, ImageResponse)
    assert image.revised_prompt == "revised: a red fox"
    assert image.is_stored()
    assert Path(image.path).read_bytes() == base64.b64decode(PNG_B64)
    assert image.path.endswith(".png")
    assert str(image) == image.path
    assert executor.session_id.startswith("media_")
    generated = _state(executor.session_id, "image_agent")["generated_images"]
    assert generated[0]["metadata"]["size"] == "1792x1024"


def test_store_as_uses_the_given_name(isolated_env):
    runtime = make_runtime()
    runtime.registry.register_builtin_agents()

    image = ImageAgent.run("logo", runtime=runtime).square().store_as("brand/logo.png").go()

    assert Path(image.path) == isolated_env / "media" / "brand" / "logo.png"
    assert image.to_data_uri().startswith("data:image/png;base64,")


def test_media_options_survive_the_job_queue():
    runtime = make_runtime()
    receipt = PosterAgent.run("concert", runtime=runtime).portrait().option("dpi", 300).async_().go()

    Worker(runtime).run(once=True)

    job = job_store.get_job(receipt["job_id"])
    assert job["payload"]["mode"] == "media"
    assert job["result"] == {"prompt": "concert", "options": {"size": "1024x1792", "dpi": 300}}


class SmudgedPosterAgent(PosterAgent):
    name = "smudged_poster"

    def execute(self, input, context):
        raise RuntimeError("ink ran out")


# -- tracing ----------------------------------------------------------------------


def test_planning_run_records_one_closed_span():
    runtime = make_runtime(ScriptedProvider(json.dumps(PLAN), "sources", "summary", '{"satisfactory": true, "score": 1}'))

    ResearchPlanner.run("Summarise X", runtime=runtime).go()

    [span] = _spans_of_type(runtime, "planning_execution")
    assert span["status"] == "success"
    assert span["name"] == "research_planner"
    assert span["duration_ms"] is not None
    assert span["metadata"] == {}


def test_failed_planning_run_records_an_error_span():
    runtime = make_runtime(ScriptedProvider(RuntimeError("upstream down")))

    with pytest.raises(AgentError):
        ResearchPlanner.run("Summarise X", runtime=runtime).go()

    [span] = _spans_of_type(runtime, "planning_execution")
    assert span["status"] == "error"
    assert span["error"]["type"] == "AgentError"
    assert "upstream down" in span["error"]["message"]


def test_media_run_records_one_closed_span():
    runtime = make_runtime()

    PosterAgent.run("concert", runtime=runtime).go()

    [span] = _spans_of_type(runtime, "media_generation")
    assert span["status"] == "success"
    assert span["end_time"] is not None


def test_failed_media_run_records_an_error_span():
    runtime = make_runtime()

    with pytest.raises(RuntimeError, match="ink ran out"):
        SmudgedPosterAgent.run("concert", runtime=runtime).go()

    [span] = _spans_of_type(runtime, "media_generation")
    assert span["status"] == "error"
    assert span["error"] == {"type": "RuntimeError", "message": "ink ran out"}


def test_media_span_is_closed_before_the_final_save(monkeypatch):
    runtime = make_runtime()
    save = runtime.state.save_context

    def save_then_fail(context, agent_name, apply_memory_updates=True):
        if apply_memory_updates:
            raise RuntimeError("disk full")
        return save(context, agent_name, apply_memory_updates)

    monkeypatch.setattr(runtime.state, "save_context", save_then_fail)

    with pytest.raises(RuntimeError, match="disk full"):
        PosterAgent.run("concert", runtime=runtime).go()

    [span] = _spans_of_type(runtime, "media_generation")
    assert span["status"] == "success"
