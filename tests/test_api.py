import pytest
from fastapi.testclient import TestClient

from agent_adk.context import AgentContext
from agent_adk.exceptions import InterruptException
from agent_adk.execution.jobs import Worker
from agent_adk.main import create_app
from agent_adk.mcp.manager import MCPClientManager

from fakes import (
    EchoAgent,
    FakeClientFactory,
    GuardedAgent,
    ScriptedProvider,
    WordCountAgent,
    make_runtime,
    tool_call,
)


def _client(runtime):
    return TestClient(create_app(runtime))


def _pending_interrupt(runtime):
    ctx = AgentContext("sess-api", state={"agent_name": "guarded"})
    with pytest.raises(InterruptException) as excinfo:
        runtime.interrupts.interrupt(ctx, "Check this", {"tool": "delete_record"}, type="input")
    return excinfo.value.interrupt_id


# -- runs -------------------------------------------------------------------------


def test_run_returns_output_and_meta():
    runtime = make_runtime(ScriptedProvider("hello"))
    runtime.registry.register("echo", EchoAgent)

    with _client(runtime) as client:
        resp = client.post("/agents/echo/run", json={"input": "hi", "session_id": "s-1", "parameters": {"temperature": 0.1}})

    assert resp.status_code == 200
    body = resp.json()
    assert body["output"] == "hello"
    assert body["meta"]["agent"] == "echo"
    assert body["meta"]["session_id"] == "s-1"
    assert isinstance(body["meta"]["latency_ms"], float)
    assert runtime.provider.calls[0]["temperature"] == 0.1


def test_unknown_agent_is_404():
    with _client(make_runtime()) as client:
        resp = client.post("/agents/ghost/run", json={"input": "x"})
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "NOT_FOUND"
    assert resp.json()["meta"]["agent"] == "ghost"


def test_body_validation_errors():
    runtime = make_runtime()
    runtime.registry.register("echo", EchoAgent)

    with _client(runtime) as client:
        missing = client.post("/agents/echo/run", json={"question": "x"})
        bad_tries = client.post("/agents/echo/run", json={"input": "x", "tries": 0})
        bad_json = client.post(
            "/agents/echo/run", content=b"{not json", headers={"Content-Type": "application/json"}
        )

    assert missing.status_code == 422
    assert missing.json()["error"]["code"] == "INPUT_VALIDATION_ERROR"
    assert bad_tries.status_code == 422
    assert bad_tries.json()["error"]["details"][0]["path"] == ["tries"]
    assert bad_json.status_code == 400
    assert bad_json.json()["error"]["code"] == "MALFORMED_REQUEST"


def test_agent_failures_are_500():
    runtime = make_runtime(ScriptedProvider(RuntimeError("upstream down")))
    runtime.registry.register("echo", EchoAgent)

    with _client(runtime) as client:
        resp = client.post("/agents/echo/run", json={"input": "x"})

    assert resp.status_code == 500
    error = resp.json()["error"]
    assert error["code"] == "INTERNAL_ERROR"
    assert "upstream down" in error["details"]["message"]


def test_async_run_is_queued_and_pollable():
    runtime = make_runtime(ScriptedProvider("later"))
    runtime.registry.register("echo", EchoAgent)

    with _client(runtime) as client:
        resp = client.post("/agents/echo/run", json={"input": "hi", "async": True, "queue": "api"})
        assert resp.status_code == 202
        receipt = resp.json()
        assert receipt["job_dispatched"] is True
        assert receipt["queue"] == "api"

        assert client.get(f"/jobs/{receipt['job_id']}").json()["status"] == "queued"
        Worker(runtime, queue="api").run(once=True)
        job = client.get(f"/jobs/{receipt['job_id']}").json()
        missing = client.get("/jobs/nope")

    assert job["status"] == "completed"
    assert job["result"] == "later"
    assert missing.status_code == 404


# -- interrupts -------------------------------------------------------------------


def test_interrupted_run_is_409_and_can_be_approved(write_config):
    write_config({"tool_permissions": {"delete_record": True}})
    runtime = make_runtime(ScriptedProvider(tool_call("delete_record", {"id": 4})))
    runtime.registry.register("guarded", GuardedAgent)

    with _client(runtime) as client:
        resp = client.post("/agents/guarded/run", json={"input": "delete 4", "session_id": "s-int"})
        assert resp.status_code == 409
        error = resp.json()["error"]
        assert error["code"] == "INTERRUPTED"
        interrupt_id = error["details"]["interrupt_id"]
        assert error["details"]["data"] == {"tool": "delete_record", "arguments": {"id": 4}}

        listed = client.get("/interrupts", params={"session_id": "s-int"}).json()["interrupts"]
        assert [i["id"] for i in listed] == [interrupt_id]

        approved = client.post(f"/interrupts/{interrupt_id}/approve", json={"modifications": {"id": 5}})
        again = client.post(f"/interrupts/{interrupt_id}/approve", json={})
        record = client.get(f"/interrupts/{interrupt_id}").json()

    assert approved.status_code == 200
    assert approved.json()["modifications"] == {"id": 5}
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "INTERRUPT_STATE"
    assert record["status"] == "approved"


def test_interrupt_resolution_endpoints():
    runtime = make_runtime()

    with _client(runtime) as client:
        respond_id = _pending_interrupt(runtime)
        reject_id = _pending_interrupt(runtime)
        cancel_id = _pending_interrupt(runtime)

        invalid = client.post(f"/interrupts/{respond_id}/respond", json={})
        responded = client.post(f"/interrupts/{respond_id}/respond", json={"response": "blue"})
        rejected = client.post(f"/interrupts/{reject_id}/reject", json={"reason": "no"})
        cancelled = client.post(f"/interrupts/{cancel_id}/cancel")
        missing = client.post("/interrupts/nope/approve", json={})
        missing_get = client.get("/interrupts/nope")

    assert invalid.status_code == 400
    assert invalid.json()["error"]["code"] == "MALFORMED_REQUEST"
    assert responded.json()["user_response"] == "blue"
    assert rejected.json()["status"] == "rejected"
    assert cancelled.json()["status"] == "cancelled"
    assert missing.status_code == 404
    assert missing_get.status_code == 404


# -- auth -------------------------------------------------------------------------


def test_auth_token_guards_mutating_endpoints(monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN", "secret")
    runtime = make_runtime(ScriptedProvider("hello"))
    runtime.registry.register("echo", EchoAgent)

    with _client(runtime) as client:
        anonymous = client.post("/agents/echo/run", json={"input": "hi"})
        wrong = client.post("/agents/echo/run", json={"input": "hi"}, headers={"Authorization": "Bearer nope"})
        allowed = client.post("/agents/echo/run", json={"input": "hi"}, headers={"Authorization": "Bearer secret"})
        interrupt = client.post(f"/interrupts/{_pending_interrupt(runtime)}/cancel")
        listing = client.get("/agents")

    assert anonymous.status_code == 401
    assert anonymous.json()["error"]["code"] == "UNAUTHORIZED"
    assert wrong.json()["error"]["message"] == "Invalid bearer token"
    assert allowed.status_code == 200
    assert interrupt.status_code == 401
    assert listing.status_code == 200


# -- read endpoints ---------------------------------------------------------------


def test_health_and_root():
    with _client(make_runtime()) as client:
        health = client.get("/health").json()
        root = client.get("/").json()
    assert health["status"] == "ok"
    assert health["provider"] == "scripted"
    assert health["agents"] >= 1
    assert root["service"] == "agent-adk"


def test_agent_listing_and_details():
    runtime = make_runtime()
    runtime.registry.register("word_counter", WordCountAgent)

    with _client(runtime) as client:
        names = client.get("/agents").json()["agents"]
        details = client.get("/agents/word_counter").json()
        image = client.get("/agents/image_agent").json()
        missing = client.get("/agents/ghost")

    assert {"word_counter", "image_agent"} <= set(names)
    assert details["kind"] == "llm"
    assert details["tools"] == ["word_count"]
    assert details["output_schema"] is None
    assert image["kind"] == "media"
    assert missing.status_code == 404


def test_sessions_and_memory():
    runtime = make_runtime(ScriptedProvider("hello"))
    runtime.registry.register("echo", EchoAgent)

    with _client(runtime) as client:
        client.post("/agents/echo/run", json={"input": "hi", "session_id": "s-read"})
        all_agents = client.get("/sessions/s-read").json()
        one = client.get("/sessions/s-read", params={"agent": "echo"}).json()
        missing = client.get("/sessions/nope")
        memory = client.get("/memory/echo")
        no_memory = client.get("/memory/ghost")

    assert [s["agent_name"] for s in all_agents["agents"]] == ["echo"]
    assert [m["content"] for m in one["messages"]] == ["hi", "hello"]
    assert one["state"]["agent_name"] == "echo"
    assert missing.status_code == 404
    assert memory.status_code == 200
    assert memory.json()["agent_name"] == "echo"
    assert no_memory.status_code == 404


def test_mcp_servers_endpoints():
    manager = MCPClientManager(
        {"files": {"transport": "fake"}, "off": {"transport": "fake", "enabled": False}},
        client_factory=FakeClientFactory(),
    )
    runtime = make_runtime(mcp_manager=manager)

    with _client(runtime) as client:
        servers = client.get("/mcp/servers").json()["servers"]
        tested = client.post("/mcp/servers/files/test").json()
        missing = client.post("/mcp/servers/ghost/test")

    assert servers == [
        {"name": "files", "transport": "fake", "enabled": True},
        {"name": "off", "transport": "fake", "enabled": False},
    ]
    assert tested == {"success": True, "server": "files", "tools_count": 2, "tools": ["lookup", "ping"]}
    assert missing.status_code == 404
