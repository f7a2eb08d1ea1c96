import json

import httpx
import pytest

from agent_adk.agents import GenericLlmAgent
from agent_adk.context import AgentContext
from agent_adk.exceptions import MCPException, ToolExecutionException
from agent_adk.mcp.client import ClientState
from agent_adk.mcp.discovery import MCPToolDiscovery
from agent_adk.mcp.http import MCPHttpClient
from agent_adk.mcp.manager import MCPClientManager, build_client, deep_merge
from agent_adk.mcp.stdio import MCPStdioClient
from agent_adk.tools.mcp_tool import MCPToolWrapper

from fakes import FailingMCPClient, FakeClientFactory, FakeMCPClient, ScriptedProvider, make_runtime, tool_call

SERVERS = {
    "files": {"transport": "fake", "headers": {"A": "1"}, "args": ["a", "b"]},
    "off": {"transport": "fake", "enabled": False},
}


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _manager(factory=None, **kwargs):
    return MCPClientManager(SERVERS, client_factory=factory or FakeClientFactory(), **kwargs)


# -- client ---------------------------------------------------------------------


def test_first_call_performs_the_handshake():
    client = FakeMCPClient()

    tools = client.list_tools()

    assert [t["name"] for t in tools] == ["lookup", "ping"]
    assert client.methods() == ["initialize", "tools/list"]
    assert [p["id"] for p in client.sent] == [1, 2]
    assert client.sent[0]["params"]["protocolVersion"] == "2024-11-05"
    assert client.sent[0]["params"]["clientInfo"]["name"] == "agent-adk"
    assert client.notifications == [{"jsonrpc": "2.0", "method": "notifications/initialized"}]
    assert client.is_connected()
    assert client.get_server_info()["serverInfo"] == {"name": "fake"}

    client.list_tools()
    assert client.opened == 1


def test_call_tool_sends_empty_arguments_as_an_object():
    client = FakeMCPClient()
    result = client.call_tool("ping")

    assert client.sent[-1]["params"] == {"name": "ping", "arguments": {}}
    assert json.loads(result) == [{"type": "text", "text": "ping:{}"}]


def test_error_responses_raise_with_details():
    client = FakeMCPClient()
    with pytest.raises(MCPException) as excinfo:
        client.call_tool("nope", {"x": 1})
    assert str(excinfo.value).startswith("MCP Error: ")
    assert excinfo.value.details["code"] == -32602


def test_non_object_results_are_wrapped():
    def handler(payload):
        result = 42 if payload["method"] == "tools/call" else {}
        return {"jsonrpc": "2.0", "id": payload["id"], "result": result}

    client = FakeMCPClient(handler=handler)
    assert client.call_tool("answer") == '{"value": 42}'


def test_resources_and_prompts():
    client = FakeMCPClient()
    assert client.read_resource("file:///notes.txt") == "resource body"
    messages = client.get_prompt("greeting", {"name": "Ada"})
    assert messages[0]["content"]["text"] == "greeting"
    assert client.sent[-1]["params"] == {"name": "greeting", "arguments": {"name": "Ada"}}


def test_failed_handshake_leaves_the_client_disconnected():
    client = FailingMCPClient()
    with pytest.raises(MCPException):
        client.connect()
    assert client.state == ClientState.DISCONNECTED
    assert client.closed == 1


def test_context_manager_disconnects():
    client = FakeMCPClient()
    with client as connected:
        assert connected.is_connected()
    assert client.state == ClientState.DISCONNECTED
    assert client.closed == 1


# -- http -----------------------------------------------------------------------


def _http_transport(seen, status=200, body=None):
    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        seen.append((request, payload))
        if "id" not in payload:
            return httpx.Response(202)
        if body is not None:
            return httpx.Response(status, content=body)
        return httpx.Response(
            status,
            json={"jsonrpc": "2.0", "id": payload["id"], "result": {"tools": [{"name": "remote"}]}},
        )

    return httpx.MockTransport(handler)


def test_http_client_posts_json_rpc_with_headers():
    seen = []
    client = MCPHttpClient(
        "remote",
        url="https://mcp.example/rpc",
        api_key="secret",
        headers={"X-Tenant": "acme"},
        transport=_http_transport(seen),
    )

    assert client.list_tools() == [{"name": "remote"}]
    methods = [payload["method"] for _, payload in seen]
    assert methods == ["initialize", "notifications/initialized", "tools/list"]
    request = seen[-1][0]
    assert request.headers["Authorization"] == "Bearer secret"
    assert request.headers["X-Tenant"] == "acme"
    assert str(request.url) == "https://mcp.example/rpc"


def test_http_error_status_raises():
    client = MCPHttpClient("remote", url="https://mcp.example/rpc", transport=_http_transport([], status=500, body=b"boom"))
    with pytest.raises(MCPException) as excinfo:
        client.list_tools()
    assert "HTTP request failed with status 500" in str(excinfo.value)
    assert client.state == ClientState.DISCONNECTED


def test_http_invalid_json_raises():
    client = MCPHttpClient("remote", url="https://mcp.example/rpc", transport=_http_transport([], body=b"<html>"))
    with pytest.raises(MCPException) as excinfo:
        client.list_tools()
    assert str(excinfo.value) == "Invalid JSON-RPC response format"


# -- manager --------------------------------------------------------------------


def test_discovery_is_cached_until_ttl_expires():
    factory = FakeClientFactory()
    clock = Clock()
    manager = _manager(factory, cache_ttl=10, clock=clock)

    assert len(manager.discover_tools("files")) == 2
    manager.discover_tools("files")
    client = factory.created[0]
    assert client.methods().count("tools/list") == 1

    clock.now = 11
    manager.discover_tools("files")
    assert client.methods().count("tools/list") == 2
    assert len(factory.created) == 1

    manager.clear_cache("files")
    manager.discover_tools("files")
    assert client.methods().count("tools/list") == 3


def test_disabled_and_unknown_servers():
    manager = _manager()

    assert manager.get_enabled_servers() == ["files"]
    assert manager.discover_tools("off") == []
    assert not manager.is_server_enabled("ghost")
    with pytest.raises(MCPException) as excinfo:
        manager.call_tool("off", "lookup")
    assert "not enabled" in str(excinfo.value)
    with pytest.raises(MCPException):
        manager.create_client("off")
    with pytest.raises(MCPException):
        manager.create_client("ghost")
    assert manager.test_connection("off")["success"] is False


def test_discovery_failure_returns_nothing_and_drops_the_client():
    manager = MCPClientManager(SERVERS, client_factory=lambda name, config: FailingMCPClient(name))
    assert manager.discover_tools("files") == []
    assert manager.discover_all_tools() == []


def test_discover_all_tools_stamps_the_server():
    tools = _manager().discover_all_tools()
    assert {t["_mcp_server"] for t in tools} == {"files"}


def test_overrides_merge_and_replace_the_client():
    factory = FakeClientFactory()
    manager = _manager(factory)
    manager.call_tool("files", "ping")
    first = factory.created[0]

    manager.set_context_overrides({"files": {"headers": {"B": "2"}, "args": ["c"]}, "ghost": {"x": 1}})

    config = manager.get_server_config("files")
    assert config["headers"] == {"A": "1", "B": "2"}
    assert config["args"] == ["c"]
    assert first.closed == 1
    manager.call_tool("files", "ping")
    assert len(factory.created) == 2
    assert factory.created[1].config["headers"] == {"A": "1", "B": "2"}
    assert manager.get_server_config("ghost") is None

    manager.clear_context_overrides()
    assert manager.get_server_config("files")["headers"] == {"A": "1"}
    assert SERVERS["files"]["headers"] == {"A": "1"}


def test_unchanged_overrides_keep_the_client():
    factory = FakeClientFactory()
    manager = _manager(factory)
    manager.call_tool("files", "ping")
    manager.set_context_overrides({"files": {"headers": {"A": "1"}}})
    manager.call_tool("files", "ping")
    assert len(factory.created) == 1


def test_deep_merge_replaces_lists_and_copies():
    base = {"env": {"A": "1"}, "args": ["x"], "timeout": 5}
    merged = deep_merge(base, {"env": {"B": "2"}, "args": ["y", "z"]})
    assert merged == {"env": {"A": "1", "B": "2"}, "args": ["y", "z"], "timeout": 5}
    merged["env"]["C"] = "3"
    assert base["env"] == {"A": "1"}


def test_tool_call_failure_drops_the_client():
    manager = MCPClientManager(SERVERS, client_factory=lambda name, config: FailingMCPClient(name))
    with pytest.raises(MCPException):
        manager.call_tool("files", "lookup", {"q": "x"})
    result = manager.test_connection("files")
    assert result["success"] is False
    assert "unreachable" in result["error"]


def test_test_connection_reports_tools():
    result = _manager().test_connection("files")
    assert result == {"success": True, "server": "files", "tools_count": 2, "tools": ["lookup", "ping"]}


def test_prompt_failure_drops_the_client():
    created = []

    def factory(name, config):
        created.append(FailingMCPClient(name))
        return created[-1]

    manager = MCPClientManager(SERVERS, client_factory=factory)
    for _ in range(2):
        with pytest.raises(MCPException):
            manager.get_prompt("files", "summarise")
    assert len(created) == 2


def test_test_connection_reports_bad_config_instead_of_raising():
    manager = MCPClientManager({"remote": {"transport": "http", "url": "https://mcp.example", "timeout": "soon"}})
    result = manager.test_connection("remote")
    assert result["success"] is False
    assert result["server"] == "remote"


def test_build_client_validates_config():
    with pytest.raises(MCPException) as excinfo:
        build_client("local", {"transport": "stdio"})
    assert "no command" in str(excinfo.value)
    with pytest.raises(MCPException) as excinfo:
        build_client("remote", {"transport": "http"})
    assert "no URL" in str(excinfo.value)
    with pytest.raises(MCPException) as excinfo:
        build_client("odd", {"transport": "carrier-pigeon"})
    assert "unsupported transport 'carrier-pigeon'" in str(excinfo.value)


def test_build_client_expands_environment_references(monkeypatch):
    monkeypatch.setenv("MCP_TOKEN", "tok-123")

    http = build_client(
        "remote",
        {"transport": "http", "url": "https://mcp.example/${MCP_TOKEN}", "api_key": "${MCP_TOKEN}", "timeout": 5},
    )
    assert isinstance(http, MCPHttpClient)
    assert http.url == "https://mcp.example/tok-123"
    assert http.request_headers()["Authorization"] == "Bearer tok-123"
    assert http.timeout == 5.0

    stdio = build_client("local", {"command": "npx", "args": ["server", "--token=${MCP_TOKEN}"], "env": {"KEY": "${MCP_TOKEN}"}})
    assert isinstance(stdio, MCPStdioClient)
    assert stdio.args == ["server", "--token=tok-123"]
    assert stdio.build_env()["KEY"] == "tok-123"


# -- discovery and tool wrapper -------------------------------------------------


def test_agent_tools_come_from_enabled_servers_only():
    discovery = MCPToolDiscovery(_manager())
    agent = GenericLlmAgent("mcp_user", {"instructions": "x", "mcp_servers": ["files", "off", "ghost"]})

    tools = discovery.discover_tools_for_agent(agent)

    assert [t.name for t in tools] == ["lookup", "ping"]
    assert tools[1].parameters == {"type": "object", "properties": {}, "required": []}
    assert discovery.unknown_servers(agent) == ["ghost"]
    info = discovery.get_agent_mcp_tools_info(agent)
    assert info["total_tools"] == 2
    assert info["tools_by_server"]["files"]["tools"] == ["lookup", "ping"]


def test_validate_agent_mcp_servers_tests_each_declared_server():
    discovery = MCPToolDiscovery(_manager())
    agent = GenericLlmAgent("mcp_user", {"instructions": "x", "mcp_servers": ["files", "off"]})
    plain = GenericLlmAgent("plain", {"instructions": "x"})

    results = discovery.validate_agent_mcp_servers(agent)

    assert discovery.agent_has_mcp_servers(agent)
    assert not discovery.agent_has_mcp_servers(plain)
    assert results["files"]["success"] is True
    assert results["off"] == {"success": False, "server": "off", "error": "Server 'off' is not enabled"}


def test_unsupported_discovery_methods_return_nothing():
    manager = _manager()
    assert manager.discover_resources("files") == []
    assert manager.discover_prompts("files") == []


def test_wrapper_wraps_bare_property_maps():
    wrapper = MCPToolWrapper(_manager(), "files", {"name": "t", "inputSchema": {"q": {"type": "string"}}})
    assert wrapper.parameters == {"type": "object", "properties": {"q": {"type": "string"}}, "required": []}
    assert wrapper.description == "MCP tool"
    assert wrapper.is_available()


def test_wrapper_applies_overrides_from_context_state():
    factory = FakeClientFactory()
    manager = _manager(factory)
    wrapper = MCPToolWrapper(manager, "files", {"name": "lookup", "inputSchema": {}})
    ctx = AgentContext("s1", state={"mcp_config_overrides": {"files": {"headers": {"X-Tenant": "t1"}}}})

    result = wrapper.execute({"q": "order 7"}, ctx)

    assert json.loads(result)[0]["text"] == 'lookup:{"q": "order 7"}'
    assert factory.created[0].config["headers"] == {"A": "1", "X-Tenant": "t1"}
    assert manager.get_server_config("files")["headers"] == {"A": "1"}


def test_overrides_from_one_tenant_do_not_reach_the_next():
    factory = FakeClientFactory()
    manager = _manager(factory)
    wrapper = MCPToolWrapper(manager, "files", {"name": "lookup", "inputSchema": {}})
    tenant_a = AgentContext("s-a", state={"mcp_config_overrides": {"files": {"headers": {"Authorization": "token-A"}}}})
    tenant_b = AgentContext("s-b")

    wrapper.execute({"q": "a"}, tenant_a)
    wrapper.execute({"q": "b"}, tenant_b)
    wrapper.execute({"q": "a2"}, tenant_a)

    assert [c.config["headers"] for c in factory.created] == [{"A": "1", "Authorization": "token-A"}, {"A": "1"}]
    assert [p["params"]["arguments"]["q"] for p in factory.created[0].sent if p["method"] == "tools/call"] == ["a", "a2"]
    assert [p["params"]["arguments"]["q"] for p in factory.created[1].sent if p["method"] == "tools/call"] == ["b"]


def test_wrapper_failures_become_tool_errors():
    manager = MCPClientManager(SERVERS, client_factory=lambda name, config: FailingMCPClient(name))
    wrapper = MCPToolWrapper(manager, "files", {"name": "lookup"})
    with pytest.raises(ToolExecutionException) as excinfo:
        wrapper.execute({"q": "x"}, AgentContext("s1"))
    assert str(excinfo.value).startswith("MCP tool 'lookup' failed: ")


def test_agent_calls_mcp_tools_through_the_runtime():
    provider = ScriptedProvider(tool_call("lookup", {"q": "order 7"}), "found it")
    runtime = make_runtime(provider, mcp_manager=_manager())
    runtime.registry.register("mcp_user", {"instructions": "Use the lookup tool.", "mcp_servers": ["files"]})

    assert runtime.manager.run("mcp_user", "find order 7", "sess-1") == "found it"

    assert [t["name"] for t in provider.calls[0]["tools"]] == ["lookup", "ping"]
    tool_result = provider.calls[1]["messages"][-1]["content"]
    assert json.loads(tool_result)[0]["text"] == 'lookup:{"q": "order 7"}'
