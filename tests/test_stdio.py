import json
import sys
from pathlib import Path

import pytest

from agent_adk.exceptions import MCPException, MCPTimeoutException
from agent_adk.mcp.client import ClientState
from agent_adk.mcp.manager import MCPClientManager
from agent_adk.mcp.stdio import MCPStdioClient

SERVER = str(Path(__file__).with_name("mcp_echo_server.py"))


def test_round_trip_skips_banner_notifications_and_stale_replies():
    client = MCPStdioClient("echo", command=sys.executable, args=[SERVER], timeout=5)
    try:
        assert [t["name"] for t in client.list_tools()] == ["echo"]
        assert client.get_server_info()["serverInfo"] == {"name": "echo"}
        result = client.call_tool("echo", {"text": "hi"})
        assert json.loads(json.loads(result)[0]["text"]) == {"text": "hi"}
    finally:
        client.disconnect()
    assert client.state == ClientState.DISCONNECTED


def test_unknown_method_returns_an_error():
    client = MCPStdioClient("echo", command=sys.executable, args=[SERVER], timeout=5)
    try:
        with pytest.raises(MCPException) as excinfo:
            client.list_prompts()
        assert "Method not found" in str(excinfo.value)
        assert client.is_connected()
    finally:
        client.disconnect()


def test_silent_server_times_out():
    client = MCPStdioClient("sleepy", command=sys.executable, args=["-c", "import time; time.sleep(30)"], timeout=0.3)
    with pytest.raises(MCPTimeoutException):
        client.connect()
    assert client.state == ClientState.DISCONNECTED


CHATTY = "import time\nwhile True:\n    print('still working', flush=True)\n    time.sleep(0.01)\n"


def test_chatty_server_that_never_replies_still_times_out():
    client = MCPStdioClient("chatty", command=sys.executable, args=["-c", CHATTY], timeout=0.3)
    with pytest.raises(MCPTimeoutException):
        client.connect()
    assert client.state == ClientState.DISCONNECTED


def test_missing_command_fails_to_start():
    client = MCPStdioClient("ghost", command="/nonexistent/mcp-server")
    with pytest.raises(MCPException) as excinfo:
        client.connect()
    assert "Failed to start MCP server 'ghost'" in str(excinfo.value)


def test_server_exiting_during_startup_is_reported():
    client = MCPStdioClient("crashy", command=sys.executable, args=["-c", "import sys; sys.exit(3)"])
    with pytest.raises(MCPException) as excinfo:
        client.connect()
    assert "exited during startup with code 3" in str(excinfo.value)


def test_manager_builds_stdio_clients_from_config():
    manager = MCPClientManager({"echo": {"command": sys.executable, "args": [SERVER], "timeout": 5}})
    try:
        result = manager.test_connection("echo")
    finally:
        manager.disconnect_all()
    assert result == {"success": True, "server": "echo", "tools_count": 1, "tools": ["echo"]}
