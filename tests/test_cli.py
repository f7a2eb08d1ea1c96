from __future__ import annotations

import json

import pytest

from agent_adk import cli
from agent_adk.context import AgentContext
from agent_adk.exceptions import InterruptException
from agent_adk.interrupts import InterruptManager
from agent_adk.storage.db import connect

from fakes import EchoAgent, ScriptedProvider, make_runtime


def _main(monkeypatch: pytest.MonkeyPatch, *args: str) -> int:
    monkeypatch.setattr(cli.sys, "argv", ["agent-adk", *args])
    with pytest.raises(SystemExit) as excinfo:
        cli.main()
    return excinfo.value.code


def _overdue_interrupt() -> str:
    with pytest.raises(InterruptException) as excinfo:
        InterruptManager().interrupt(AgentContext("s-cli", state={"agent_name": "helper"}), "Approve?", ttl_hours=0)
    return excinfo.value.interrupt_id


def test_print_help_lists_subcommands(capsys: pytest.CaptureFixture[str]) -> None:
    cli._print_help()
    output = capsys.readouterr().out
    for command in ("agent-adk doctor", "agent-adk worker", "agent-adk mcp test", "agent-adk interrupts expire"):
        assert command in output


def test_help_exits_zero(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    assert _main(monkeypatch, "--help") == 0
    assert "Usage:" in capsys.readouterr().out


def test_doctor_reports_provider_and_database(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str], write_config
) -> None:
    write_config({"mcp_servers": {"files": {"transport": "stdio", "command": "mcp-files"}}})

    assert _main(monkeypatch, "doctor") == 0

    output = capsys.readouterr().out
    assert "Provider: stub" in output
    assert "Database: sqlite" in output
    assert "(found)" in output
    assert "MCP:      files" in output


def test_unknown_command_exits_with_usage_error(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    assert _main(monkeypatch, "frobnicate") == 2
    assert "unknown command 'frobnicate'" in capsys.readouterr().err


def test_interrupts_expire(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    interrupt_id = _overdue_interrupt()

    assert _main(monkeypatch, "interrupts", "expire") == 0

    assert "Expired 1 interrupt(s)" in capsys.readouterr().out
    assert InterruptManager().get(interrupt_id)["status"] == "expired"


def test_interrupts_cleanup_validates_days(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    assert _main(monkeypatch, "interrupts", "cleanup", "soon") == 2
    assert "days must be an integer" in capsys.readouterr().err

    assert _main(monkeypatch, "interrupts", "cleanup", "7") == 0
    assert "Deleted 0 resolved interrupt(s)" in capsys.readouterr().out


def test_sessions_cleanup_deletes_old_sessions(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    runtime = make_runtime(ScriptedProvider("hi"))
    runtime.registry.register("echo", EchoAgent)
    runtime.manager.run("echo", "hello", "old-session")
    with connect() as conn:
        conn.execute("UPDATE agent_sessions SET updated_at = ?", ("2000-01-01T00:00:00Z",))
        conn.commit()

    assert _main(monkeypatch, "sessions", "cleanup", "echo", "30") == 0

    assert json.loads(capsys.readouterr().out) == {"agent": "echo", "deleted_sessions": 1}


def test_mcp_list_without_servers(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    assert _main(monkeypatch, "mcp", "list") == 0
    assert "No MCP servers configured" in capsys.readouterr().out


def test_worker_once_processes_nothing(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    assert _main(monkeypatch, "worker", "reports", "--once") == 0
    assert "Processed 0 job(s) from queue 'reports'" in capsys.readouterr().out


def test_usage_errors(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    for command in ("interrupts", "sessions"):
        assert _main(monkeypatch, command) == 2
    err = capsys.readouterr().err
    assert "usage: agent-adk interrupts" in err
    assert "usage: agent-adk sessions cleanup" in err
