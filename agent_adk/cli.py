"""CLI entry point for the agent-adk package."""

from __future__ import annotations

import json
import os
import platform
import shutil
import sys
from typing import List

MIN_PYTHON = (3, 10)


def _python_version_str() -> str:
    return ".".join(str(part) for part in sys.version_info[:3])


def _print_help() -> None:
    print("Agent ADK CLI")
    print()
    print("Usage:")
    print("  agent-adk                              Start the HTTP service")
    print("  agent-adk doctor                       Print install/environment diagnostics")
    print("  agent-adk worker [queue] [--once]      Process queued agent runs")
    print("  agent-adk mcp list                     List configured MCP servers")
    print("  agent-adk mcp test [server]            Connect to MCP servers and list their tools")
    print("  agent-adk interrupts expire            Mark overdue pending interrupts expired")
    print("  agent-adk interrupts cleanup <days>    Delete resolved interrupts older than <days>")
    print("  agent-adk sessions cleanup <agent> <days>")
    print("                                         Delete sessions older than <days>; memory is kept")
    print()


def _print_doctor() -> None:
    from .config import get_settings
    from .storage.db import get_db_info

    settings = get_settings()
    db = get_db_info()
    print("Agent ADK Doctor")
    print()
    print(f"Platform: {platform.platform()}")
    print(f"Python:   {_python_version_str()}")
    print(f"Exe:      {sys.executable}")
    print(f"In venv:  {'yes' if sys.prefix != sys.base_prefix else 'no'}")
    print(f"PATH bin: {shutil.which('agent-adk') or 'not found'}")
    print(f"Provider: {settings.provider_name}")
    print(f"Database: {db.dialect} ({'DATABASE_URL' if db.database_url else db.db_path})")
    print(f"Config:   {settings.config_file} ({'found' if os.path.exists(settings.config_file) else 'missing'})")
    print(f"MCP:      {', '.join(sorted(settings.mcp_servers)) or 'no servers configured'}")
    if sys.version_info < MIN_PYTHON:
        print(f"Issue: Python is below required minimum {MIN_PYTHON[0]}.{MIN_PYTHON[1]}.")


def _usage_error(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)
    print("Run 'agent-adk help' for usage.", file=sys.stderr)
    sys.exit(2)


def _int_arg(raw: str, name: str) -> int:
    try:
        return int(raw)
    except ValueError:
        _usage_error(f"{name} must be an integer, got '{raw}'")
        raise  # pragma: no cover - _usage_error exits


def _run_worker(args: List[str]) -> None:
    from .execution.jobs import Worker
    from .runtime import Runtime, set_runtime

    once = "--once" in args
    positional = [a for a in args if not a.startswith("--")]
    runtime = Runtime()
    runtime.init_storage()
    runtime.load_agents()
    set_runtime(runtime)
    worker = Worker(runtime, queue=positional[0] if positional else None)
    try:
        processed = worker.run(once=once)
    except KeyboardInterrupt:
        print("Worker stopped")
        return
    finally:
        runtime.shutdown()
    print(f"Processed {processed} job(s) from queue '{worker.queue}'")


def _run_mcp(args: List[str]) -> None:
    from .config import get_settings
    from .mcp.manager import MCPClientManager

    settings = get_settings()
    manager = MCPClientManager(settings.mcp_servers, cache_ttl=settings.mcp_discovery_cache_ttl)
    action = args[0] if args else "list"
    try:
        if action == "list":
            configs = manager.server_configs()
            if not configs:
                print("No MCP servers configured")
            for name, config in sorted(configs.items()):
                state = "enabled" if manager.is_server_enabled(name) else "disabled"
                print(f"{name}: {config.get('transport', 'stdio')} ({state})")
        elif action == "test":
            results = (
                {args[1]: manager.test_connection(args[1])} if len(args) > 1 else manager.test_all_connections()
            )
            failed = False
            for name, result in results.items():
                if result.get("success"):
                    print(f"{name}: ok ({result.get('tools_count', 0)} tools)")
                else:
                    failed = True
                    print(f"{name}: FAILED {result.get('error')}")
            if failed:
                sys.exit(1)
        else:
            _usage_error(f"unknown mcp command '{action}'")
    finally:
        manager.disconnect_all()


def _run_interrupts(args: List[str]) -> None:
    from .config import get_settings
    from .interrupts import InterruptManager

    settings = get_settings()
    manager = InterruptManager(settings.tool_permissions, default_ttl_hours=settings.interrupt_ttl_hours)
    action = args[0] if args else ""
    if action == "expire":
        print(f"Expired {manager.expire_overdue()} interrupt(s)")
    elif action == "cleanup":
        days = _int_arg(args[1], "days") if len(args) > 1 else 30
        print(f"Deleted {manager.cleanup(days)} resolved interrupt(s)")
    else:
        _usage_error("usage: agent-adk interrupts expire|cleanup <days>")


def _run_sessions(args: List[str]) -> None:
    from .memory_manager import MemoryManager

    if len(args) < 3 or args[0] != "cleanup":
        _usage_error("usage: agent-adk sessions cleanup <agent> <days>")
    deleted = MemoryManager().cleanup_old_sessions(args[1], _int_arg(args[2], "days"))
    print(json.dumps({"agent": args[1], "deleted_sessions": deleted}))


def main() -> None:
    """Run the HTTP service or handle a maintenance subcommand."""
    port = int(os.environ.get("PORT", "4280"))
    host = os.environ.get("HOST", "0.0.0.0")

    if len(sys.argv) > 1:
        subcommand = sys.argv[1].strip().lower()
        rest = sys.argv[2:]
        if subcommand in {"-h", "--help", "help"}:
            _print_help()
            sys.exit(0)
        if subcommand == "doctor":
            _print_doctor()
            sys.exit(0)
        if subcommand == "worker":
            _run_worker(rest)
            sys.exit(0)
        if subcommand == "mcp":
            _run_mcp(rest)
            sys.exit(0)
        if subcommand == "interrupts":
            _run_interrupts(rest)
            sys.exit(0)
        if subcommand == "sessions":
            _run_sessions(rest)
            sys.exit(0)
        _usage_error(f"unknown command '{subcommand}'")

    import uvicorn

    from .config import get_settings

    settings = get_settings()
    print()
    print(f"Agent ADK service starting on http://localhost:{port}")
    print(f"Provider: {settings.provider_name}")
    print(f"Docs:     http://localhost:{port}/docs")
    print()
    uvicorn.run("agent_adk.main:get_app", host=host, port=port, factory=True)


if __name__ == "__main__":
    main()
    sys.exit(0)
