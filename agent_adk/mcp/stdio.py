"""
STDIO transport: newline-delimited JSON-RPC over a subprocess's stdin/stdout.

Reader threads push decoded stdout lines onto a queue; responses are polled
from that queue every 100ms until `timeout * 10` polls worth of time has
passed, however much unrelated output the server prints meanwhile.
"""

from __future__ import annotations

import json
import logging
import os
import queue
import subprocess
import threading
import time
from typing import Any, Dict, List, Optional

from agent_adk.exceptions import MCPException, MCPTimeoutException
from agent_adk.mcp.client import MCPClient

logger = logging.getLogger("agent-adk")

DEFAULT_PATH = "/usr/local/bin:/usr/bin:/bin:/usr/sbin:/sbin"
POLL_INTERVAL = 0.1
STARTUP_WAIT = 0.5


def _pump_pipe(stream: Any, lines: "queue.Queue[str]") -> None:
    for raw in iter(stream.readline, b""):
        lines.put(raw.decode("utf-8", errors="replace").rstrip("\r\n"))


def _pump_fd(fd: int, lines: "queue.Queue[str]") -> None:
    buffer = b""
    while True:
        try:
            chunk = os.read(fd, 4096)
        except OSError:
            # EIO once the child side of the pty is gone.
            break
        if not chunk:
            break
        buffer += chunk
        while b"\n" in buffer:
            raw, buffer = buffer.split(b"\n", 1)
            lines.put(raw.decode("utf-8", errors="replace").rstrip("\r"))


def _drain_stderr(stream: Any, server_name: str) -> None:
    for raw in iter(stream.readline, b""):
        logger.debug("MCP stderr server=%s: %s", server_name, raw.decode("utf-8", errors="replace").rstrip())


class MCPStdioClient(MCPClient):
    transport = "stdio"

    def __init__(
        self,
        server_name: str,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: float = 30,
        use_pty: bool = False,
        cwd: Optional[str] = None,
    ) -> None:
        super().__init__(server_name, timeout)
        self.command = command
        self.args = [str(a) for a in (args or [])]
        self.env = dict(env or {})
        self.use_pty = use_pty
        self.cwd = cwd
        self._process: Optional[subprocess.Popen] = None
        self._pty_master: Optional[int] = None
        self._lines: "queue.Queue[str]" = queue.Queue()

    def build_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update({k: str(v) for k, v in self.env.items()})
        if not env.get("PATH"):
            env["PATH"] = DEFAULT_PATH
        return env

    def _open(self) -> None:
        cmd = [self.command, *self.args]
        self._lines = queue.Queue()
        try:
            if self.use_pty:
                self._spawn_pty(cmd)
            else:
                self._spawn_pipes(cmd)
        except OSError as exc:
            raise MCPException(f"Failed to start MCP server '{self.server_name}': {exc}") from exc

        time.sleep(STARTUP_WAIT)
        code = self._process.poll() if self._process is not None else None
        if code is not None and code != 0:
            raise MCPException(f"MCP server '{self.server_name}' exited during startup with code {code}")

    def _spawn_pipes(self, cmd: List[str]) -> None:
        self._process = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=self.build_env(),
            cwd=self.cwd,
        )
        threading.Thread(target=_pump_pipe, args=(self._process.stdout, self._lines), daemon=True).start()
        threading.Thread(target=_drain_stderr, args=(self._process.stderr, self.server_name), daemon=True).start()

    def _spawn_pty(self, cmd: List[str]) -> None:
        import pty
        import tty

        master, slave = pty.openpty()
        # Raw mode: no echo of our own requests, no CRLF translation.
        tty.setraw(slave)
        try:
            self._process = subprocess.Popen(
                cmd,
                stdin=slave,
                stdout=slave,
                stderr=subprocess.PIPE,
                env=self.build_env(),
                cwd=self.cwd,
                close_fds=True,
            )
        except OSError:
            os.close(master)
            raise
        finally:
            os.close(slave)
        self._pty_master = master
        threading.Thread(target=_pump_fd, args=(master, self._lines), daemon=True).start()
        threading.Thread(target=_drain_stderr, args=(self._process.stderr, self.server_name), daemon=True).start()

    def _close(self) -> None:
        process = self._process
        self._process = None
        if process is not None:
            if process.stdin is not None:
                try:
                    process.stdin.close()
                except OSError:
                    pass
            if process.poll() is None:
                process.terminate()
                try:
                    process.wait(timeout=2)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait()
        if self._pty_master is not None:
            try:
                os.close(self._pty_master)
            except OSError:
                pass
            self._pty_master = None

    def _write(self, payload: Dict[str, Any]) -> None:
        if self._process is None:
            raise MCPException(f"MCP server '{self.server_name}' is not running")
        data = (json.dumps(payload) + "\n").encode("utf-8")
        try:
            if self._pty_master is not None:
                os.write(self._pty_master, data)
            else:
                assert self._process.stdin is not None
                self._process.stdin.write(data)
                self._process.stdin.flush()
        except (BrokenPipeError, OSError) as exc:
            raise MCPException(f"Failed to write to MCP server '{self.server_name}': {exc}") from exc

    def _exchange(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._write(payload)
        return self._read_response(payload["id"])

    def _send_notification(self, payload: Dict[str, Any]) -> None:
        try:
            self._write(payload)
        except MCPException as exc:
            logger.warning("MCP notification failed server=%s method=%s: %s", self.server_name, payload.get("method"), exc)

    def _read_response(self, request_id: int) -> Dict[str, Any]:
        deadline = time.monotonic() + max(1, int(self.timeout * 10)) * POLL_INTERVAL
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                line = self._lines.get(timeout=min(POLL_INTERVAL, remaining))
            except queue.Empty:
                if self._process is not None and self._process.poll() is not None and self._lines.empty():
                    raise MCPException(
                        f"MCP server '{self.server_name}' exited with code {self._process.returncode}"
                    )
                continue
            line = line.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("MCP non-JSON output server=%s: %s", self.server_name, line[:200])
                continue
            if not isinstance(message, dict):
                continue
            # Server-initiated notifications and stale replies are not ours.
            if message.get("id") != request_id:
                logger.debug("MCP skipped message server=%s id=%s", self.server_name, message.get("id"))
                continue
            return message
        raise MCPTimeoutException("Timeout waiting for MCP response", details={"server": self.server_name, "id": request_id})
