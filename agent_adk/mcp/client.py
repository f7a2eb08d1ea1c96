"""
JSON-RPC 2.0 client for Model Context Protocol servers.

MCPClient holds the protocol state machine (handshake, id counter, response
unwrapping, tool/resource/prompt calls). Transports subclass it and provide
_open / _close / _exchange / _send_notification.

A client instance is not safe for concurrent use: one request is in flight
at a time and connect/reconnect is not synchronised.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from agent_adk.exceptions import MCPException

logger = logging.getLogger("agent-adk")

PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME = "agent-adk"
CLIENT_VERSION = "0.1.0"


class ClientState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class MCPClient:
    transport = "abstract"

    def __init__(self, server_name: str, timeout: float = 30) -> None:
        self.server_name = server_name
        self.timeout = float(timeout)
        self.state = ClientState.DISCONNECTED
        self.server_info: Dict[str, Any] = {}
        self._request_id = 0

    # -- lifecycle -----------------------------------------------------------

    def is_connected(self) -> bool:
        return self.state == ClientState.CONNECTED

    def connect(self) -> None:
        """Open the transport and complete the initialize handshake."""
        if self.state == ClientState.CONNECTED:
            return
        self.state = ClientState.CONNECTING
        try:
            self._open()
            self.server_info = self._request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {"tools": {}, "resources": {}, "prompts": {}},
                    "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
                },
            )
            self._notify("notifications/initialized")
        except Exception:
            self._close()
            self.state = ClientState.DISCONNECTED
            raise
        self.state = ClientState.CONNECTED
        logger.info("MCP server connected server=%s transport=%s", self.server_name, self.transport)

    def disconnect(self) -> None:
        if self.state == ClientState.DISCONNECTED:
            return
        self._close()
        self.state = ClientState.DISCONNECTED
        logger.info("MCP server disconnected server=%s", self.server_name)

    close = disconnect

    def __enter__(self) -> "MCPClient":
        self.connect()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.disconnect()

    def __del__(self) -> None:
        try:
            self.disconnect()
        except Exception:  # pragma: no cover - interpreter teardown
            pass

    def get_server_info(self) -> Dict[str, Any]:
        return dict(self.server_info)

    # -- protocol ------------------------------------------------------------

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    def _request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"jsonrpc": "2.0", "id": self._next_id(), "method": method}
        if params:
            payload["params"] = params
        logger.debug("MCP request server=%s id=%s method=%s", self.server_name, payload["id"], method)
        response = self._exchange(payload)
        return self._unwrap(response)

    def _notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        payload: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params:
            payload["params"] = params
        self._send_notification(payload)

    @staticmethod
    def _unwrap(response: Dict[str, Any]) -> Dict[str, Any]:
        error = response.get("error")
        if error is not None:
            raise MCPException("MCP Error: " + json.dumps(error), details=error)
        result = response.get("result")
        if result is None:
            return {}
        if not isinstance(result, dict):
            return {"value": result}
        return result

    def _call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self.connect()
        return self._request(method, params)

    # -- public operations ---------------------------------------------------

    def list_tools(self) -> List[Dict[str, Any]]:
        return list(self._call("tools/list").get("tools") or [])

    def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> str:
        """
        Invoke a tool and return its content as text.

        Empty arguments go out as {} because strict servers reject [] / null.
        """
        args = dict(arguments) if arguments else {}
        result = self._call("tools/call", {"name": name, "arguments": args})
        if "content" not in result:
            return json.dumps(result)
        content = result["content"]
        if isinstance(content, str):
            return content
        return json.dumps(content)

    def list_resources(self) -> List[Dict[str, Any]]:
        return list(self._call("resources/list").get("resources") or [])

    def read_resource(self, uri: str) -> str:
        result = self._call("resources/read", {"uri": uri})
        contents = result.get("contents") or []
        if contents and isinstance(contents[0], dict) and "text" in contents[0]:
            return str(contents[0]["text"])
        return json.dumps(result)

    def list_prompts(self) -> List[Dict[str, Any]]:
        return list(self._call("prompts/list").get("prompts") or [])

    def get_prompt(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = arguments
        return list(self._call("prompts/get", params).get("messages") or [])

    # -- transport hooks -----------------------------------------------------

    def _open(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def _close(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def _exchange(self, payload: Dict[str, Any]) -> Dict[str, Any]:  # pragma: no cover - interface only
        raise NotImplementedError

    def _send_notification(self, payload: Dict[str, Any]) -> None:  # pragma: no cover - interface only
        raise NotImplementedError
