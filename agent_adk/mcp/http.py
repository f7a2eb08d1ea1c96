"""
HTTP transport: one JSON-RPC body per POST to the configured URL.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from agent_adk.exceptions import MCPException, MCPTimeoutException
from agent_adk.mcp.client import MCPClient

logger = logging.getLogger("agent-adk")


class MCPHttpClient(MCPClient):
    transport = "http"

    def __init__(
        self,
        server_name: str,
        url: str,
        api_key: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        super().__init__(server_name, timeout)
        self.url = url
        self.api_key = api_key
        self.headers = dict(headers or {})
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    def request_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        headers.update({k: str(v) for k, v in self.headers.items()})
        return headers

    def _open(self) -> None:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout, transport=self._transport)

    def _close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        if self._client is None:
            self._open()
        assert self._client is not None
        return self._client.post(self.url, json=payload, headers=self.request_headers())

    def _exchange(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self._post(payload)
        except httpx.TimeoutException as exc:
            raise MCPTimeoutException(f"Timeout waiting for MCP response: {exc}") from exc
        except httpx.HTTPError as exc:
            raise MCPException(f"Failed to connect to MCP HTTP server: {exc}") from exc

        if not 200 <= resp.status_code < 300:
            raise MCPException(
                f"HTTP request failed with status {resp.status_code}: {resp.text}",
                details={"status_code": resp.status_code},
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise MCPException("Invalid JSON-RPC response format") from exc
        if not isinstance(data, dict):
            raise MCPException("Invalid JSON-RPC response format")
        return data

    def _send_notification(self, payload: Dict[str, Any]) -> None:
        # Servers may answer notifications with 202/204 or nothing useful; failures are not fatal.
        try:
            self._post(payload)
        except httpx.HTTPError as exc:
            logger.warning("MCP notification failed server=%s method=%s: %s", self.server_name, payload.get("method"), exc)
