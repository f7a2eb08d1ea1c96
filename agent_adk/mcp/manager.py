"""
MCPClientManager: per-server client lifecycle, discovery caching and
per-request configuration overrides.

Static server configs come from the `mcp_servers` section of the YAML config
file. Overrides (for example a tenant token in `headers` or `args`) are
deep-merged on top without touching the static mapping. Overrides passed to a
single call only apply to that call and get their own client, so one tenant's
settings never leak into another's requests.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from agent_adk.exceptions import MCPException
from agent_adk.mcp.client import MCPClient
from agent_adk.mcp.http import MCPHttpClient
from agent_adk.mcp.stdio import MCPStdioClient

logger = logging.getLogger("agent-adk")

DEFAULT_CACHE_TTL = 300
MAX_SCOPED_CLIENTS = 32

ClientFactory = Callable[[str, Dict[str, Any]], MCPClient]


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge mappings; non-mapping override values (lists included) replace."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _expand(value: Any) -> Any:
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, list):
        return [_expand(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand(v) for k, v in value.items()}
    return value


def build_client(server_name: str, config: Dict[str, Any]) -> MCPClient:
    """Create an (unconnected) client for one server config. `${VAR}` references are expanded."""
    transport = str(config.get("transport") or "stdio").lower()
    timeout = float(config.get("timeout") or 30)
    if transport == "stdio":
        if not config.get("command"):
            raise MCPException(f"MCP server '{server_name}' has no command configured")
        return MCPStdioClient(
            server_name,
            command=_expand(config["command"]),
            args=_expand(list(config.get("args") or [])),
            env=_expand(dict(config.get("env") or {})),
            timeout=timeout,
            use_pty=bool(config.get("use_pty", False)),
            cwd=config.get("cwd"),
        )
    if transport == "http":
        if not config.get("url"):
            raise MCPException(f"MCP server '{server_name}' has no URL configured for HTTP transport")
        return MCPHttpClient(
            server_name,
            url=_expand(config["url"]),
            api_key=_expand(config.get("api_key")) or None,
            headers=_expand(dict(config.get("headers") or {})),
            timeout=timeout,
        )
    raise MCPException(f"MCP server '{server_name}' has unsupported transport '{transport}'")


class MCPClientManager:
    def __init__(
        self,
        server_configs: Optional[Dict[str, Dict[str, Any]]] = None,
        cache_ttl: int = DEFAULT_CACHE_TTL,
        client_factory: Optional[ClientFactory] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._static_configs: Dict[str, Dict[str, Any]] = copy.deepcopy(server_configs or {})
        self._overrides: Dict[str, Dict[str, Any]] = {}
        self._merged: Optional[Dict[str, Dict[str, Any]]] = None
        self._clients: Dict[str, MCPClient] = {}
        self._scoped: Dict[Tuple[str, str], MCPClient] = {}
        self._lock = threading.RLock()
        self._cache: Dict[Tuple[str, str], Tuple[float, List[Dict[str, Any]]]] = {}
        self.cache_ttl = cache_ttl
        self._client_factory = client_factory or build_client
        self._clock = clock

    # -- configuration -------------------------------------------------------

    def server_configs(self) -> Dict[str, Dict[str, Any]]:
        """Effective configs (static + overrides). Cached until overrides change."""
        if self._merged is None:
            self._merged = {
                name: deep_merge(config, self._overrides.get(name, {}))
                for name, config in self._static_configs.items()
            }
        return self._merged

    def get_server_config(self, server_name: str) -> Optional[Dict[str, Any]]:
        config = self.server_configs().get(server_name)
        return copy.deepcopy(config) if config is not None else None

    def set_context_overrides(self, overrides: Dict[str, Dict[str, Any]]) -> None:
        """
        Deep-merge per-server overrides for subsequent calls.

        Unknown servers are ignored. Clients of servers whose effective config
        changed are dropped so the next call reconnects with the new settings.
        """
        before = self.server_configs()
        for server_name, override in (overrides or {}).items():
            if server_name not in self._static_configs:
                logger.warning("Ignoring MCP override for unknown server %s", server_name)
                continue
            if not isinstance(override, dict):
                continue
            self._overrides[server_name] = deep_merge(self._overrides.get(server_name, {}), override)
        self._merged = None
        after = self.server_configs()
        for server_name in list(self._clients):
            if before.get(server_name) != after.get(server_name):
                self._drop_client(server_name)
                self.clear_cache(server_name)

    def clear_context_overrides(self) -> None:
        changed = list(self._overrides)
        self._overrides = {}
        self._merged = None
        for server_name in changed:
            self._drop_client(server_name)
            self.clear_cache(server_name)

    def is_server_enabled(self, server_name: str) -> bool:
        config = self.server_configs().get(server_name)
        return bool(config) and bool(config.get("enabled", True))

    def get_enabled_servers(self) -> List[str]:
        return [name for name, config in self.server_configs().items() if config.get("enabled", True)]

    # -- clients -------------------------------------------------------------

    def effective_config(
        self, server_name: str, overrides: Optional[Dict[str, Dict[str, Any]]] = None
    ) -> Optional[Dict[str, Any]]:
        """Config for one call: static + manager overrides + the call's own overrides."""
        config = self.server_configs().get(server_name)
        if config is None:
            return None
        override = (overrides or {}).get(server_name)
        if isinstance(override, dict) and override:
            return deep_merge(config, override)
        return copy.deepcopy(config)

    def create_client(self, server_name: str, config: Optional[Dict[str, Any]] = None) -> MCPClient:
        if config is None:
            config = self.server_configs().get(server_name)
        if config is None:
            raise MCPException(f"MCP server '{server_name}' is not configured")
        if not config.get("enabled", True):
            raise MCPException(f"MCP server '{server_name}' is disabled")
        return self._client_factory(server_name, copy.deepcopy(config))

    def get_client(self, server_name: str, overrides: Optional[Dict[str, Dict[str, Any]]] = None) -> MCPClient:
        """
        Shared client for the server, or a dedicated one when `overrides`
        change its effective config.
        """
        config = self.effective_config(server_name, overrides)
        with self._lock:
            if config is None or config == self.server_configs().get(server_name):
                client = self._clients.get(server_name)
                if client is None:
                    client = self.create_client(server_name)
                    self._clients[server_name] = client
                return client
            key = (server_name, json.dumps(config, sort_keys=True, default=str))
            client = self._scoped.get(key)
            if client is None:
                client = self.create_client(server_name, config)
                self._scoped[key] = client
                while len(self._scoped) > MAX_SCOPED_CLIENTS:
                    oldest = next(iter(self._scoped))
                    self._disconnect(oldest[0], self._scoped.pop(oldest))
            return client

    def _disconnect(self, server_name: str, client: MCPClient) -> None:
        try:
            client.disconnect()
        except Exception as exc:
            logger.warning("MCP disconnect failed server=%s: %s", server_name, exc)

    def _discard(self, server_name: str, client: MCPClient) -> None:
        with self._lock:
            if self._clients.get(server_name) is client:
                del self._clients[server_name]
            for key in [k for k, c in self._scoped.items() if c is client]:
                del self._scoped[key]
        self._disconnect(server_name, client)

    def _drop_client(self, server_name: str) -> None:
        with self._lock:
            clients = [self._clients.pop(server_name)] if server_name in self._clients else []
            for key in [k for k in self._scoped if k[0] == server_name]:
                clients.append(self._scoped.pop(key))
        for client in clients:
            self._disconnect(server_name, client)

    def disconnect_all(self) -> None:
        with self._lock:
            names = set(self._clients) | {k[0] for k in self._scoped}
        for server_name in names:
            self._drop_client(server_name)

    def __del__(self) -> None:
        try:
            self.disconnect_all()
        except Exception:  # pragma: no cover - interpreter teardown
            pass

    # -- discovery -----------------------------------------------------------

    def _cached(self, kind: str, server_name: str, loader: Callable[[MCPClient], List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
        if not self.is_server_enabled(server_name):
            return []
        key = (kind, server_name)
        now = self._clock()
        hit = self._cache.get(key)
        if hit is not None and hit[0] > now:
            return list(hit[1])
        try:
            items = loader(self.get_client(server_name))
        except MCPException as exc:
            logger.warning("Failed to discover %s from MCP server %s: %s", kind, server_name, exc)
            self._drop_client(server_name)
            return []
        self._cache[key] = (now + self.cache_ttl, list(items))
        logger.info("Discovered %d %s from MCP server %s", len(items), kind, server_name)
        return list(items)

    def discover_tools(self, server_name: str) -> List[Dict[str, Any]]:
        return self._cached("tools", server_name, lambda c: c.list_tools())

    def discover_resources(self, server_name: str) -> List[Dict[str, Any]]:
        return self._cached("resources", server_name, lambda c: c.list_resources())

    def discover_prompts(self, server_name: str) -> List[Dict[str, Any]]:
        return self._cached("prompts", server_name, lambda c: c.list_prompts())

    def discover_all_tools(self) -> List[Dict[str, Any]]:
        tools: List[Dict[str, Any]] = []
        for server_name in self.get_enabled_servers():
            for tool in self.discover_tools(server_name):
                stamped = dict(tool)
                stamped["_mcp_server"] = server_name
                tools.append(stamped)
        return tools

    def clear_cache(self, server_name: Optional[str] = None) -> None:
        if server_name is None:
            self._cache.clear()
            return
        for kind in ("tools", "resources", "prompts"):
            self._cache.pop((kind, server_name), None)

    # -- calls ---------------------------------------------------------------

    def call_tool(
        self,
        server_name: str,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        overrides: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> str:
        if not self.is_server_enabled(server_name):
            raise MCPException(f"MCP server '{server_name}' is not enabled")
        client = self.get_client(server_name, overrides)
        logger.info("Calling MCP tool %s on server %s", tool_name, server_name)
        try:
            result = client.call_tool(tool_name, arguments or {})
        except MCPException as exc:
            logger.error("MCP tool call failed tool=%s server=%s: %s", tool_name, server_name, exc)
            self._discard(server_name, client)
            raise
        return result

    def read_resource(self, server_name: str, uri: str) -> str:
        if not self.is_server_enabled(server_name):
            raise MCPException(f"MCP server '{server_name}' is not enabled")
        client = self.get_client(server_name)
        try:
            return client.read_resource(uri)
        except MCPException as exc:
            logger.error("Failed to read MCP resource server=%s uri=%s: %s", server_name, uri, exc)
            self._discard(server_name, client)
            raise

    def get_prompt(self, server_name: str, name: str, arguments: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        if not self.is_server_enabled(server_name):
            raise MCPException(f"MCP server '{server_name}' is not enabled")
        client = self.get_client(server_name)
        try:
            return client.get_prompt(name, arguments)
        except MCPException as exc:
            logger.error("Failed to get MCP prompt server=%s name=%s: %s", server_name, name, exc)
            self._discard(server_name, client)
            raise

    def test_connection(self, server_name: str) -> Dict[str, Any]:
        """Live round-trip. Never raises."""
        if not self.is_server_enabled(server_name):
            return {"success": False, "server": server_name, "error": f"Server '{server_name}' is not enabled"}
        try:
            tools = self.get_client(server_name).list_tools()
        except Exception as exc:
            logger.warning("MCP connection test failed server=%s: %s", server_name, exc)
            self._drop_client(server_name)
            return {"success": False, "server": server_name, "error": str(exc)}
        return {
            "success": True,
            "server": server_name,
            "tools_count": len(tools),
            "tools": [t.get("name") for t in tools],
        }

    def test_all_connections(self) -> Dict[str, Dict[str, Any]]:
        return {name: self.test_connection(name) for name in self.get_enabled_servers()}
