from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import httpx

from .config import get_settings

# 1x1 transparent PNG, returned by the stub image generator.
_STUB_PNG_B64 = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)


@dataclass
class ProviderResult:
    """Normalized result from a JSON-mode completion."""

    parsed_json: Dict[str, Any]
    raw_text: str


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CompletionResult:
    """Normalized chat completion: assistant text and/or requested tool calls."""

    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    model: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)


class ProviderError(RuntimeError):
    """Raised when the upstream LLM API fails or answers with something unusable."""


class BaseProvider:
    """
    Abstract provider interface.

    Calls are synchronous; FastAPI runs sync routes in its thread pool.
    """

    name = "base"

    def complete(
        self,
        messages: List[Dict[str, Any]],
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        top_p: Optional[float] = None,
    ) -> CompletionResult:  # pragma: no cover - interface only
        raise NotImplementedError

    def complete_json(self, prompt: str, *, schema: Mapping[str, Any]) -> ProviderResult:  # pragma: no cover - interface only
        raise NotImplementedError

    def generate_image(self, prompt: str, *, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:  # pragma: no cover - interface only
        raise NotImplementedError


class StubProvider(BaseProvider):
    """
    Deterministic provider used when no API key is configured and in tests.

    Chat completions echo the last user message; JSON completions fabricate
    data conforming to the given schema.
    """

    name = "stub"

    def complete(
        self,
        messages: List[Dict[str, Any]],
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        top_p: Optional[float] = None,
    ) -> CompletionResult:
        last_user = ""
        for message in reversed(messages):
            if message.get("role") == "user":
                last_user = str(message.get("content") or "")
                break
        return CompletionResult(text=f"stub response: {last_user}", model=model or "stub")

    def complete_json(self, prompt: str, *, schema: Mapping[str, Any]) -> ProviderResult:
        parsed = _generate_from_schema(schema)
        return ProviderResult(parsed_json=parsed, raw_text=json.dumps(parsed))

    def generate_image(self, prompt: str, *, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return {"b64_json": _STUB_PNG_B64, "revised_prompt": prompt, "model": "stub"}


def _generate_from_schema(schema: Mapping[str, Any]) -> Any:
    """Very small deterministic JSON generator for Draft-07-style schemas."""
    schema_type = schema.get("type")
    if isinstance(schema_type, list):
        schema_type = next((t for t in schema_type if t != "null"), None)

    if "enum" in schema and schema["enum"]:
        return schema["enum"][0]

    if schema_type == "object":
        props = schema.get("properties", {}) or {}
        result: Dict[str, Any] = {}
        for name, sub in props.items():
            result[name] = _generate_from_schema(sub)
        for name in schema.get("required", []) or []:
            if name not in result:
                result[name] = None
        return result

    if schema_type == "array":
        items_schema = schema.get("items", {}) or {}
        return [_generate_from_schema(items_schema)]

    if schema_type == "string":
        title = (schema.get("title") or "").lower()
        fmt = schema.get("format")
        if "summary" in title:
            return "stub summary"
        if fmt == "date":
            return "2099-01-01"
        return "stub"

    if schema_type == "number":
        minimum = schema.get("minimum")
        maximum = schema.get("maximum")
        if minimum == 0 and maximum == 1:
            return 0.5
        return 1.0

    if schema_type == "integer":
        return 1

    if schema_type == "boolean":
        return False

    if "properties" in schema:
        return _generate_from_schema({"type": "object", **schema})

    return None


def _tool_payload(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("parameters") or {"type": "object", "properties": {}},
            },
        }
        for t in tools
    ]


def _message_payload(message: Dict[str, Any]) -> Dict[str, Any]:
    role = message.get("role", "user")
    if role == "tool":
        # Tool results are replayed as plain context; ids are not persisted in history.
        return {"role": "user", "content": f"Tool '{message.get('tool_name')}' returned: {message.get('content')}"}
    return {"role": role, "content": message.get("content") or ""}


def _parse_tool_calls(raw_calls: List[Dict[str, Any]]) -> List[ToolCall]:
    calls: List[ToolCall] = []
    for raw in raw_calls or []:
        fn = raw.get("function") or {}
        args_raw = fn.get("arguments") or "{}"
        try:
            args = json.loads(args_raw) if isinstance(args_raw, str) else dict(args_raw)
        except json.JSONDecodeError:
            args = {}
        calls.append(ToolCall(id=str(raw.get("id") or ""), name=str(fn.get("name") or ""), arguments=args))
    return calls


class OpenAICompatibleProvider(BaseProvider):
    """Chat Completions API client shared by OpenAI and OpenRouter."""

    name = "openai"
    chat_url = "https://api.openai.com/v1/chat/completions"
    images_url = "https://api.openai.com/v1/images/generations"
    default_model = "gpt-4o-mini"
    timeout = 60

    def __init__(self, api_key: str, model: Optional[str] = None, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.api_key = api_key
        self.model = model or self.default_model
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _post(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.post(url, headers=self._headers(), json=body)
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(f"{self.name} returned {exc.response.status_code}: {exc.response.text}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderError(f"{self.name} request failed: {exc}") from exc

    def complete(
        self,
        messages: List[Dict[str, Any]],
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        top_p: Optional[float] = None,
    ) -> CompletionResult:
        body: Dict[str, Any] = {
            "model": model or self.model,
            "messages": [_message_payload(m) for m in messages],
        }
        if tools:
            body["tools"] = _tool_payload(tools)
        if temperature is not None:
            body["temperature"] = temperature
        if max_tokens is not None:
            body["max_tokens"] = max_tokens
        if top_p is not None:
            body["top_p"] = top_p

        data = self._post(self.chat_url, body)
        try:
            message = data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(f"{self.name} response missing choices") from exc
        return CompletionResult(
            text=message.get("content") or "",
            tool_calls=_parse_tool_calls(message.get("tool_calls") or []),
            model=data.get("model"),
            usage=data.get("usage") or {},
        )

    def complete_json(self, prompt: str, *, schema: Mapping[str, Any]) -> ProviderResult:
        body = {
            "model": self.model,
            "messages": [
                {
                    "role": "system",
                    "content": "You are a JSON-only API. Respond with strictly valid JSON that matches the provided JSON Schema.",
                },
                {"role": "user", "content": prompt},
            ],
            "response_format": {"type": "json_schema", "json_schema": {"name": "agent_output", "schema": schema}},
        }
        data = self._post(self.chat_url, body)
        raw_text = data["choices"][0]["message"]["content"]
        try:
            parsed = json.loads(raw_text)
        except json.JSONDecodeError:
            parsed = {}
        return ProviderResult(parsed_json=parsed, raw_text=raw_text)

    def generate_image(self, prompt: str, *, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        opts = dict(options or {})
        body: Dict[str, Any] = {
            "model": opts.pop("model", None) or "dall-e-3",
            "prompt": prompt,
            "n": 1,
            "size": opts.pop("size", "1024x1024"),
        }
        for key in ("quality", "style", "response_format"):
            if opts.get(key):
                body[key] = opts[key]
        data = self._post(self.images_url, body)
        try:
            image = data["data"][0]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(f"{self.name} image response missing data") from exc
        return {
            "url": image.get("url"),
            "b64_json": image.get("b64_json"),
            "revised_prompt": image.get("revised_prompt"),
            "model": body["model"],
        }


class OpenAIProvider(OpenAICompatibleProvider):
    name = "openai"


OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"


class OpenRouterProvider(OpenAICompatibleProvider):
    """
    OpenRouter provider: one API key, many models (OpenAI, Claude, Gemini, etc.).
    """

    name = "openrouter"
    chat_url = OPENROUTER_API_URL
    default_model = "openai/gpt-4o-mini"

    def generate_image(self, prompt: str, *, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        raise ProviderError("openrouter does not support image generation")


def build_provider() -> BaseProvider:
    """Factory that chooses the concrete provider implementation."""
    settings = get_settings()
    if settings.provider_name == "openrouter":
        api_key = _get_env("OPENROUTER_API_KEY")
        if not api_key:
            return StubProvider()
        model = settings.default_model or _get_env("OPENROUTER_MODEL")
        return OpenRouterProvider(api_key=api_key, model=model)
    if settings.provider_name == "openai":
        api_key = _get_env("OPENAI_API_KEY")
        if not api_key:
            return StubProvider()
        return OpenAIProvider(api_key=api_key, model=settings.default_model)

    return StubProvider()


def _get_env(name: str) -> Optional[str]:
    return os.getenv(name) or None
