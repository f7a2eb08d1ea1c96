import json

import httpx
import pytest

from agent_adk.providers import (
    OpenAIProvider,
    OpenRouterProvider,
    ProviderError,
    StubProvider,
    build_provider,
)


def _transport(captured, payload, status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(status, json=payload)

    return httpx.MockTransport(handler)


def test_openai_complete_parses_text_and_tool_calls():
    captured = []
    payload = {
        "model": "gpt-4o-mini",
        "choices": [
            {
                "message": {
                    "content": None,
                    "tool_calls": [
                        {"id": "c1", "function": {"name": "word_count", "arguments": '{"text": "a b"}'}},
                        {"id": "c2", "function": {"name": "broken", "arguments": "{not json"}},
                    ],
                }
            }
        ],
        "usage": {"total_tokens": 12},
    }
    provider = OpenAIProvider("sk-test", transport=_transport(captured, payload))

    result = provider.complete(
        [
            {"role": "system", "content": "be nice"},
            {"role": "tool", "tool_name": "word_count", "content": "2"},
        ],
        tools=[{"name": "word_count", "description": "count", "parameters": {"type": "object"}}],
        temperature=0.2,
    )

    assert result.text == ""
    assert [(c.name, c.arguments) for c in result.tool_calls] == [("word_count", {"text": "a b"}), ("broken", {})]
    assert result.usage == {"total_tokens": 12}

    request = captured[0]
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["model"] == "gpt-4o-mini"
    assert body["temperature"] == 0.2
    assert "max_tokens" not in body
    assert body["messages"][1] == {"role": "user", "content": "Tool 'word_count' returned: 2"}
    assert body["tools"][0]["function"]["name"] == "word_count"


def test_openai_http_errors_become_provider_errors():
    provider = OpenAIProvider("sk-test", transport=_transport([], {"error": "bad"}, status=500))
    with pytest.raises(ProviderError) as excinfo:
        provider.complete([{"role": "user", "content": "hi"}])
    assert "returned 500" in str(excinfo.value)


def test_openai_response_without_choices_is_an_error():
    provider = OpenAIProvider("sk-test", transport=_transport([], {"choices": []}))
    with pytest.raises(ProviderError):
        provider.complete([{"role": "user", "content": "hi"}])


def test_openai_image_generation():
    captured = []
    payload = {"data": [{"url": "https://img.example/1.png", "revised_prompt": "a red fox"}]}
    provider = OpenAIProvider("sk-test", transport=_transport(captured, payload))

    image = provider.generate_image("fox", options={"size": "512x512", "quality": "hd"})

    assert image == {"url": "https://img.example/1.png", "b64_json": None, "revised_prompt": "a red fox", "model": "dall-e-3"}
    body = json.loads(captured[0].content)
    assert body["size"] == "512x512"
    assert body["quality"] == "hd"
    assert "style" not in body


def test_openrouter_uses_its_own_endpoint_and_refuses_images():
    captured = []
    payload = {"choices": [{"message": {"content": "hi"}}]}
    provider = OpenRouterProvider("or-key", transport=_transport(captured, payload))

    assert provider.complete([{"role": "user", "content": "hi"}]).text == "hi"
    assert str(captured[0].url) == "https://openrouter.ai/api/v1/chat/completions"
    assert json.loads(captured[0].content)["model"] == "openai/gpt-4o-mini"
    with pytest.raises(ProviderError):
        provider.generate_image("fox")


def test_build_provider_falls_back_to_stub_without_keys(monkeypatch):
    monkeypatch.setenv("PROVIDER", "openai")
    assert isinstance(build_provider(), StubProvider)

    monkeypatch.setenv("OPENAI_API_KEY", "sk-live")
    monkeypatch.setenv("DEFAULT_MODEL", "gpt-4o")
    provider = build_provider()
    assert isinstance(provider, OpenAIProvider)
    assert provider.model == "gpt-4o"


def test_stub_complete_json_follows_the_schema():
    result = StubProvider().complete_json(
        "anything",
        schema={
            "type": "object",
            "properties": {"score": {"type": "number", "minimum": 0, "maximum": 1}, "tags": {"type": "array", "items": {"type": "string"}}},
            "required": ["score", "missing"],
        },
    )
    assert result.parsed_json == {"score": 0.5, "tags": ["stub"], "missing": None}
