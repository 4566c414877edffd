"""Tests for the remote distillation providers."""

import json

import httpx
import pytest

from moon_context.providers import (
    AnthropicProvider,
    GeminiProvider,
    GenericOpenAIProvider,
    build_provider,
)
from moon_context.types import DistillConfig, LLMProviderError


def _gemini_body(text):
    return {
        "candidates": [{"content": {"parts": [{"text": text}]}}],
        "usageMetadata": {"promptTokenCount": 12, "candidatesTokenCount": 4},
    }


class _Recorder:
    """httpx handler that replays queued (status, body) pairs."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)


def _gemini(handler, **kwargs):
    return GeminiProvider(
        api_key="k-123", transport=httpx.MockTransport(handler), sleep=lambda s: None, **kwargs,
    )


class TestGemini:
    def test_request_shape_and_text(self):
        handler = _Recorder((200, _gemini_body('{"summary": "- ok"}')))
        provider = _gemini(handler, model="gemini-2.5-flash-lite")
        assert provider.complete("sys", "user text", 256) == '{"summary": "- ok"}'

        request = handler.requests[0]
        assert request.url.path.endswith("/models/gemini-2.5-flash-lite:generateContent")
        assert request.url.params["key"] == "k-123"
        payload = json.loads(request.content)
        assert payload["systemInstruction"]["parts"][0]["text"] == "sys"
        assert payload["contents"][0]["parts"][0]["text"] == "user text"
        assert payload["generationConfig"]["maxOutputTokens"] == 256
        assert provider.last_usage["promptTokenCount"] == 12

    def test_retries_transient_errors(self):
        sleeps = []
        handler = _Recorder((500, "overloaded"), (200, _gemini_body("done")))
        provider = GeminiProvider(
            api_key="k", transport=httpx.MockTransport(handler), sleep=sleeps.append, max_retries=3,
        )
        assert provider.complete("s", "u", 10) == "done"
        assert len(handler.requests) == 2
        assert sleeps == [1.0]

    def test_gives_up_after_max_retries(self):
        handler = _Recorder((429, "slow down"))
        provider = _gemini(handler, max_retries=2)
        with pytest.raises(LLMProviderError) as exc:
            provider.complete("s", "u", 10)
        assert exc.value.status_code == 429
        assert len(handler.requests) == 2

    def test_client_error_not_retried(self):
        handler = _Recorder((400, "bad request"))
        with pytest.raises(LLMProviderError) as exc:
            _gemini(handler).complete("s", "u", 10)
        assert exc.value.status_code == 400
        assert len(handler.requests) == 1

    def test_missing_candidates(self):
        handler = _Recorder((200, {"promptFeedback": {"blockReason": "SAFETY"}}))
        with pytest.raises(LLMProviderError, match="candidates"):
            _gemini(handler).complete("s", "u", 10)

    def test_requires_key(self, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        with pytest.raises(LLMProviderError):
            GeminiProvider()


def test_anthropic_extracts_text_blocks():
    def handler(request):
        assert request.headers["x-api-key"] == "ak"
        body = json.loads(request.content)
        assert body["system"] == "sys"
        return httpx.Response(200, json={"content": [
            {"type": "thinking", "thinking": "..."},
            {"type": "text", "text": "line one"},
            {"type": "text", "text": "line two"},
        ]})

    provider = AnthropicProvider(api_key="ak", transport=httpx.MockTransport(handler))
    assert provider.complete("sys", "u", 10) == "line one\nline two"


def test_openai_compatible_endpoint():
    def handler(request):
        assert str(request.url) == "http://localhost:8000/v1/chat/completions"
        body = json.loads(request.content)
        assert [m["role"] for m in body["messages"]] == ["system", "user"]
        return httpx.Response(200, json={"choices": [{"message": {"content": "hi"}}]})

    provider = GenericOpenAIProvider(base_url="http://localhost:8000/v1/", transport=httpx.MockTransport(handler))
    assert provider.complete("s", "u", 10) == "hi"


class TestBuildProvider:
    def test_local_disables_remote(self):
        assert build_provider("local", {"type": "local"}, DistillConfig()) is None

    def test_missing_key_disables_remote(self, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        assert build_provider("gemini", {}, DistillConfig()) is None

    def test_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "env-key")
        provider = build_provider("gemini", {"timeout_secs": 5}, DistillConfig())
        assert isinstance(provider, GeminiProvider)
        assert provider.api_key == "env-key"
        assert provider.timeout == 5.0

    def test_custom_key_env(self, monkeypatch):
        monkeypatch.setenv("MY_CLAUDE_KEY", "ck")
        provider = build_provider(
            "summarizer", {"type": "anthropic", "api_key_env": "MY_CLAUDE_KEY", "model": "claude-haiku-4-5"},
            DistillConfig(),
        )
        assert isinstance(provider, AnthropicProvider)
        assert provider.model == "claude-haiku-4-5"

    def test_openai_compatible(self):
        provider = build_provider("ollama", {"type": "generic_openai", "model": "qwen3"}, DistillConfig())
        assert isinstance(provider, GenericOpenAIProvider)
        assert provider.model == "qwen3"

    def test_unknown_type(self):
        assert build_provider("x", {"type": "carrier-pigeon"}, DistillConfig()) is None
