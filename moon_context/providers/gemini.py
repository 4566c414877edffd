"""GeminiProvider: calls the Generative Language API generateContent endpoint via httpx."""

from __future__ import annotations

import os

from ..types import LLMProviderError
from .base import BaseProvider

API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"


class GeminiProvider(BaseProvider):
    """LLM provider using Gemini ``generateContent`` directly via httpx."""

    def __init__(
        self,
        api_key: str | None = None,
        api_key_env: str = "GEMINI_API_KEY",
        model: str = "gemini-2.5-flash-lite",
        temperature: float = 0.2,
        base_url: str = API_BASE,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key or os.environ.get(api_key_env, "")
        self.model = model
        self.temperature = temperature
        self.base_url = base_url.rstrip("/")
        if not self.api_key:
            raise LLMProviderError(
                f"No API key found. Set {api_key_env} env var or pass api_key.",
                provider="gemini",
            )

    def _provider_name(self) -> str:
        return "gemini"

    def _get_url(self) -> str:
        return f"{self.base_url}/{self.model}:generateContent?key={self.api_key}"

    def _get_headers(self) -> dict:
        return {"content-type": "application/json"}

    def _build_payload(self, system: str, user: str, max_tokens: int) -> dict:
        return {
            "systemInstruction": {"parts": [{"text": system}]},
            "contents": [{"role": "user", "parts": [{"text": user}]}],
            "generationConfig": {
                "maxOutputTokens": max_tokens,
                "temperature": self.temperature,
                "responseMimeType": "application/json",
            },
        }

    def _extract_usage(self, data: dict) -> dict:
        return data.get("usageMetadata", {})

    def _extract_text(self, data: dict) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            raise LLMProviderError("Response missing candidates", provider="gemini")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        texts = [p.get("text", "") for p in parts if isinstance(p, dict)]
        text = "".join(texts)
        if not text:
            raise LLMProviderError("Response missing text content", provider="gemini")
        return text
