"""LLM providers for remote distillation."""

from __future__ import annotations

import logging
import os

from ..types import DistillConfig
from .anthropic import AnthropicProvider
from .base import BaseProvider, LLMProviderError
from .gemini import GeminiProvider
from .generic_openai import GenericOpenAIProvider

logger = logging.getLogger(__name__)

DEFAULT_KEY_ENVS = {
    "gemini": "GEMINI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


def build_provider(provider_name: str, provider_config: dict, distill: DistillConfig, transport=None):
    """Build an LLM provider from config. Returns None when no credentials are set."""
    ptype = provider_config.get("type", provider_name)
    common = {
        "timeout": float(provider_config.get("timeout_secs", distill.timeout_secs)),
        "max_retries": int(provider_config.get("max_retries", 2)),
        "transport": transport,
    }
    model = provider_config.get("model", distill.model)

    if ptype == "local":
        return None

    if ptype == "generic_openai":
        return GenericOpenAIProvider(
            base_url=provider_config.get("base_url", "http://127.0.0.1:11434/v1"),
            model=model,
            temperature=distill.temperature,
            api_key=provider_config.get("api_key", "not-needed"),
            **common,
        )

    if ptype in DEFAULT_KEY_ENVS:
        api_key_env = provider_config.get("api_key_env", DEFAULT_KEY_ENVS[ptype])
        api_key = provider_config.get("api_key") or os.environ.get(api_key_env, "")
        if not api_key:
            logger.info(f"No {api_key_env} set; remote distillation disabled")
            return None
        if ptype == "gemini":
            return GeminiProvider(api_key=api_key, model=model, temperature=distill.temperature, **common)
        return AnthropicProvider(api_key=api_key, model=model, temperature=distill.temperature, **common)

    logger.warning(f"Unknown provider type '{ptype}'; remote distillation disabled")
    return None


__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "GeminiProvider",
    "GenericOpenAIProvider",
    "LLMProviderError",
    "build_provider",
]
