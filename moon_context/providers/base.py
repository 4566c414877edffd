"""LLM Provider base class with shared retry logic."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Callable

import httpx

from ..types import LLMProviderError

MAX_RETRIES = 3
RETRY_BACKOFF = [1.0, 2.0, 4.0]


class BaseProvider(ABC):
    """Abstract base for LLM providers. Subclasses override hook methods;
    the retry loop in ``complete()`` is shared.

    ``timeout`` bounds each HTTP attempt. ``transport`` is handed to
    ``httpx.Client`` (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        timeout: float = 60.0,
        max_retries: int = MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.transport = transport
        self._sleep = sleep
        self.last_usage: dict = {}

    # -- hook methods subclasses must implement --

    @abstractmethod
    def _provider_name(self) -> str: ...

    @abstractmethod
    def _get_url(self) -> str: ...

    @abstractmethod
    def _get_headers(self) -> dict: ...

    @abstractmethod
    def _build_payload(self, system: str, user: str, max_tokens: int) -> dict: ...

    @abstractmethod
    def _extract_text(self, data: dict) -> str: ...

    def _extract_usage(self, data: dict) -> dict:
        return data.get("usage", {}) if isinstance(data, dict) else {}

    # -- shared retry logic --

    def _backoff(self, attempt: int) -> None:
        if attempt < self.max_retries - 1:
            self._sleep(RETRY_BACKOFF[min(attempt, len(RETRY_BACKOFF) - 1)])

    def complete(self, system: str, user: str, max_tokens: int) -> str:
        """Send a completion request with automatic retry on transient errors."""
        url = self._get_url()
        headers = self._get_headers()
        payload = self._build_payload(system, user, max_tokens)

        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                    response = client.post(url, headers=headers, json=payload)

                if response.status_code == 200:
                    try:
                        data = response.json()
                    except ValueError as e:
                        raise LLMProviderError(
                            f"Response is not JSON: {e}",
                            provider=self._provider_name(),
                            status_code=200,
                        ) from e
                    self.last_usage = self._extract_usage(data)
                    return self._extract_text(data)

                if response.status_code == 429 or response.status_code >= 500:
                    last_error = LLMProviderError(
                        f"HTTP {response.status_code}: {response.text[:500]}",
                        provider=self._provider_name(),
                        status_code=response.status_code,
                    )
                    self._backoff(attempt)
                    continue

                raise LLMProviderError(
                    f"HTTP {response.status_code}: {response.text[:500]}",
                    provider=self._provider_name(),
                    status_code=response.status_code,
                )

            except httpx.HTTPError as e:
                last_error = LLMProviderError(
                    f"HTTP error: {e}",
                    provider=self._provider_name(),
                )
                self._backoff(attempt)
                continue

        raise last_error or LLMProviderError(
            "Max retries exceeded", provider=self._provider_name()
        )


# Re-exports
from ..types import LLMProvider  # noqa: E402, F401

__all__ = ["BaseProvider", "LLMProvider", "LLMProviderError"]
