"""
Base backend abstraction.
All LM providers implement this interface so the engine can treat them
uniformly: send messages plus tool descriptors, get text, tool calls and
token usage back.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field

from lmdispatch.models import ToolCall

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """An LM call failed (network, quota, invalid request)."""


@dataclass
class LMResponse:
    """Standardized response from any backend."""
    ok: bool
    text: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    tokens: int = 0
    status_code: int = 200
    backend_name: str = ""
    latency_ms: float = 0.0
    error: str = ""

    def raise_for_error(self) -> "LMResponse":
        if not self.ok:
            raise ProviderError(self.error or f"{self.backend_name} returned HTTP {self.status_code}")
        return self


class BaseBackend(abc.ABC):
    """
    Abstract base for LM backends.
    Each backend knows how to run one chat completion and report health.
    """

    def __init__(self, name: str, url: str, timeout: int = 120):
        self.name = name
        self.url = url.rstrip("/")
        self.timeout = timeout
        self._available_models: list[str] = []

    @abc.abstractmethod
    async def complete(
        self,
        messages: list[dict],
        model: str,
        tools: list[dict] | None = None,
    ) -> LMResponse:
        """
        Run one chat completion.
        Messages are OpenAI-compatible dicts; tools are function descriptors.
        Returns LMResponse with ok=False instead of raising on provider errors.
        """
        ...

    @abc.abstractmethod
    async def health_check(self) -> bool:
        """Check if this backend is reachable and responsive."""
        ...

    @abc.abstractmethod
    async def list_models(self) -> list[str]:
        """Return list of available model names on this backend."""
        ...

    def supports_model(self, model: str) -> bool:
        """Check if this backend can serve the given model."""
        # If we haven't fetched models yet, assume yes (try and fail)
        if not self._available_models:
            return True
        return model in self._available_models

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r}>"
