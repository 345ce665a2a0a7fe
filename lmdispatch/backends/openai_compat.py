"""
Generic OpenAI-compatible backend with function calling.

Works with any service that implements /v1/chat/completions and /v1/models:
OpenAI, OpenRouter, vLLM, llama.cpp server, LocalAI, Ollama.
"""

from __future__ import annotations

import json
import logging
import time
from uuid import uuid4

import httpx

from lmdispatch.backends.base import BaseBackend, LMResponse
from lmdispatch.models import ToolCall

logger = logging.getLogger(__name__)


def _parse_arguments(raw) -> dict:
    """Function arguments arrive as a JSON string; some servers send a dict."""
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {"_raw": str(raw)}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def parse_completion(data: dict) -> tuple[str | None, list[ToolCall], int]:
    """Extract (text, tool calls, total tokens) from a chat completion body."""
    choices = data.get("choices", [])
    message = choices[0].get("message", {}) if choices else {}

    calls = []
    for raw in message.get("tool_calls") or []:
        fn = raw.get("function", {})
        calls.append(ToolCall(
            call_id=raw.get("id") or f"call_{uuid4().hex[:12]}",
            name=fn.get("name", ""),
            arguments=_parse_arguments(fn.get("arguments")),
        ))

    usage = data.get("usage") or {}
    tokens = usage.get("total_tokens")
    if tokens is None:
        tokens = usage.get("prompt_tokens", 0) + usage.get("completion_tokens", 0)
    return message.get("content"), calls, int(tokens or 0)


class OpenAICompatibleBackend(BaseBackend):
    """Backend for any endpoint that speaks the OpenAI chat API."""

    def __init__(self, name: str, url: str, timeout: int = 120, api_key: str = ""):
        super().__init__(name, url, timeout)
        self.api_key = api_key

    def _headers(self) -> dict:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def complete(
        self,
        messages: list[dict],
        model: str,
        tools: list[dict] | None = None,
    ) -> LMResponse:
        body = {"model": model, "messages": messages, "stream": False}
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"

        t0 = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.url}/v1/chat/completions",
                    json=body,
                    headers=self._headers(),
                )
                latency = (time.monotonic() - t0) * 1000

                if resp.status_code >= 400:
                    return LMResponse(
                        ok=False,
                        status_code=resp.status_code,
                        backend_name=self.name,
                        latency_ms=latency,
                        error=f"HTTP {resp.status_code}: {resp.text[:200]}",
                    )

                text, calls, tokens = parse_completion(resp.json())
                return LMResponse(
                    ok=True,
                    text=text,
                    tool_calls=calls,
                    tokens=tokens,
                    status_code=resp.status_code,
                    backend_name=self.name,
                    latency_ms=latency,
                )
        except httpx.TimeoutException:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("Backend '%s' timed out after %.0fms", self.name, latency)
            return LMResponse(
                ok=False,
                backend_name=self.name,
                latency_ms=latency,
                error=f"Timeout after {self.timeout}s",
            )
        except Exception as e:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("Backend '%s' failed: %s", self.name, e)
            return LMResponse(
                ok=False,
                backend_name=self.name,
                latency_ms=latency,
                error=str(e),
            )

    async def health_check(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(f"{self.url}/v1/models", headers=self._headers())
                return resp.status_code == 200
        except Exception:
            return False

    async def list_models(self) -> list[str]:
        """Fetch available models from endpoint."""
        try:
            async with httpx.AsyncClient(timeout=10) as client:
                resp = await client.get(f"{self.url}/v1/models", headers=self._headers())
                resp.raise_for_status()
                models = [
                    m.get("id", m.get("name", ""))
                    for m in resp.json().get("data", [])
                ]
                self._available_models = [m for m in models if m]
                return self._available_models
        except Exception as e:
            logger.warning("Failed to list models from '%s': %s", self.name, e)
            return []
