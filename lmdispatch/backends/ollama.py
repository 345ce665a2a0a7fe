"""
Ollama backend — local inference through Ollama's OpenAI-compatible API.
Model discovery uses the native /api/tags endpoint, which also lists
models that /v1/models omits on older Ollama releases.
"""

from __future__ import annotations

import logging

import httpx

from lmdispatch.backends.openai_compat import OpenAICompatibleBackend

logger = logging.getLogger(__name__)


class OllamaBackend(OpenAICompatibleBackend):
    """Backend for local Ollama instances."""

    def __init__(self, name: str = "ollama", url: str = "http://localhost:11434", timeout: int = 120):
        super().__init__(name, url, timeout)

    async def health_check(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(f"{self.url}/api/tags")
                return resp.status_code == 200
        except Exception:
            return False

    async def list_models(self) -> list[str]:
        try:
            async with httpx.AsyncClient(timeout=10) as client:
                resp = await client.get(f"{self.url}/api/tags")
                resp.raise_for_status()
                names = [m.get("name", "") for m in resp.json().get("models", [])]
        except Exception as e:
            logger.warning("Failed to list Ollama models from '%s': %s", self.name, e)
            return []

        # "llama3.2" should match "llama3.2:latest"
        models = set()
        for name in filter(None, names):
            models.add(name)
            if name.endswith(":latest"):
                models.add(name[: -len(":latest")])
        self._available_models = sorted(models)
        return self._available_models
