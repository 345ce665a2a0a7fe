"""
LM provider backends for lmdispatch.
make_backend() builds the configured one.
"""
from lmdispatch.backends.base import BaseBackend, LMResponse, ProviderError
from lmdispatch.backends.ollama import OllamaBackend
from lmdispatch.backends.openai_compat import OpenAICompatibleBackend


def make_backend(cfg: dict) -> BaseBackend:
    """Build the backend described by the `backend` section of config."""
    b_cfg = cfg.get("backend", {})
    kind = b_cfg.get("type", "ollama")
    url = b_cfg.get("url", "http://localhost:11434")
    timeout = b_cfg.get("timeout", 120)

    if kind == "ollama":
        return OllamaBackend(name="ollama", url=url, timeout=timeout)
    if kind in ("openai", "openai_compat", "openrouter"):
        return OpenAICompatibleBackend(
            name=kind, url=url, timeout=timeout, api_key=b_cfg.get("api_key", ""),
        )
    raise ValueError(f"Unknown backend type: {kind!r}")


__all__ = [
    "BaseBackend",
    "LMResponse",
    "OllamaBackend",
    "OpenAICompatibleBackend",
    "ProviderError",
    "make_backend",
]
