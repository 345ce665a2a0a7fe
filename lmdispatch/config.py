"""
Config loader for lmdispatch.
Reads config.yaml once and caches it. All other modules import from here.

Built-in defaults sit underneath the file, so library callers (tests,
scripts) get a usable config even when no config.yaml exists.
Set LMDISPATCH_CONFIG to point at a different file.
"""

import copy
import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

DEFAULTS: dict = {
    "backend": {
        "type": "ollama",
        "url": "http://localhost:11434",
        "api_key": "",
        "default_model": "llama3.2",
        "timeout": 120,
    },
    "dispatch": {
        "max_turns": 10,
        "title": "Untitled",
        "caller": None,
    },
    "tools": {
        "enabled": True,
        "allow_unsafe": False,
        "timeout_seconds": 30,
    },
    "instructions": {
        "dirs": [],
        "selector_model": "",
        "selector_max_turns": 10,
    },
    "server": {
        "host": "127.0.0.1",
        "port": 8787,
    },
    "logging": {
        "level": "INFO",
        "file": "",
    },
    "dispatch_log": {
        "enabled": True,
        "path": "./data/dispatch.jsonl",
        "debug": False,
    },
}

_config: dict | None = None


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def _merge(base: dict, override: dict) -> dict:
    """Deep-merge override into a copy of base. Override wins on leaves."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _default_path() -> Path:
    env_path = os.environ.get("LMDISPATCH_CONFIG")
    return Path(env_path) if env_path else _CONFIG_PATH


def load_config(path: Path | None = None) -> dict:
    """Load and cache config from YAML file, layered over DEFAULTS."""
    global _config
    if _config is not None and path is None:
        return _config

    config_path = Path(path) if path else _default_path()
    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    elif path is not None:
        raise FileNotFoundError(f"Config not found: {config_path}")

    _config = _merge(DEFAULTS, _walk_and_resolve(raw))
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reset_config() -> None:
    """Drop the cached config so the next get_config() re-reads the file."""
    global _config
    _config = None
