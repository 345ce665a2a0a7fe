"""
Tool registry: the set of tools a conversation may be offered.
Reads config.yaml to decide which built-in tools are enabled; callers can
register more at runtime with register().

A tool is any object with:
    name: str
    description: str
    parameters: dict     (JSON schema for the arguments object)
    unsafe: bool         (writes files, runs commands, ...)
    run(arguments: dict) -> str    (may be async)
"""

import logging

from lmdispatch.config import get_config
from lmdispatch.tools.calculator import CalculatorTool
from lmdispatch.tools.datetime_tool import DateTimeTool

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Manages available tools based on configuration."""

    def __init__(self, cfg: dict | None = None, load_builtin: bool = True):
        self.tools: dict[str, object] = {}
        cfg = cfg if cfg is not None else get_config()
        tools_cfg = cfg.get("tools", {})
        self.allow_unsafe = tools_cfg.get("allow_unsafe", False)

        if not load_builtin:
            return
        if not tools_cfg.get("enabled", True):
            logger.info("Tools disabled globally")
            return

        if tools_cfg.get("calculator", {}).get("enabled", True):
            self.register(CalculatorTool())
        if tools_cfg.get("current_time", {}).get("enabled", True):
            self.register(DateTimeTool())

        logger.info("Tool registry loaded: %s", list(self.tools.keys()))

    def register(self, tool) -> None:
        if not getattr(tool, "name", ""):
            raise ValueError(f"Tool {tool!r} has no name")
        if tool.name in self.tools:
            logger.warning("Tool '%s' re-registered, replacing previous", tool.name)
        self.tools[tool.name] = tool

    def get(self, name: str):
        """Get a tool by name, or None if not registered."""
        return self.tools.get(name)

    def list_tools(self) -> list[str]:
        """Return names of all registered tools."""
        return list(self.tools.keys())

    def enabled(self, names: list[str] | None, allow_unsafe: bool | None = None) -> list:
        """
        Tools picked by name for one conversation.
        Unsafe tools are filtered out unless explicitly allowed.
        Unknown names are logged and skipped.
        """
        if allow_unsafe is None:
            allow_unsafe = self.allow_unsafe
        picked = []
        for name in names or []:
            tool = self.tools.get(name)
            if tool is None:
                logger.warning("Requested tool '%s' is not registered", name)
                continue
            if getattr(tool, "unsafe", False) and not allow_unsafe:
                logger.info("Tool '%s' is unsafe and unsafe tools are not allowed", name)
                continue
            picked.append(tool)
        return picked

    def descriptors(self, names: list[str] | None, allow_unsafe: bool | None = None) -> list[dict]:
        """OpenAI-style function descriptors for the enabled tools."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": getattr(tool, "description", f"Run the {tool.name} tool"),
                    "parameters": getattr(tool, "parameters", {"type": "object", "properties": {}}),
                },
            }
            for tool in self.enabled(names, allow_unsafe)
        ]
