from lmdispatch.tools.executor import execute_tool_call, execute_tool_calls
from lmdispatch.tools.registry import ToolRegistry

__all__ = ["ToolRegistry", "execute_tool_call", "execute_tool_calls"]
