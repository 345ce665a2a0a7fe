"""
Tool execution adapter.

Runs the tool calls a model requested in one turn and normalizes each into
a ToolResult. A failing, unknown, or timed-out tool still yields a result
(ok=False) so the model can see the failure and adapt on its next turn;
nothing here raises for a tool's sake.

Calls in the same batch run concurrently; results come back in request order.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Callable

from lmdispatch.models import ToolCall, ToolResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
MAX_SUMMARY_CHARS = 20_000


def _clip(text: str) -> str:
    if len(text) <= MAX_SUMMARY_CHARS:
        return text
    return text[:MAX_SUMMARY_CHARS] + f"\n[... {len(text) - MAX_SUMMARY_CHARS} chars truncated]"


async def _invoke(tool, arguments: dict):
    if inspect.iscoroutinefunction(tool.run):
        return await tool.run(arguments)
    return await asyncio.to_thread(tool.run, arguments)


async def execute_tool_call(
    tools: dict,
    call: ToolCall,
    timeout: float = DEFAULT_TIMEOUT,
    log: Callable[[str], None] | None = None,
) -> ToolResult:
    """Run one call against `tools` (name -> tool). Never raises for tool failures."""
    log = log or (lambda _msg: None)
    tool = tools.get(call.name)
    if tool is None:
        available = ", ".join(sorted(tools)) or "none"
        log(f"Unknown tool requested: {call.name}")
        return ToolResult(call, False, f"Error: unknown tool '{call.name}'. Available: {available}")

    log(f"Invoking tool: {call.name} {call.arguments!r}")
    t0 = time.monotonic()
    try:
        output = await asyncio.wait_for(_invoke(tool, call.arguments), timeout=timeout)
    except asyncio.TimeoutError:
        log(f"Tool {call.name} timed out after {timeout:g}s")
        return ToolResult(
            call, False,
            f"Tool execution timed out after {timeout:g} seconds. Try a simpler approach.",
        )
    except Exception as e:
        logger.warning("Tool '%s' failed: %s", call.name, e)
        log(f"Tool {call.name} failed: {e}")
        return ToolResult(call, False, f"Error running {call.name}: {e}")

    elapsed_ms = (time.monotonic() - t0) * 1000
    summary = _clip("" if output is None else str(output))
    log(f"Tool {call.name} finished in {elapsed_ms:.0f}ms ({len(summary)} chars)")
    return ToolResult(call, True, summary)


async def execute_tool_calls(
    tools: dict,
    calls: list[ToolCall] | tuple[ToolCall, ...],
    timeout: float = DEFAULT_TIMEOUT,
    log: Callable[[str], None] | None = None,
) -> list[ToolResult]:
    """Run a turn's tool calls concurrently; results keep the request order."""
    if not calls:
        return []
    return list(await asyncio.gather(
        *(execute_tool_call(tools, call, timeout, log) for call in calls)
    ))
