"""
Message builder — turns goal + instructions + history into the message list
for the next LM call.

The goal is never stored in history. It is re-injected as the first user
message on every turn, so the model always sees what it is working toward.
History holds only assistant responses and tool results.

Pure functions: same input, same output, no I/O.
"""

from __future__ import annotations

from lmdispatch.models import AssistantResponse, HistoryEntry, ToolResult, ToolResults

COMPLETION_MARKER = "~~~GOAL-ACHIEVED~~~"
CONTINUING_MARKER = "~~~CONTINUING~~~"

SYSTEM_PROMPT = f"""\
You are an autonomous AI agent with the ability to take initiative and drive conversations toward goals.

AGENTIC BEHAVIOR RULES:
1. When given a goal, break it down into steps and execute them
2. Use available tools proactively to gather information or take actions
3. After each tool use, analyze the results and decide your next action
4. If a tool returns unexpected results or fails, ADAPT your approach - don't repeat the same action
5. Continue working toward the goal without asking for help
6. Never stop and ask the human anything

SIGNALLING:
- When the goal is achieved, include the marker {COMPLETION_MARKER}
- When you have more work to do but no tool to call right now, include the marker {CONTINUING_MARKER}
"""

_GOAL_NUDGE = (
    "Please work autonomously toward the `GOAL`. "
    "Take initiative, use tools as needed, and continue "
    "until the goal is achieved."
)

_RESULT_NUDGE = (
    "Analyze this result and continue toward the goal. "
    f"If the goal is achieved, state completion with the marker: {COMPLETION_MARKER}\n\n"
    f"If not, say {CONTINUING_MARKER}, and adapt your approach based on the results."
)


def goal_message(instructions: str, goal: str) -> dict:
    """The leading user message: instructions first, then the delimited goal."""
    return {
        "role": "user",
        "content": f"{instructions}\n\n<GOAL>\n{goal}\n</GOAL>\n\n{_GOAL_NUDGE}",
    }


def tool_result_message(result: ToolResult) -> dict:
    status = "OK" if result.ok else "FAILED"
    return {
        "role": "user",
        "content": (
            f"TOOL RESULT ({result.call.name}, {status}): {result.summary}"
            f"\n\n{_RESULT_NUDGE}"
        ),
        "tool_call_id": result.call.call_id,
    }


def assistant_message(entry: AssistantResponse) -> dict:
    msg = {"role": "assistant", "content": entry.text or ""}
    if entry.tool_calls:
        msg["tool_calls"] = [call.to_wire() for call in entry.tool_calls]
    return msg


def build_messages(history: list[HistoryEntry], instructions: str, goal: str) -> list[dict]:
    """
    Build the ordered message list for the next turn.

    Empty history -> [goal message].
    Otherwise the goal message followed by, per entry in order, one assistant
    message or one user message per individual tool result.
    """
    messages = [goal_message(instructions, goal)]
    for entry in history:
        if isinstance(entry, AssistantResponse):
            messages.append(assistant_message(entry))
        elif isinstance(entry, ToolResults):
            messages.extend(tool_result_message(r) for r in entry.results)
        else:
            raise TypeError(f"Unknown history entry: {type(entry).__name__}")
    return messages


def to_wire(messages: list[dict], system_prompt: str | None = SYSTEM_PROMPT) -> list[dict]:
    """
    Convert built messages to the OpenAI chat shape.
    A tool result answers the assistant's tool_calls, so it travels as a
    role "tool" message carrying the matching tool_call_id.
    """
    wire = [{"role": "system", "content": system_prompt}] if system_prompt else []
    for msg in messages:
        if msg.get("tool_call_id"):
            wire.append({
                "role": "tool",
                "tool_call_id": msg["tool_call_id"],
                "content": msg["content"],
            })
        else:
            wire.append(dict(msg))
    return wire
