"""
Core data model for dispatched conversations.

Closed types only:
  - Status: conversation lifecycle, with an explicit transition table
  - Reason: why a turn continued or stopped
  - AssistantResponse | ToolResults: the two kinds of history entry
  - Outcome: the classifier verdict

Everything here is plain data. Mutation lives in store.py,
decisions live in outcome.py, the loop lives in engine.py.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union


class Status(str, enum.Enum):
    STARTED = "started"
    WORKING = "working"
    TASK_COMPLETE = "task-complete"
    MAX_TURNS_REACHED = "max-turns-reached"
    AGENT_FINISHED = "agent-finished"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self not in (Status.STARTED, Status.WORKING)


TERMINAL_STATUSES = frozenset(s for s in Status if s.terminal)

# Every legal (from -> to) move. Anything missing is illegal.
TRANSITIONS: dict[Status, frozenset[Status]] = {
    Status.STARTED: frozenset({Status.WORKING, Status.CANCELLED, Status.ERROR}),
    Status.WORKING: frozenset({
        Status.WORKING,
        Status.TASK_COMPLETE,
        Status.MAX_TURNS_REACHED,
        Status.AGENT_FINISHED,
        Status.CANCELLED,
        Status.ERROR,
    }),
    Status.TASK_COMPLETE: frozenset(),
    Status.MAX_TURNS_REACHED: frozenset(),
    Status.AGENT_FINISHED: frozenset(),
    Status.CANCELLED: frozenset(),
    Status.ERROR: frozenset(),
}


def can_transition(current: Status, new: Status) -> bool:
    """True if a conversation in `current` may move to `new`."""
    return new in TRANSITIONS[current]


class Reason(str, enum.Enum):
    TOOLS_EXECUTING = "tools-executing"
    AGENT_CONTINUING = "agent-continuing"
    TASK_COMPLETE = "task-complete"
    AGENT_FINISHED = "agent-finished"
    MAX_TURNS_REACHED = "max-turns-reached"
    CANCELLED = "cancelled"
    ERROR = "error"

    def to_status(self) -> Status:
        """Terminal status recorded when a conversation stops for this reason."""
        if self in (Reason.TOOLS_EXECUTING, Reason.AGENT_CONTINUING):
            return Status.WORKING
        return Status(self.value)


@dataclass(frozen=True)
class Outcome:
    """Classifier verdict: keep going or stop, and why."""
    continue_: bool
    reason: Reason


# ---------------------------------------------------------------------------
# Tool calls and history entries
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model."""
    call_id: str
    name: str
    arguments: dict = field(default_factory=dict)

    def to_wire(self) -> dict:
        return {
            "id": self.call_id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": json.dumps(self.arguments, ensure_ascii=False),
            },
        }


@dataclass(frozen=True)
class ToolResult:
    """Normalized output of one tool call. Failures are results too."""
    call: ToolCall
    ok: bool
    summary: str


@dataclass(frozen=True)
class AssistantResponse:
    turn: int
    text: str | None
    tool_calls: tuple[ToolCall, ...] = ()


@dataclass(frozen=True)
class ToolResults:
    turn: int
    results: tuple[ToolResult, ...] = ()


HistoryEntry = Union[AssistantResponse, ToolResults]


# ---------------------------------------------------------------------------
# Conversation record
# ---------------------------------------------------------------------------

@dataclass
class Conversation:
    """One dispatched conversation as held by the store."""
    id: int
    goal: str
    model_id: str
    max_turns: int
    started_at: datetime
    caller: str | None = None
    title: str | None = None
    status: Status = Status.STARTED
    current_turn: int = 0
    total_tokens: int = 0
    cancelled: bool = False
    cancellation_handle: Any = None
    results: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict:
        """JSON-safe snapshot (no handle) for observers."""
        return {
            "id": self.id,
            "goal": self.goal,
            "model_id": self.model_id,
            "caller": self.caller,
            "title": self.title,
            "status": self.status.value,
            "current_turn": self.current_turn,
            "max_turns": self.max_turns,
            "total_tokens": self.total_tokens,
            "started_at": self.started_at.isoformat(),
            "cancelled": self.cancelled,
            "results": self.results,
            "error_message": self.error_message,
        }


@dataclass
class ConversationResult:
    """What the engine hands back to its caller."""
    history: list[HistoryEntry]
    reason: Reason
    final_response: Any = None
    error_message: str | None = None

    @property
    def assistant_turns(self) -> int:
        return sum(1 for e in self.history if isinstance(e, AssistantResponse))
