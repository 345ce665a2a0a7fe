"""
Tests for the data model: status transitions, reasons, serialization.
Run with: pytest tests/test_models.py
"""

import json
from datetime import datetime, timezone

import pytest

from lmdispatch.models import (
    AssistantResponse,
    Conversation,
    ConversationResult,
    Reason,
    Status,
    TERMINAL_STATUSES,
    ToolCall,
    ToolResult,
    ToolResults,
    can_transition,
)

S = Status

LEGAL = {
    (S.STARTED, S.WORKING), (S.STARTED, S.CANCELLED), (S.STARTED, S.ERROR),
    (S.WORKING, S.WORKING), (S.WORKING, S.TASK_COMPLETE),
    (S.WORKING, S.MAX_TURNS_REACHED), (S.WORKING, S.AGENT_FINISHED),
    (S.WORKING, S.CANCELLED), (S.WORKING, S.ERROR),
}


@pytest.mark.parametrize("current", list(Status))
@pytest.mark.parametrize("new", list(Status))
def test_transition_table(current, new):
    """Exactly the listed moves are legal; everything else is not."""
    assert can_transition(current, new) == ((current, new) in LEGAL)


def test_terminal_statuses():
    assert TERMINAL_STATUSES == {
        S.TASK_COMPLETE, S.MAX_TURNS_REACHED, S.AGENT_FINISHED, S.CANCELLED, S.ERROR,
    }
    assert not S.STARTED.terminal
    assert not S.WORKING.terminal


def test_reason_to_status():
    assert Reason.TOOLS_EXECUTING.to_status() is S.WORKING
    assert Reason.AGENT_CONTINUING.to_status() is S.WORKING
    assert Reason.TASK_COMPLETE.to_status() is S.TASK_COMPLETE
    assert Reason.MAX_TURNS_REACHED.to_status() is S.MAX_TURNS_REACHED
    assert Reason.AGENT_FINISHED.to_status() is S.AGENT_FINISHED
    assert Reason.CANCELLED.to_status() is S.CANCELLED
    assert Reason.ERROR.to_status() is S.ERROR


def test_tool_call_wire_shape():
    wire = ToolCall("call_9", "calculator", {"expression": "1+1"}).to_wire()
    assert wire["id"] == "call_9"
    assert wire["type"] == "function"
    assert wire["function"]["name"] == "calculator"
    assert json.loads(wire["function"]["arguments"]) == {"expression": "1+1"}


def test_conversation_to_dict_is_json_safe():
    conv = Conversation(
        id=3, goal="g", model_id="m", max_turns=5,
        started_at=datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc),
        cancellation_handle=object(),
    )
    data = json.loads(json.dumps(conv.to_dict()))
    assert data["id"] == 3
    assert data["status"] == "started"
    assert data["started_at"].startswith("2024-01-15T12:00:00")
    assert "cancellation_handle" not in data


def test_result_counts_assistant_turns():
    c = ToolCall("c1", "calculator", {})
    history = [
        AssistantResponse(1, None, (c,)),
        ToolResults(1, (ToolResult(c, True, "2"),)),
        AssistantResponse(2, "done"),
    ]
    result = ConversationResult(history=history, reason=Reason.TASK_COMPLETE)
    assert result.assistant_turns == 2
