"""
Outcome classifier — should the conversation keep going, and why.

Decision order, first match wins:
  1. model requested tools        -> continue tools-executing
  2. explicit continuing marker   -> continue agent-continuing
  3. completion marker / keywords -> stop     task-complete
  4. anything else                -> stop     agent-finished

The turn budget only overrides verdicts that would continue: on the last
permitted turn, tools-executing and agent-continuing become
max-turns-reached (pending tool calls are not run). A stopping verdict on
the last turn keeps its own reason.

The explicit completion marker beats the continuing marker when both appear.
A missing response text never matches any keyword rule.
"""

from __future__ import annotations

import re

from lmdispatch.messages import COMPLETION_MARKER, CONTINUING_MARKER
from lmdispatch.models import Outcome, Reason

_COMPLETION_RE = re.compile(
    r"\b(completed|accomplished|successfully finished"
    r"|task\b.*\b(complete|done|finished)"
    r"|goal\b.*\b(achieved|reached|accomplished)"
    r"|mission\b.*\b(complete|success))",
    re.IGNORECASE,
)

# "not completed", "hasn't finished", "isn't done yet"
_NEGATED_RE = re.compile(
    r"(\bnot|n't)\b.{0,10}(complete|done|finished|achieved|reached|accomplished)",
    re.IGNORECASE,
)


def has_completion_marker(text: str | None) -> bool:
    return bool(text) and COMPLETION_MARKER in text


def has_continuing_marker(text: str | None) -> bool:
    return bool(text) and CONTINUING_MARKER in text


def indicates_completion(text: str | None) -> bool:
    """Explicit marker, or a completion keyword that is not negated."""
    if not text:
        return False
    if has_completion_marker(text):
        return True
    return bool(_COMPLETION_RE.search(text)) and not _NEGATED_RE.search(text)


def determine_outcome(
    text: str | None,
    tool_calls,
    current_turn: int,
    max_turns: int,
) -> Outcome:
    out_of_turns = current_turn >= max_turns

    if tool_calls:
        if out_of_turns:
            return Outcome(False, Reason.MAX_TURNS_REACHED)
        return Outcome(True, Reason.TOOLS_EXECUTING)

    if has_continuing_marker(text) and not has_completion_marker(text):
        if out_of_turns:
            return Outcome(False, Reason.MAX_TURNS_REACHED)
        return Outcome(True, Reason.AGENT_CONTINUING)

    if indicates_completion(text):
        return Outcome(False, Reason.TASK_COMPLETE)

    return Outcome(False, Reason.AGENT_FINISHED)
