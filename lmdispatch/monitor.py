"""
Monitor — the observer side of dispatch.

Outbound: publish() pushes a full snapshot of every conversation to each
subscriber queue and listener callback:

    {"type": "state-update", "conversations": [ {...}, ... ]}

Inbound: handle_action() takes the user's actions from the board:

    {"type": "cancel-conversation" | "delete-conversation" | "show-results",
     "id": 3}

Also holds the small text projections the CLI and TUI share
(status icons, start times, result summaries).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable

from lmdispatch.models import Conversation, Status

logger = logging.getLogger(__name__)

ACTIONS = ("cancel-conversation", "delete-conversation", "show-results")

_ICONS = {
    Status.STARTED.value: "⏸",
    Status.WORKING.value: "⟳",
    Status.TASK_COMPLETE.value: "✓",
    Status.MAX_TURNS_REACHED.value: "⏱",
    Status.AGENT_FINISHED.value: "ℹ",
    Status.CANCELLED.value: "■",
    Status.ERROR.value: "✗",
}


class Monitor:
    """Pushes store snapshots to observers and relays their actions back."""

    def __init__(self, store, dispatch_log=None, queue_size: int = 16):
        self.store = store
        self.dispatch_log = dispatch_log
        self.queue_size = queue_size
        self._subscribers: list[asyncio.Queue] = []
        self._listeners: list[Callable[[dict], None]] = []

    # ── Outbound ─────────────────────────────────────────────────────────────

    def snapshot(self) -> dict:
        conversations = sorted(self.store.list(), key=lambda c: c.id)
        return {
            "type": "state-update",
            "conversations": [c.to_dict() for c in conversations],
        }

    def subscribe(self) -> asyncio.Queue:
        """New queue that receives every published snapshot."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        try:
            self._subscribers.remove(queue)
        except ValueError:
            pass

    def add_listener(self, callback: Callable[[dict], None]) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[dict], None]) -> None:
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    def publish(self) -> dict:
        """Send the current snapshot to everyone watching. Returns it."""
        snap = self.snapshot()
        for queue in list(self._subscribers):
            if queue.full():
                # A slow reader only needs the latest state
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(snap)
        for callback in list(self._listeners):
            try:
                callback(snap)
            except Exception as e:
                logger.warning("Monitor listener %r failed: %s", callback, e)
        return snap

    # ── Inbound ──────────────────────────────────────────────────────────────

    def cancel_conversation(self, conv_id: int) -> bool:
        """Request cancellation. False if the id is unknown."""
        if self.store.get(conv_id) is None:
            return False
        if self.dispatch_log:
            self.dispatch_log.log(conv_id, "🛑 Cancellation requested", level="warning")
        self.store.mark_cancelled(conv_id)
        self.publish()
        return True

    def delete_conversation(self, conv_id: int) -> bool:
        if self.store.get(conv_id) is None:
            return False
        self.store.delete(conv_id)
        if self.dispatch_log:
            self.dispatch_log.drop_debug(conv_id)
        self.publish()
        return True

    def show_results(self, conv_id: int) -> str | None:
        conv = self.store.get(conv_id)
        return conv.results if conv else None

    def handle_action(self, action: dict):
        """
        Dispatch one observer action. Raises ValueError for a malformed one.
        cancel/delete return whether the id was known; show-results returns
        the results text (None when there is nothing to show).
        """
        kind = action.get("type")
        if kind not in ACTIONS:
            raise ValueError(f"Unknown monitor action: {kind!r}")
        try:
            conv_id = int(action["id"])
        except (KeyError, TypeError, ValueError):
            raise ValueError(f"Monitor action {kind!r} needs an integer 'id'")

        logger.debug("Monitor action %s on %d", kind, conv_id)
        if kind == "cancel-conversation":
            return self.cancel_conversation(conv_id)
        if kind == "delete-conversation":
            return self.delete_conversation(conv_id)
        return self.show_results(conv_id)


# ---------------------------------------------------------------------------
# Text projections
# ---------------------------------------------------------------------------

def status_icon(status) -> str:
    value = status.value if isinstance(status, Status) else status
    return _ICONS.get(value, "?")


def format_time(started_at) -> str:
    """HH:MM in local time, from a datetime or ISO string. '--:--' if missing."""
    if not started_at:
        return "--:--"
    if isinstance(started_at, str):
        try:
            started_at = datetime.fromisoformat(started_at)
        except ValueError:
            return "--:--"
    if started_at.tzinfo is not None:
        started_at = started_at.astimezone()
    return started_at.strftime("%H:%M")


def truncate_summary(text: str | None, max_length: int) -> str | None:
    if text is None:
        return None
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


def render_card(conv) -> str:
    """Plain-text card for one conversation (record or snapshot dict)."""
    if isinstance(conv, Conversation):
        conv = conv.to_dict()

    status = conv.get("status")
    title = conv.get("title") or ""
    lines = [
        f"[{conv['id']}] {status_icon(status)} {title}  {format_time(conv.get('started_at'))}",
    ]

    meta = (
        f"{conv.get('current_turn', 0)}/{conv.get('max_turns', 0)} | "
        f"Tks: {conv.get('total_tokens', 0)} | {conv.get('model_id', '')}"
    )
    if conv.get("caller"):
        meta += f" | Who: {conv['caller']}"
    lines.append(meta)
    lines.append(conv.get("goal", ""))

    if conv.get("error_message"):
        lines.append(f"Error: {conv['error_message']}")
    if conv.get("results"):
        lines.append(f"Results: {truncate_summary(conv['results'], 100)}")
    return "\n".join(lines)
