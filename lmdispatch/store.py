"""
Conversation store — the registry of every dispatched conversation.

In-memory and thread-safe. Construct one per process and hand it to the
engine, orchestrator and monitor; nothing here is a module global.

The store holds no business logic beyond guarding the record invariants:
  - ids come from a monotonically increasing counter and never change
  - status only moves along models.TRANSITIONS
  - the cancelled flag, once set, stays set
Operations on an unknown id are no-ops that return None.
"""

from __future__ import annotations

import dataclasses
import itertools
import logging
import threading
from datetime import datetime, timezone

from lmdispatch.models import Conversation, Status, can_transition

logger = logging.getLogger(__name__)

_IMMUTABLE_FIELDS = {"id", "started_at"}


class ConversationStore:
    """Process-wide registry of conversation records."""

    def __init__(self):
        self._records: dict[int, Conversation] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def register(
        self,
        goal: str,
        model_id: str,
        max_turns: int,
        caller: str | None = None,
        title: str | None = None,
    ) -> int:
        """Allocate a fresh id and store a new record in status `started`."""
        if max_turns <= 0:
            raise ValueError(f"max_turns must be positive, got {max_turns}")
        with self._lock:
            conv_id = next(self._ids)
            self._records[conv_id] = Conversation(
                id=conv_id,
                goal=goal,
                model_id=model_id,
                max_turns=max_turns,
                caller=caller,
                title=title,
                started_at=datetime.now(timezone.utc),
            )
        logger.debug("Registered conversation %d (model=%s)", conv_id, model_id)
        return conv_id

    def get(self, conv_id: int) -> Conversation | None:
        """Return a snapshot copy of the record, or None."""
        with self._lock:
            conv = self._records.get(conv_id)
            return dataclasses.replace(conv) if conv else None

    def update(self, conv_id: int, **fields) -> None:
        """
        Merge `fields` into the record. Untouched fields are kept.
        Illegal status moves are dropped with a warning; the rest still merges.
        """
        with self._lock:
            conv = self._records.get(conv_id)
            if conv is None:
                return
            for key, value in fields.items():
                if key in _IMMUTABLE_FIELDS:
                    logger.warning("Ignoring update of immutable field '%s' on %d", key, conv_id)
                    continue
                if not hasattr(conv, key):
                    raise AttributeError(f"Conversation has no field '{key}'")
                if key == "status":
                    value = Status(value)
                    if value == conv.status == Status.CANCELLED:
                        continue
                    if not can_transition(conv.status, value):
                        logger.warning(
                            "Conversation %d: illegal status move %s -> %s ignored",
                            conv_id, conv.status.value, value.value,
                        )
                        continue
                if key == "cancelled" and conv.cancelled and not value:
                    continue
                if key == "current_turn" and value > conv.max_turns:
                    raise ValueError(
                        f"current_turn {value} exceeds max_turns {conv.max_turns}"
                    )
                setattr(conv, key, value)

    def mark_cancelled(self, conv_id: int) -> None:
        """
        Set the cancelled flag and move to `cancelled`. Idempotent.
        A record that already reached another terminal status keeps it.
        Fires the record's cancellation handle, if any.
        """
        with self._lock:
            conv = self._records.get(conv_id)
            if conv is None:
                return
            conv.cancelled = True
            if can_transition(conv.status, Status.CANCELLED):
                conv.status = Status.CANCELLED
            handle = conv.cancellation_handle

        if handle is not None:
            handle.cancel()

    def delete(self, conv_id: int) -> None:
        with self._lock:
            self._records.pop(conv_id, None)

    def list(self) -> list[Conversation]:
        """All records as snapshot copies, in no particular order."""
        with self._lock:
            return [dataclasses.replace(c) for c in self._records.values()]

    @property
    def count(self) -> int:
        return len(self._records)
