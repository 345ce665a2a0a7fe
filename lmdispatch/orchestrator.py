"""
Orchestrator — the entry point for dispatching a conversation.

Resolves which instructions to use, registers the conversation and hands
it to the engine:

    orch = Orchestrator(store, engine, selector=selector)
    result = await orch.run("Count the .py files", instructions=["/x/python.instructions.md"])

    conv_id = orch.dispatch("Summarize the repo")   # fire and forget, returns the id

Instructions may be:
  - a string           used as-is
  - a list of paths    files concatenated with "# From: <name>" separators
  - AUTO_SELECT        the instruction selector picks files for the goal
  - None               a short default nudge

Anything else is rejected with InstructionsError before a conversation is
registered.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from lmdispatch.config import get_config
from lmdispatch.instructions import (
    EditorContext,
    assemble_instructions,
    concatenate_instruction_files,
)
from lmdispatch.models import ConversationResult, Reason, Status

logger = logging.getLogger(__name__)

AUTO_SELECT = "instructions-selector"
DEFAULT_INSTRUCTIONS = "Go, go, go!"

_SUMMARY = {
    Status.TASK_COMPLETE: "COMPLETED successfully!",
    Status.MAX_TURNS_REACHED: "reached max turns",
    Status.CANCELLED: "was CANCELLED",
    Status.AGENT_FINISHED: "finished",
    Status.ERROR: "encountered an ERROR",
}


class InstructionsError(ValueError):
    """Instructions or context paths have an unsupported shape."""


def _is_path_list(value) -> bool:
    return isinstance(value, (list, tuple)) and all(isinstance(p, str) for p in value)


def validate_request(instructions, context_file_paths) -> None:
    if not (
        instructions is None
        or isinstance(instructions, str)
        or _is_path_list(instructions)
    ):
        raise InstructionsError(
            "instructions must be a string, a list of file paths, "
            f"or {AUTO_SELECT!r}; got {type(instructions).__name__}"
        )
    if context_file_paths is not None and not _is_path_list(context_file_paths):
        raise InstructionsError(
            "context_file_paths must be a list of file paths; "
            f"got {type(context_file_paths).__name__}"
        )


class Orchestrator:
    """Validates, registers and runs conversations on one engine."""

    def __init__(self, store, engine, selector=None, dispatch_log=None, cfg: dict | None = None):
        self.store = store
        self.engine = engine
        self.selector = selector
        self.dispatch_log = dispatch_log
        cfg = cfg if cfg is not None else get_config()
        d_cfg = cfg.get("dispatch", {})
        self.default_model = cfg.get("backend", {}).get("default_model", "")
        self.default_max_turns = d_cfg.get("max_turns", 10)
        self.default_title = d_cfg.get("title", "Untitled")
        self.default_caller = d_cfg.get("caller")
        self._tasks: set[asyncio.Task] = set()

    def _log(self, conv_id: int, message: str, level: str = "info") -> None:
        if self.dispatch_log:
            self.dispatch_log.log(conv_id, message, level=level)

    def _publish(self) -> None:
        monitor = getattr(self.engine, "monitor", None)
        if monitor:
            monitor.publish()

    # ── Public API ───────────────────────────────────────────────────────────

    def start(
        self,
        goal: str,
        instructions=None,
        model_id: str | None = None,
        max_turns: int | None = None,
        caller: str | None = None,
        title: str | None = None,
        context_file_paths: list[str] | None = None,
    ) -> int:
        """Validate the request and register the conversation. Returns its id."""
        validate_request(instructions, context_file_paths)
        if instructions == AUTO_SELECT and self.selector is None:
            raise InstructionsError("instruction selection requested but no selector is configured")
        if not goal or not goal.strip():
            raise InstructionsError("goal must be a non-empty string")

        return self.store.register(
            goal=goal,
            model_id=model_id or self.default_model,
            max_turns=max_turns or self.default_max_turns,
            caller=caller if caller is not None else self.default_caller,
            title=title or self.default_title,
        )

    async def run(
        self,
        goal: str,
        instructions=None,
        model_id: str | None = None,
        max_turns: int | None = None,
        tool_names: list[str] | None = None,
        allow_unsafe: bool | None = None,
        caller: str | None = None,
        title: str | None = None,
        editor_context: EditorContext | None = None,
        context_file_paths: list[str] | None = None,
        progress: Callable[[str], None] | None = None,
    ) -> ConversationResult:
        """Run one conversation to completion."""
        conv_id = self.start(
            goal, instructions, model_id, max_turns, caller, title, context_file_paths,
        )
        return await self.execute(
            conv_id, goal, instructions, tool_names, allow_unsafe,
            editor_context, context_file_paths, progress,
        )

    def dispatch(
        self,
        goal: str,
        instructions=None,
        model_id: str | None = None,
        max_turns: int | None = None,
        tool_names: list[str] | None = None,
        allow_unsafe: bool | None = None,
        caller: str | None = None,
        title: str | None = None,
        editor_context: EditorContext | None = None,
        context_file_paths: list[str] | None = None,
    ) -> int:
        """
        Register the conversation and schedule it on the running loop.
        Returns the id straight away; watch progress through the monitor.
        """
        conv_id = self.start(
            goal, instructions, model_id, max_turns, caller, title, context_file_paths,
        )
        task = asyncio.create_task(
            self.execute(
                conv_id, goal, instructions, tool_names, allow_unsafe,
                editor_context, context_file_paths,
            ),
            name=f"conversation-{conv_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return conv_id

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Dispatched %s failed: %s", task.get_name(), exc)

    @property
    def active(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        """Cancel every dispatched conversation still running."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Internals ────────────────────────────────────────────────────────────

    async def _resolve_instructions(self, conv_id, goal, instructions, context_file_paths, caller):
        if instructions is None:
            return DEFAULT_INSTRUCTIONS
        if instructions != AUTO_SELECT:
            return instructions if isinstance(instructions, str) else list(instructions)

        self._log(conv_id, "🔍 Using instruction selector for this conversation")
        context = concatenate_instruction_files(context_file_paths or []) or None
        try:
            selected = await self.selector.select(goal, context, caller=caller)
        except Exception as e:
            logger.warning("Instruction selection failed for %d: %s", conv_id, e)
            self._log(conv_id, f"Instruction selection failed: {e}", level="warning")
            return []
        if selected:
            self._log(conv_id, f"📝 Selected {len(selected)} instruction file(s)")
        return selected

    async def execute(
        self,
        conv_id: int,
        goal: str,
        instructions=None,
        tool_names: list[str] | None = None,
        allow_unsafe: bool | None = None,
        editor_context: EditorContext | None = None,
        context_file_paths: list[str] | None = None,
        progress: Callable[[str], None] | None = None,
    ) -> ConversationResult:
        """Resolve instructions for a registered conversation and run it."""
        conv = self.store.get(conv_id)
        caller = (conv.title or conv.caller) if conv else None
        try:
            resolved = await self._resolve_instructions(
                conv_id, goal, instructions, context_file_paths, caller or "Instruction Selector",
            )
            text = assemble_instructions(resolved, editor_context, context_file_paths)
        except asyncio.CancelledError:
            # Cancelled before the engine took over: the record is still `started`
            self._log(conv_id, "🛑 Conversation cancelled before its first turn", level="warning")
            self.store.mark_cancelled(conv_id)
            self._publish()
            raise
        except Exception as e:
            logger.exception("Resolving instructions for %d failed", conv_id)
            error_message = f"{type(e).__name__}: {e}"
            self._log(conv_id, f"❌ Error: {error_message}", level="error")
            self.store.update(conv_id, status=Status.ERROR, error_message=error_message)
            self._publish()
            return ConversationResult(history=[], reason=Reason.ERROR, error_message=error_message)

        result = await self.engine.run(
            conv_id, goal, text,
            tool_names=tool_names,
            allow_unsafe=allow_unsafe,
            progress=progress,
        )

        if result.error_message:
            self._log(conv_id, f"❌ Model error: {result.error_message}", level="error")
            return result

        conv = self.store.get(conv_id)
        status = conv.status if conv else result.reason.to_status()
        summary = (
            f"🎯 Agentic task {_SUMMARY.get(status, 'ended unexpectedly')} "
            f"({result.assistant_turns} turns, {len(result.history)} conversation steps)"
        )
        self._log(conv_id, summary)
        logger.info("Conversation %d: %s", conv_id, summary)
        return result
