"""
Conversation engine — drives one conversation from its first turn to a
terminal status.

Each turn:
  1. stop if the conversation was cancelled
  2. bump the turn counter, mark the record `working`
  3. build the message list from (instructions, goal, history)
  4. call the backend with the enabled tool descriptors
  5. record tokens and the assistant response
  6. classify the response (outcome.py)
  7. run requested tools and loop, loop on an explicit continue, or stop

Provider failures end the conversation in `error`; nothing is retried.
Tool failures never end it: they come back as failed results the model
can react to. The in-flight LM call and tool batch are raced against the
conversation's cancellation handle, so a cancel does not wait on a slow
backend.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from lmdispatch.backends.base import BaseBackend, ProviderError
from lmdispatch.cancellation import CancellationHandle, ConversationCancelled
from lmdispatch.messages import SYSTEM_PROMPT, build_messages, to_wire
from lmdispatch.models import (
    AssistantResponse,
    ConversationResult,
    HistoryEntry,
    Reason,
    Status,
    ToolResults,
)
from lmdispatch.outcome import determine_outcome
from lmdispatch.store import ConversationStore
from lmdispatch.tools.executor import DEFAULT_TIMEOUT, execute_tool_calls

logger = logging.getLogger(__name__)


def results_text(history: list[HistoryEntry]) -> str | None:
    """Every non-empty assistant text, in order, separated by blank lines."""
    texts = [
        e.text.strip()
        for e in history
        if isinstance(e, AssistantResponse) and e.text and e.text.strip()
    ]
    return "\n\n".join(texts) or None


class ConversationEngine:
    """
    Runs conversations already registered in the store.

    One engine can serve any number of concurrent conversations; all
    per-conversation state lives in run()'s locals and the store record.
    """

    def __init__(
        self,
        store: ConversationStore,
        backend: BaseBackend,
        tools=None,
        monitor=None,
        dispatch_log=None,
        tool_timeout: float = DEFAULT_TIMEOUT,
        system_prompt: str | None = SYSTEM_PROMPT,
    ):
        self.store = store
        self.backend = backend
        self.tools = tools
        self.monitor = monitor
        self.dispatch_log = dispatch_log
        self.tool_timeout = tool_timeout
        self.system_prompt = system_prompt

    def _log(self, conv_id: int, message: str, level: str = "info") -> None:
        if self.dispatch_log:
            self.dispatch_log.log(conv_id, message, level=level)

    def _publish(self) -> None:
        if self.monitor:
            self.monitor.publish()

    async def run(
        self,
        conv_id: int,
        goal: str,
        instructions: str,
        tool_names: list[str] | None = None,
        allow_unsafe: bool | None = None,
        progress: Callable[[str], None] | None = None,
    ) -> ConversationResult:
        """Run conversation `conv_id` to completion and return its history."""
        conv = self.store.get(conv_id)
        if conv is None:
            raise KeyError(f"Conversation {conv_id} is not registered")

        handle = CancellationHandle()
        self.store.update(conv_id, cancellation_handle=handle)
        if conv.cancelled:
            handle.cancel()

        enabled = self.tools.enabled(tool_names, allow_unsafe) if self.tools else []
        tool_map = {t.name: t for t in enabled}
        descriptors = self.tools.descriptors(tool_names, allow_unsafe) if self.tools else []

        history: list[HistoryEntry] = []
        last_response = None
        error_message = None
        reason = Reason.AGENT_FINISHED

        self._log(conv_id, f"Starting conversation with {conv.model_id}, goal: {goal}")
        if tool_names:
            self._log(conv_id, f"Tools enabled: {', '.join(tool_map) or 'none'}")

        try:
            if not self.backend.supports_model(conv.model_id):
                raise ProviderError(f"Model not found: {conv.model_id}")

            while True:
                conv = self.store.get(conv_id)
                if conv is None or conv.cancelled or handle.requested:
                    self._log(conv_id, "🛑 Conversation cancelled by user", level="warning")
                    reason = Reason.CANCELLED
                    break

                turn = conv.current_turn + 1
                self.store.update(conv_id, status=Status.WORKING, current_turn=turn)
                self._publish()
                if progress:
                    progress(f"Turn {turn}/{conv.max_turns}")
                self._log(
                    conv_id,
                    f"📊 Turn {turn}/{conv.max_turns} (total: {conv.total_tokens} tokens)",
                )

                messages = to_wire(build_messages(history, instructions, goal), self.system_prompt)
                response = await handle.race(
                    self.backend.complete(messages, conv.model_id, descriptors or None)
                )
                last_response = response.raise_for_error()

                calls = tuple(response.tool_calls)
                history.append(AssistantResponse(turn, response.text, calls))
                self.store.update(conv_id, total_tokens=conv.total_tokens + response.tokens)
                if response.text:
                    self._log(conv_id, f"🤖 AI Agent says:\n{response.text}")

                outcome = determine_outcome(response.text, calls, turn, conv.max_turns)
                self._log(
                    conv_id,
                    f"✓ Turn {turn} completed (total: {conv.total_tokens + response.tokens} tokens)",
                )
                self._publish()

                if outcome.reason is Reason.TOOLS_EXECUTING:
                    self._log(conv_id, f"🔧 AI Agent executing {len(calls)} tool(s)", level="tool")
                    results = await handle.race(execute_tool_calls(
                        tool_map, calls, self.tool_timeout,
                        log=lambda msg: self._log(conv_id, msg, level="tool"),
                    ))
                    history.append(ToolResults(turn, tuple(results)))
                    failed = sum(1 for r in results if not r.ok)
                    self._log(
                        conv_id,
                        f"✅ Tools executed: {len(results) - failed} ok, {failed} failed",
                        level="tool",
                    )
                    continue

                if outcome.continue_:
                    self._log(conv_id, "↻ AI Agent continuing to next step...")
                    continue

                if outcome.reason is Reason.MAX_TURNS_REACHED and calls:
                    self._log(
                        conv_id,
                        f"Turn budget spent, {len(calls)} requested tool call(s) not run",
                        level="warning",
                    )
                reason = outcome.reason
                self._log(conv_id, f"Exiting conversation loop: {reason.value}")
                break

        except ConversationCancelled:
            self._log(conv_id, "🛑 Conversation cancelled by user", level="warning")
            reason = Reason.CANCELLED
        except ProviderError as e:
            logger.warning("Conversation %d: provider error: %s", conv_id, e)
            self._log(conv_id, f"❌ Error: {e}", level="error")
            reason = Reason.ERROR
            error_message = str(e)
        except asyncio.CancelledError:
            # The task itself was cancelled (shutdown): record it, then propagate
            self.store.mark_cancelled(conv_id)
            self._finalize(conv_id, Reason.CANCELLED, history, None, handle)
            raise
        except Exception as e:
            logger.exception("Conversation %d failed", conv_id)
            self._log(conv_id, f"❌ Error: {e}", level="error")
            reason = Reason.ERROR
            error_message = f"{type(e).__name__}: {e}"

        reason = self._finalize(conv_id, reason, history, error_message, handle)
        return ConversationResult(
            history=history,
            reason=reason,
            final_response=last_response,
            error_message=error_message,
        )

    def _finalize(
        self,
        conv_id: int,
        reason: Reason,
        history: list[HistoryEntry],
        error_message: str | None,
        handle: CancellationHandle,
    ) -> Reason:
        """Record the terminal status. A set cancel flag always wins."""
        conv = self.store.get(conv_id)
        if conv is not None and conv.cancelled:
            reason = Reason.CANCELLED

        fields = {
            "status": reason.to_status(),
            "results": results_text(history),
            "cancellation_handle": None,
        }
        if error_message:
            fields["error_message"] = error_message
        self.store.update(conv_id, **fields)
        handle.dispose()
        self._publish()
        logger.info("Conversation %d finished: %s", conv_id, reason.value)
        return reason
