"""
Cancellation handle — the capability stored on each conversation record.

Cancelling is cooperative: the engine looks at the flag at the top of every
turn. The handle can also abort an in-flight await (LM call, tool batch)
through race(), so a user does not have to wait for a slow backend.
"""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)


class ConversationCancelled(Exception):
    """Raised out of race() when the handle fires before the awaitable."""


class CancellationHandle:
    """Thread-safe one-shot cancellation signal bound to an event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        try:
            self._loop = loop or asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        self._event = asyncio.Event()
        self._requested = False
        self._disposed = False

    @property
    def requested(self) -> bool:
        return self._requested

    def cancel(self) -> None:
        """Fire the signal. Safe to call twice and from any thread."""
        if self._requested or self._disposed:
            self._requested = True
            return
        self._requested = True

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if self._loop is None or running is self._loop:
            self._event.set()
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._event.set)

    async def race(self, aw):
        """
        Await `aw` unless the handle fires first.
        On cancellation the pending awaitable is cancelled and
        ConversationCancelled is raised.
        """
        if self._requested:
            if asyncio.iscoroutine(aw):
                aw.close()
            raise ConversationCancelled()

        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug("In-flight call failed while being cancelled: %s", e)
        raise ConversationCancelled()

    def dispose(self) -> None:
        """Release the handle once the conversation has finished."""
        self._disposed = True
