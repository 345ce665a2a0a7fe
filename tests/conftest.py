"""
Shared test fixtures: a scripted backend that replays canned responses,
and fresh store/log/monitor objects per test.
"""

import asyncio

import pytest

from lmdispatch.backends.base import BaseBackend, LMResponse
from lmdispatch.config import DEFAULTS, _merge
from lmdispatch.dispatch_log import DispatchLog
from lmdispatch.models import ToolCall
from lmdispatch.monitor import Monitor
from lmdispatch.store import ConversationStore


def reply(text=None, calls=(), tokens=10) -> LMResponse:
    """A successful LM response."""
    return LMResponse(ok=True, text=text, tool_calls=list(calls), tokens=tokens, backend_name="scripted")


def call(name, call_id="call_1", **arguments) -> ToolCall:
    return ToolCall(call_id=call_id, name=name, arguments=arguments)


class ScriptedBackend(BaseBackend):
    """
    Replays `script` one item per complete() call.
    Items may be an LMResponse, an Exception (raised), or an awaitable
    factory (called, then awaited) for slow or blocking responses.
    """

    def __init__(self, script, models=None):
        super().__init__("scripted", "http://scripted")
        self.script = list(script)
        self.calls: list[dict] = []
        self._available_models = list(models or [])

    async def complete(self, messages, model, tools=None):
        self.calls.append({"messages": messages, "model": model, "tools": tools})
        if not self.script:
            raise AssertionError("ScriptedBackend ran out of responses")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return await item()
        return item

    async def health_check(self):
        return True

    async def list_models(self):
        return self._available_models


async def never_answers():
    await asyncio.sleep(3600)


@pytest.fixture
def store():
    return ConversationStore()


@pytest.fixture
def dispatch_log():
    log = DispatchLog(None)
    log.enable_debug()
    return log


@pytest.fixture
def monitor(store, dispatch_log):
    return Monitor(store, dispatch_log)


@pytest.fixture
def cfg():
    """Defaults with the built-in tools on, no file involved."""
    return _merge(DEFAULTS, {"backend": {"default_model": "test-model"}})
