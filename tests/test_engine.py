"""
Tests for the conversation engine loop.
Run with: pytest tests/test_engine.py
"""

import asyncio

import pytest

from conftest import ScriptedBackend, call, never_answers, reply
from lmdispatch.backends.base import LMResponse
from lmdispatch.engine import ConversationEngine, results_text
from lmdispatch.messages import COMPLETION_MARKER, CONTINUING_MARKER
from lmdispatch.models import AssistantResponse, Reason, Status, ToolResults
from lmdispatch.tools.registry import ToolRegistry


def make_engine(store, backend, cfg, **kw):
    return ConversationEngine(store, backend, tools=ToolRegistry(cfg), **kw)


async def wait_for_status(store, conv_id, status, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while store.get(conv_id).status != status:
        if loop.time() > deadline:
            raise AssertionError(f"status never became {status}")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Terminal outcomes
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_completes_in_one_turn(store, cfg):
    backend = ScriptedBackend([reply(f"Hello there. {COMPLETION_MARKER}", tokens=17)])
    engine = make_engine(store, backend, cfg)
    conv_id = store.register("Say hello", "test-model", 5)

    result = await engine.run(conv_id, "Say hello", "Be polite.")

    assert result.reason is Reason.TASK_COMPLETE
    assert len(result.history) == 1
    conv = store.get(conv_id)
    assert conv.status == Status.TASK_COMPLETE
    assert conv.current_turn == 1
    assert conv.total_tokens == 17
    assert conv.results == f"Hello there. {COMPLETION_MARKER}"
    assert conv.cancellation_handle is None


@pytest.mark.asyncio
async def test_tool_round_trip(store, cfg):
    """Turn 1 asks for the calculator, turn 2 reports the answer."""
    backend = ScriptedBackend([
        reply("Let me compute.", [call("calculator", expression="6*7")], tokens=5),
        reply(f"The answer is 42. {COMPLETION_MARKER}", tokens=7),
    ])
    engine = make_engine(store, backend, cfg)
    conv_id = store.register("What is 6*7?", "test-model", 5)

    result = await engine.run(conv_id, "What is 6*7?", "", tool_names=["calculator"])

    assert result.reason is Reason.TASK_COMPLETE
    assert [type(e) for e in result.history] == [AssistantResponse, ToolResults, AssistantResponse]
    tool_result = result.history[1].results[0]
    assert tool_result.ok
    assert tool_result.summary == "6*7 = 42"

    # Tools are offered to the model, and the second call sees the result
    assert backend.calls[0]["tools"][0]["function"]["name"] == "calculator"
    second = backend.calls[1]["messages"]
    assert any("TOOL RESULT (calculator, OK): 6*7 = 42" in m["content"] for m in second)

    conv = store.get(conv_id)
    assert conv.total_tokens == 12
    assert conv.current_turn == 2
    assert conv.results == f"Let me compute.\n\nThe answer is 42. {COMPLETION_MARKER}"


@pytest.mark.asyncio
async def test_max_turns_stops_after_exactly_n_calls(store, cfg):
    n = 3
    backend = ScriptedBackend([reply(f"More to do. {CONTINUING_MARKER}") for _ in range(n)])
    engine = make_engine(store, backend, cfg)
    conv_id = store.register("Loop forever", "test-model", n)

    result = await engine.run(conv_id, "Loop forever", "")

    assert result.reason is Reason.MAX_TURNS_REACHED
    assert len(backend.calls) == n
    conv = store.get(conv_id)
    assert conv.status == Status.MAX_TURNS_REACHED
    assert conv.current_turn == n


@pytest.mark.asyncio
async def test_tool_calls_on_last_turn_are_not_run(store, cfg):
    backend = ScriptedBackend([reply(None, [call("calculator", expression="1+1")])])
    engine = make_engine(store, backend, cfg)
    conv_id = store.register("g", "test-model", 1)

    result = await engine.run(conv_id, "g", "", tool_names=["calculator"])

    assert result.reason is Reason.MAX_TURNS_REACHED
    assert len(result.history) == 1
    assert store.get(conv_id).results is None


@pytest.mark.asyncio
async def test_completion_on_the_only_turn_is_task_complete(store, cfg):
    backend = ScriptedBackend([reply(COMPLETION_MARKER)])
    engine = make_engine(store, backend, cfg)
    conv_id = store.register("g", "test-model", 1)

    result = await engine.run(conv_id, "g", "")

    assert result.reason is Reason.TASK_COMPLETE
    assert len(backend.calls) == 1
    assert len(result.history) == 1
    assert store.get(conv_id).status == Status.TASK_COMPLETE


@pytest.mark.asyncio
async def test_two_tool_turns_then_plain_answer_is_agent_finished(store, cfg):
    backend = ScriptedBackend([
        reply(None, [call("calculator", expression="1+1")]),
        reply(None, [call("calculator", "call_2", expression="2+2")]),
        reply("Sums are 2 and 4."),
    ])
    engine = make_engine(store, backend, cfg)
    conv_id = store.register("Add things", "test-model", 3)

    result = await engine.run(conv_id, "Add things", "", tool_names=["calculator"])

    assert result.reason is Reason.AGENT_FINISHED
    assert len(backend.calls) == 3
    assistant = [e for e in result.history if isinstance(e, AssistantResponse)]
    tool_batches = [e for e in result.history if isinstance(e, ToolResults)]
    assert len(assistant) == 3
    assert len(tool_batches) == 2
    assert [type(e) for e in result.history] == [
        AssistantResponse, ToolResults, AssistantResponse, ToolResults, AssistantResponse,
    ]
    conv = store.get(conv_id)
    assert conv.status == Status.AGENT_FINISHED
    assert conv.current_turn == 3


@pytest.mark.asyncio
async def test_tool_calls_on_third_and_last_turn_are_dropped(store, cfg):
    backend = ScriptedBackend([
        reply(None, [call("calculator", expression="1+1")]),
        reply(None, [call("calculator", "call_2", expression="2+2")]),
        reply(None, [call("calculator", "call_3", expression="3+3")]),
    ])
    engine = make_engine(store, backend, cfg)
    conv_id = store.register("g", "test-model", 3)

    result = await engine.run(conv_id, "g", "", tool_names=["calculator"])

    assert result.reason is Reason.MAX_TURNS_REACHED
    assert len(backend.calls) == 3
    assert sum(isinstance(e, AssistantResponse) for e in result.history) == 3
    assert sum(isinstance(e, ToolResults) for e in result.history) == 2


@pytest.mark.asyncio
async def test_plain_answer_is_agent_finished(store, cfg):
    backend = ScriptedBackend([reply("Here is a haiku about latency.")])
    engine = make_engine(store, backend, cfg)
    conv_id = store.register("Write a haiku", "test-model", 5)

    result = await engine.run(conv_id, "Write a haiku", "")

    assert result.reason is Reason.AGENT_FINISHED
    assert store.get(conv_id).status == Status.AGENT_FINISHED


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_provider_error_ends_in_error_without_retry(store, cfg):
    backend = ScriptedBackend([
        LMResponse(ok=False, status_code=500, error="HTTP 500: upstream exploded"),
        reply(COMPLETION_MARKER),
    ])
    engine = make_engine(store, backend, cfg)
    conv_id = store.register("g", "test-model", 5)

    result = await engine.run(conv_id, "g", "")

    assert result.reason is Reason.ERROR
    assert result.error_message == "HTTP 500: upstream exploded"
    assert len(backend.calls) == 1
    conv = store.get(conv_id)
    assert conv.status == Status.ERROR
    assert conv.error_message == "HTTP 500: upstream exploded"


@pytest.mark.asyncio
async def test_backend_exception_ends_in_error(store, cfg):
    backend = ScriptedBackend([RuntimeError("socket closed")])
    engine = make_engine(store, backend, cfg)
    conv_id = store.register("g", "test-model", 5)

    result = await engine.run(conv_id, "g", "")

    assert result.reason is Reason.ERROR
    assert "socket closed" in store.get(conv_id).error_message


@pytest.mark.asyncio
async def test_failed_tool_does_not_end_conversation(store, cfg):
    backend = ScriptedBackend([
        reply(None, [call("calculator", expression="1/0")]),
        reply(f"Division by zero, reporting that. {COMPLETION_MARKER}"),
    ])
    engine = make_engine(store, backend, cfg)
    conv_id = store.register("g", "test-model", 5)

    result = await engine.run(conv_id, "g", "", tool_names=["calculator"])

    assert result.reason is Reason.TASK_COMPLETE
    failed = result.history[1].results[0]
    assert not failed.ok
    assert any("FAILED" in m["content"] for m in backend.calls[1]["messages"])


@pytest.mark.asyncio
async def test_unknown_model_is_error_before_first_turn(store, cfg):
    backend = ScriptedBackend([], models=["llama3.2"])
    engine = make_engine(store, backend, cfg)
    conv_id = store.register("g", "gpt-nope", 5)

    result = await engine.run(conv_id, "g", "")

    assert result.reason is Reason.ERROR
    assert backend.calls == []
    conv = store.get(conv_id)
    assert conv.status == Status.ERROR
    assert conv.error_message == "Model not found: gpt-nope"
    assert conv.current_turn == 0


@pytest.mark.asyncio
async def test_unregistered_conversation_raises(store, cfg):
    engine = make_engine(store, ScriptedBackend([]), cfg)
    with pytest.raises(KeyError):
        await engine.run(404, "g", "")


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cancel_between_turns(store, cfg):
    conv_id = store.register("g", "test-model", 5)

    async def cancel_then_continue():
        store.mark_cancelled(conv_id)
        return reply(f"Working on it. {CONTINUING_MARKER}")

    backend = ScriptedBackend([cancel_then_continue, reply(COMPLETION_MARKER)])
    engine = make_engine(store, backend, cfg)

    result = await engine.run(conv_id, "g", "")

    assert result.reason is Reason.CANCELLED
    assert len(backend.calls) == 1
    conv = store.get(conv_id)
    assert conv.status == Status.CANCELLED
    assert conv.cancelled is True


@pytest.mark.asyncio
async def test_cancel_aborts_in_flight_call(store, cfg):
    backend = ScriptedBackend([never_answers])
    engine = make_engine(store, backend, cfg)
    conv_id = store.register("g", "test-model", 5)

    task = asyncio.create_task(engine.run(conv_id, "g", ""))
    await wait_for_status(store, conv_id, Status.WORKING)
    await asyncio.sleep(0.01)
    store.mark_cancelled(conv_id)

    result = await asyncio.wait_for(task, timeout=1.0)
    assert result.reason is Reason.CANCELLED
    assert store.get(conv_id).status == Status.CANCELLED


@pytest.mark.asyncio
async def test_cancelled_before_start_makes_no_calls(store, cfg):
    backend = ScriptedBackend([reply(COMPLETION_MARKER)])
    engine = make_engine(store, backend, cfg)
    conv_id = store.register("g", "test-model", 5)
    store.mark_cancelled(conv_id)

    result = await engine.run(conv_id, "g", "")

    assert result.reason is Reason.CANCELLED
    assert backend.calls == []


@pytest.mark.asyncio
async def test_deleted_mid_run_stops_quietly(store, cfg):
    conv_id = store.register("g", "test-model", 5)

    async def delete_then_continue():
        store.delete(conv_id)
        return reply(CONTINUING_MARKER)

    engine = make_engine(store, ScriptedBackend([delete_then_continue]), cfg)
    result = await engine.run(conv_id, "g", "")

    assert result.reason is Reason.CANCELLED
    assert store.get(conv_id) is None


# ---------------------------------------------------------------------------
# Observers
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_publishes_and_logs_every_turn(store, monitor, dispatch_log, cfg):
    queue = monitor.subscribe()
    backend = ScriptedBackend([reply(CONTINUING_MARKER), reply(COMPLETION_MARKER)])
    engine = make_engine(store, backend, cfg, monitor=monitor, dispatch_log=dispatch_log)
    conv_id = store.register("g", "test-model", 5)
    progress = []

    await engine.run(conv_id, "g", "", progress=progress.append)

    assert progress == ["Turn 1/5", "Turn 2/5"]
    snapshots = []
    while not queue.empty():
        snapshots.append(queue.get_nowait())
    assert snapshots
    assert all(s["type"] == "state-update" for s in snapshots)
    assert snapshots[-1]["conversations"][0]["status"] == "task-complete"

    lines = dispatch_log.get_debug_logs(conv_id)
    assert any("Turn 1/5" in line for line in lines)
    assert any("Turn 2/5" in line for line in lines)


def test_results_text_skips_empty_texts():
    history = [
        AssistantResponse(1, None),
        AssistantResponse(2, "  "),
        AssistantResponse(3, "first"),
        AssistantResponse(4, "second"),
    ]
    assert results_text(history) == "first\n\nsecond"
    assert results_text([]) is None
