"""
FastAPI application — the lmdispatch server.

Dispatches conversations, lists and inspects them, takes monitor actions
and streams live state snapshots over SSE:

    POST   /api/v1/conversations              dispatch, returns {"id": n}
    GET    /api/v1/conversations              all records
    GET    /api/v1/conversations/{id}         one record
    GET    /api/v1/conversations/{id}/results results text
    GET    /api/v1/conversations/{id}/log     debug log lines (dispatch_log.debug)
    POST   /api/v1/conversations/{id}/cancel
    DELETE /api/v1/conversations/{id}
    POST   /api/v1/monitor/action             {"type": ..., "id": ...}
    GET    /api/v1/monitor/stream             text/event-stream of snapshots
    GET    /api/v1/tools
    GET    /health
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from lmdispatch import __version__
from lmdispatch.backends import BaseBackend, make_backend
from lmdispatch.config import get_config
from lmdispatch.dispatch_log import DispatchLog
from lmdispatch.engine import ConversationEngine
from lmdispatch.instructions import EditorContext
from lmdispatch.monitor import Monitor
from lmdispatch.orchestrator import InstructionsError, Orchestrator
from lmdispatch.selector import InstructionSelector
from lmdispatch.store import ConversationStore
from lmdispatch.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

# Keepalive comment interval for idle SSE streams
STREAM_PING_SECONDS = 15.0


# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
store: ConversationStore | None = None
backend: BaseBackend | None = None
tool_registry: ToolRegistry | None = None
dispatch_log: DispatchLog | None = None
monitor: Monitor | None = None
engine: ConversationEngine | None = None
orchestrator: Orchestrator | None = None


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, log_cfg.get("level", "INFO").upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def build_components(cfg: dict) -> None:
    """Wire store, backend, tools, log, monitor, engine and orchestrator."""
    global store, backend, tool_registry, dispatch_log, monitor, engine, orchestrator

    store = ConversationStore()
    backend = make_backend(cfg)
    tool_registry = ToolRegistry(cfg)

    log_cfg = cfg.get("dispatch_log", {})
    dispatch_log = DispatchLog(log_cfg.get("path") if log_cfg.get("enabled", True) else None)
    if log_cfg.get("debug"):
        dispatch_log.enable_debug()

    monitor = Monitor(store, dispatch_log)
    engine = ConversationEngine(
        store,
        backend,
        tools=tool_registry,
        monitor=monitor,
        dispatch_log=dispatch_log,
        tool_timeout=cfg.get("tools", {}).get("timeout_seconds", 30),
    )

    i_cfg = cfg.get("instructions", {})
    selector = InstructionSelector(
        store,
        engine,
        dirs=i_cfg.get("dirs", []),
        model=i_cfg.get("selector_model") or cfg["backend"].get("default_model", ""),
        max_turns=i_cfg.get("selector_max_turns", 10),
        dispatch_log=dispatch_log,
    )
    orchestrator = Orchestrator(store, engine, selector=selector, dispatch_log=dispatch_log, cfg=cfg)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    cfg = get_config()
    _setup_logging(cfg)

    build_components(cfg)

    logger.info(
        "lmdispatch started — listening on %s:%s, backend %r",
        cfg["server"]["host"],
        cfg["server"]["port"],
        backend,
    )
    logger.info("Default model: %s", cfg["backend"].get("default_model", ""))
    logger.info("Tools: %s", tool_registry.list_tools())
    if tool_registry.allow_unsafe:
        logger.warning("Unsafe tools: ALLOWED")

    # Fill the model list so supports_model() can reject unknown models early
    try:
        models = await backend.list_models()
        logger.info("Backend models: %d available", len(models))
    except Exception as e:
        logger.warning("Could not list backend models: %s", e)

    yield

    logger.info("lmdispatch shutting down")
    await orchestrator.shutdown()
    dispatch_log.close()


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="lmdispatch",
    description="Dial out. Let the agent work the line.",
    version=__version__,
    lifespan=lifespan,
)


def _not_found(conv_id: int) -> JSONResponse:
    return JSONResponse({"error": f"conversation {conv_id} not found"}, status_code=404)


def _editor_context(raw) -> EditorContext | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise InstructionsError("editor_context must be an object")
    try:
        return EditorContext(**raw)
    except TypeError as e:
        raise InstructionsError(f"invalid editor_context: {e}")


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

@app.post("/api/v1/conversations")
async def create_conversation(request: Request):
    """
    Dispatch a conversation. Returns immediately with its id.

    Body:
        goal: str (required)
        instructions: str | [paths] | "instructions-selector"
        model, max_turns, tools, allow_unsafe, caller, title,
        context_files: [paths], editor_context: {...}
    """
    try:
        body = await request.json()
    except Exception:
        return JSONResponse({"error": "invalid JSON"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "body must be an object"}, status_code=400)

    goal = body.get("goal")
    if not isinstance(goal, str) or not goal.strip():
        return JSONResponse({"error": "goal is required"}, status_code=400)

    max_turns = body.get("max_turns")
    if max_turns is not None and (
        isinstance(max_turns, bool) or not isinstance(max_turns, int) or max_turns <= 0
    ):
        return JSONResponse({"error": "max_turns must be a positive integer"}, status_code=400)

    try:
        conv_id = orchestrator.dispatch(
            goal,
            instructions=body.get("instructions"),
            model_id=body.get("model"),
            max_turns=max_turns,
            tool_names=body.get("tools"),
            allow_unsafe=body.get("allow_unsafe"),
            caller=body.get("caller"),
            title=body.get("title"),
            editor_context=_editor_context(body.get("editor_context")),
            context_file_paths=body.get("context_files"),
        )
    except InstructionsError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    return JSONResponse({"id": conv_id}, status_code=202)


@app.get("/api/v1/conversations")
async def list_conversations():
    convs = sorted(store.list(), key=lambda c: c.id)
    return JSONResponse({
        "conversations": [c.to_dict() for c in convs],
        "count": len(convs),
    })


@app.get("/api/v1/conversations/{conv_id}")
async def get_conversation(conv_id: int):
    conv = store.get(conv_id)
    if conv is None:
        return _not_found(conv_id)
    return JSONResponse(conv.to_dict())


@app.get("/api/v1/conversations/{conv_id}/results")
async def get_results(conv_id: int):
    if store.get(conv_id) is None:
        return _not_found(conv_id)
    return JSONResponse({"id": conv_id, "results": monitor.show_results(conv_id)})


@app.get("/api/v1/conversations/{conv_id}/log")
async def get_conversation_log(conv_id: int):
    if store.get(conv_id) is None:
        return _not_found(conv_id)
    return JSONResponse({"id": conv_id, "lines": dispatch_log.get_debug_logs(conv_id)})


@app.post("/api/v1/conversations/{conv_id}/cancel")
async def cancel_conversation(conv_id: int):
    if not monitor.cancel_conversation(conv_id):
        return _not_found(conv_id)
    return JSONResponse({"ok": True, "id": conv_id})


@app.delete("/api/v1/conversations/{conv_id}")
async def delete_conversation(conv_id: int):
    if not monitor.delete_conversation(conv_id):
        return _not_found(conv_id)
    return JSONResponse({"ok": True, "id": conv_id})


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

@app.post("/api/v1/monitor/action")
async def monitor_action(request: Request):
    """Relay a board action: cancel-conversation, delete-conversation, show-results."""
    try:
        body = await request.json()
    except Exception:
        return JSONResponse({"error": "invalid JSON"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "body must be an object"}, status_code=400)

    try:
        outcome = monitor.handle_action(body)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    if body["type"] == "show-results":
        return JSONResponse({"ok": True, "results": outcome})
    return JSONResponse({"ok": bool(outcome)}, status_code=200 if outcome else 404)


@app.get("/api/v1/monitor/stream")
async def monitor_stream(request: Request):
    """Server-sent events: the current snapshot, then one per publish."""
    queue = monitor.subscribe()

    async def _event_stream():
        try:
            yield f"data: {json.dumps(monitor.snapshot())}\n\n"
            while True:
                if await request.is_disconnected():
                    break
                try:
                    snap = await asyncio.wait_for(queue.get(), timeout=STREAM_PING_SECONDS)
                except asyncio.TimeoutError:
                    yield ": ping\n\n"
                    continue
                yield f"data: {json.dumps(snap)}\n\n"
        finally:
            monitor.unsubscribe(queue)

    return StreamingResponse(
        _event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ---------------------------------------------------------------------------
# Misc
# ---------------------------------------------------------------------------

@app.get("/api/v1/tools")
async def list_tools():
    tools = tool_registry.tools.values() if tool_registry else []
    return JSONResponse({
        "tools": [
            {
                "name": t.name,
                "description": getattr(t, "description", ""),
                "unsafe": getattr(t, "unsafe", False),
            }
            for t in tools
        ],
        "allow_unsafe": tool_registry.allow_unsafe if tool_registry else False,
    })


@app.get("/health")
async def health():
    backend_ok = await backend.health_check() if backend else False
    return JSONResponse({
        "status": "ok",
        "version": __version__,
        "backend": backend.name if backend else None,
        "backend_reachable": backend_ok,
        "conversations": store.count if store else 0,
        "active": orchestrator.active if orchestrator else 0,
    })
