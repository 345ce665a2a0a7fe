#!/usr/bin/env python3
"""
lmdispatch CLI — Dial out. Let the agent work the line.

Every command has a phreaker name and a standard alias:

    PHREAKER        STANDARD        WHAT IT DOES
    --------        --------        ----------------------------------
    dial            start, serve    Start the lmdispatch server
    dispatch        run             Run one conversation here and print the result
    tap             log, tail       Live tail of the dispatch log
    ring            status, ps      List conversations on a running server
    hangup          cancel          Cancel a conversation on a running server
    board           monitor, tui    Live conversation board (TUI)
    tone            banner          Print the banner
"""

import argparse
import asyncio
import sys

from lmdispatch import __version__

BANNER = r"""
    ╔══════════════════════════════════════════════════╗
    ║                                                  ║
    ║   ██      ███    ███ ██████                      ║
    ║   ██      ████  ████ ██   ██                     ║
    ║   ██      ██ ████ ██ ██   ██                     ║
    ║   ██      ██  ██  ██ ██   ██                     ║
    ║   ███████ ██      ██ ██████   dispatch           ║
    ║                                                  ║
    ║   Dial out. Let the agent work the line.  v""" + __version__ + r""" ║
    ║                                                  ║
    ╚══════════════════════════════════════════════════╝
"""

DEFAULT_URL = "http://localhost:8787"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_dial(args):
    """Start the lmdispatch server."""
    import uvicorn
    from lmdispatch.config import get_config

    cfg = get_config()
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]

    print(BANNER)
    print(f"  Dialing up on {host}:{port}")
    print(f"  Backend: {cfg['backend']['type']} @ {cfg['backend']['url']}")
    print(f"  Model: {cfg['backend']['default_model']}")
    print()

    uvicorn.run(
        "lmdispatch.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def _instructions_from_args(args):
    if args.auto_select:
        from lmdispatch.orchestrator import AUTO_SELECT
        return AUTO_SELECT
    if args.instructions_file:
        return args.instructions_file
    return args.instructions


async def _dispatch(args) -> int:
    from lmdispatch import main as server
    from lmdispatch.config import get_config
    from lmdispatch.monitor import render_card
    from lmdispatch.orchestrator import InstructionsError

    cfg = get_config()
    server._setup_logging(cfg)
    server.build_components(cfg)
    await server.backend.list_models()

    goal = " ".join(args.goal)
    instructions = _instructions_from_args(args)
    print(f"  ▶ {goal}\n")
    try:
        conv_id = server.orchestrator.start(
            goal,
            instructions=instructions,
            model_id=args.model,
            max_turns=args.max_turns,
            caller=args.caller or "cli",
            title=args.title,
            context_file_paths=args.context,
        )
        result = await server.orchestrator.execute(
            conv_id,
            goal,
            instructions=instructions,
            tool_names=args.tool,
            allow_unsafe=args.allow_unsafe,
            context_file_paths=args.context,
            progress=lambda msg: print(f"  … {msg}"),
        )
    except InstructionsError as e:
        print(f"  ✗  {e}")
        return 2
    finally:
        server.dispatch_log.close()

    conv = server.store.get(conv_id)
    print()
    print(render_card(conv))
    if conv.results:
        print()
        print("  ◀ Results")
        print("  " + "─" * 56)
        print(conv.results)
    return 0 if result.error_message is None else 1


def cmd_dispatch(args):
    """Run one conversation in this process and print the outcome."""
    print(BANNER)
    try:
        code = asyncio.run(_dispatch(args))
    except KeyboardInterrupt:
        print("\n  [line disconnected]")
        code = 130
    sys.exit(code)


def cmd_tap(args):
    """Live tail of the dispatch log."""
    from lmdispatch.dispatch_log import live_tap
    live_tap(
        log_path=args.log,
        follow=not args.no_follow,
        last_n=args.last,
        conv_filter=args.conv,
        level_filter=args.level,
        raw=args.raw,
    )


def cmd_ring(args):
    """List conversations on a running lmdispatch instance."""
    import httpx
    from lmdispatch.monitor import render_card

    url = (args.url or DEFAULT_URL).rstrip("/")
    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        if resp.status_code != 200:
            print(f"  ✗  No answer — got HTTP {resp.status_code}")
            return
        health = resp.json()
        print(f"  ☎  Ring ring... {url} is UP (v{health.get('version', '?')})")
        reachable = "reachable" if health.get("backend_reachable") else "UNREACHABLE"
        print(f"  🔌 Backend: {health.get('backend')} ({reachable})")
        print(f"  📞 Active: {health.get('active', 0)}")

        convs = httpx.get(f"{url}/api/v1/conversations", timeout=5).json()
        items = convs.get("conversations", [])
        if not items:
            print("\n  No conversations on the line.")
            return
        for conv in items:
            print()
            for line in render_card(conv).splitlines():
                print(f"  {line}")
    except httpx.ConnectError:
        print(f"  ✗  Dead line — nothing at {url}")
    except Exception as e:
        print(f"  ✗  Error: {e}")


def cmd_hangup(args):
    """Cancel a conversation on a running lmdispatch instance."""
    import httpx

    url = (args.url or DEFAULT_URL).rstrip("/")
    try:
        resp = httpx.post(f"{url}/api/v1/conversations/{args.id}/cancel", timeout=5)
    except httpx.ConnectError:
        print(f"  ✗  Dead line — nothing at {url}")
        return
    if resp.status_code == 404:
        print(f"  ✗  No conversation {args.id}")
    elif resp.status_code == 200:
        print(f"  🛑 Conversation {args.id}: cancellation requested")
    else:
        print(f"  ✗  Got HTTP {resp.status_code}")


def cmd_board(args):
    """Launch the live conversation board."""
    from lmdispatch.tui.app import DispatchBoardApp
    app = DispatchBoardApp(url=args.url or DEFAULT_URL)
    app.run()


def cmd_tone(args):
    """Print the banner."""
    print(BANNER)


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names (phreaker + standard)."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lmdispatch",
        description="lmdispatch — Dial out. Let the agent work the line.",
        epilog=(
            "Each command has a phreaker name and standard aliases.\n"
            "Example: 'lmdispatch dial' and 'lmdispatch serve' do the same thing.\n"
            "Run 'lmdispatch <command> --help' for command-specific options."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"lmdispatch {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    # dial / start / serve
    def setup_dial(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")
    _add_command(sub, ["dial", "start", "serve"],
                 "Start the lmdispatch server", cmd_dial, setup_dial)

    # dispatch / run
    def setup_dispatch(p):
        p.add_argument("goal", nargs="+", help="What the agent should achieve")
        src = p.add_mutually_exclusive_group()
        src.add_argument("--instructions", "-i", default=None, help="Instruction text")
        src.add_argument("--instructions-file", "-f", action="append", default=None,
                         help="Instruction file (can specify multiple times)")
        src.add_argument("--auto-select", action="store_true",
                         help="Let the instruction selector pick instruction files")
        p.add_argument("--context", "-c", action="append", default=None,
                       help="Context file appended after the instructions (repeatable)")
        p.add_argument("--model", "-m", default=None, help="Model id (default: from config)")
        p.add_argument("--max-turns", "-t", type=int, default=None, help="Turn budget")
        p.add_argument("--tool", action="append", default=None,
                       help="Enable a tool by name (repeatable)")
        p.add_argument("--allow-unsafe", action="store_true", default=None,
                       help="Allow tools flagged unsafe")
        p.add_argument("--title", default=None, help="Display title")
        p.add_argument("--caller", default=None, help="Who is dispatching")
    _add_command(sub, ["dispatch", "run"],
                 "Run one conversation and print the result", cmd_dispatch, setup_dispatch)

    # tap / log / tail
    def setup_tap(p):
        p.add_argument("--log", default=None, help="Path to dispatch.jsonl (default: from config)")
        p.add_argument("--last", "-n", type=int, default=20, help="Show last N entries before following")
        p.add_argument("--conv", type=int, default=None, help="Only this conversation id")
        p.add_argument("--level", "-l", choices=["info", "tool", "warning", "error"], default=None,
                       help="Filter by level")
        p.add_argument("--no-follow", action="store_true", help="Don't follow, just show last entries")
        p.add_argument("--raw", action="store_true", help="Raw JSONL output, no formatting")
    _add_command(sub, ["tap", "log", "tail"],
                 "Live tail of the dispatch log", cmd_tap, setup_tap)

    # ring / status / ps
    def setup_ring(p):
        p.add_argument("--url", "-u", default=None, help=f"lmdispatch URL (default: {DEFAULT_URL})")
    _add_command(sub, ["ring", "status", "ps"],
                 "List conversations on a running instance", cmd_ring, setup_ring)

    # hangup / cancel
    def setup_hangup(p):
        p.add_argument("id", type=int, help="Conversation id")
        p.add_argument("--url", "-u", default=None, help=f"lmdispatch URL (default: {DEFAULT_URL})")
    _add_command(sub, ["hangup", "cancel"],
                 "Cancel a conversation on a running instance", cmd_hangup, setup_hangup)

    # board / monitor / tui
    def setup_board(p):
        p.add_argument("--url", "-u", default=None, help=f"lmdispatch URL (default: {DEFAULT_URL})")
    _add_command(sub, ["board", "monitor", "tui"],
                 "Live conversation board", cmd_board, setup_board)

    # tone / banner
    _add_command(sub, ["tone", "banner"],
                 "Print the lmdispatch banner", cmd_tone)

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        cmd_tone(args)
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
