"""
Dispatch log — the narrative of every conversation, one JSONL line per step.

Two parts:
  1. DispatchLog: writes structured entries ("turn 2/5 started", "tool x
     failed", ...) keyed by conversation id, and optionally keeps them in
     memory while debug mode is on
  2. live_tap(): reads the JSONL and renders a color-coded live view

This is separate from the Python debug log. It is the per-conversation
story a user reads when they want to know what an agent actually did.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

# ANSI colors
C_RESET = "\033[0m"
C_BOLD = "\033[1m"
C_DIM = "\033[2m"
C_INFO = "\033[96m"      # cyan
C_TOOL = "\033[92m"      # green
C_WARN = "\033[93m"      # yellow
C_ERROR = "\033[91m"     # red
C_TIME = "\033[90m"      # gray
C_CONV = "\033[95m"      # magenta

LEVEL_COLORS = {
    "info": C_INFO,
    "tool": C_TOOL,
    "warning": C_WARN,
    "error": C_ERROR,
}

MAX_CONTENT = 2000

# Debug entries kept in memory, oldest dropped first
DEBUG_BUFFER_SIZE = 5000


class DispatchLog:
    """
    Structured JSONL log for dispatched conversations.

    Format:
        {"ts": "...", "conv": 3, "level": "info|tool|warning|error",
         "len": 123, "message": "..."}
    """

    def __init__(self, log_path: str | None = None, debug_limit: int = DEBUG_BUFFER_SIZE):
        self.log_path = Path(log_path) if log_path else None
        if self.log_path:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = None
        self._lock = threading.Lock()
        self._debug = False
        self._debug_entries: deque[dict] = deque(maxlen=debug_limit)

    def _ensure_open(self):
        if self._file is None and self.log_path:
            self._file = open(self.log_path, "a", buffering=1)  # line-buffered

    def log(self, conv_id: int | None, message: str, level: str = "info"):
        """Write one entry for conversation `conv_id`."""
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "conv": conv_id,
            "level": level,
            "len": len(message),
        }
        if len(message) <= MAX_CONTENT:
            entry["message"] = message
        else:
            entry["message"] = (
                message[:1000]
                + f"\n\n[... {len(message) - MAX_CONTENT} chars truncated ...]\n\n"
                + message[-1000:]
            )

        logger.debug("[Conv-%s] %s", conv_id, entry["message"][:200])
        with self._lock:
            if self._debug:
                self._debug_entries.append(entry)
            if self.log_path:
                self._ensure_open()
                self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")

    # ── Debug buffer ─────────────────────────────────────────────────────────

    def enable_debug(self):
        with self._lock:
            self._debug = True
            self._debug_entries.clear()

    def disable_debug(self):
        with self._lock:
            self._debug = False
            self._debug_entries.clear()

    def clear_debug(self):
        with self._lock:
            self._debug_entries.clear()

    def drop_debug(self, conv_id: int):
        """Forget the buffered entries of one conversation."""
        with self._lock:
            kept = [e for e in self._debug_entries if e["conv"] != conv_id]
            self._debug_entries.clear()
            self._debug_entries.extend(kept)

    def get_debug_logs(self, conv_id: int | None = None) -> list[str]:
        """Buffered entries, formatted, optionally for one conversation."""
        with self._lock:
            entries = list(self._debug_entries)
        lines = []
        for e in entries:
            if conv_id is not None and e["conv"] != conv_id:
                continue
            prefix = "" if conv_id is not None else f"[Conv-{e['conv']}] "
            lines.append(f"{prefix}{e['ts']} - {e['message']}")
        return lines

    def close(self):
        with self._lock:
            if self._file:
                self._file.close()
                self._file = None


def _format_entry(entry: dict, raw: bool = False) -> str:
    """Format a single dispatch log entry for display."""
    if raw:
        return json.dumps(entry, ensure_ascii=False)

    ts = entry.get("ts", "")
    try:
        time_str = datetime.fromisoformat(ts).strftime("%H:%M:%S")
    except (ValueError, TypeError):
        time_str = ts[:8] if ts else "??:??:??"

    level = entry.get("level", "info")
    color = LEVEL_COLORS.get(level, C_RESET)
    conv = entry.get("conv")
    message = entry.get("message", "")

    header = f"  {C_TIME}{time_str}{C_RESET} {C_CONV}[Conv-{conv}]{C_RESET} {color}{C_BOLD}{level.upper():<7}{C_RESET}"
    lines = message.split("\n")
    out = [f"{header} {lines[0]}"]
    for line in lines[1:12]:
        out.append(f"      {line}")
    if len(lines) > 12:
        out.append(f"      {C_DIM}[... {len(lines) - 12} more lines]{C_RESET}")
    return "\n".join(out)


def _matches(entry: dict, conv_filter: int | None, level_filter: str | None) -> bool:
    if conv_filter is not None and entry.get("conv") != conv_filter:
        return False
    if level_filter and entry.get("level") != level_filter:
        return False
    return True


def live_tap(
    log_path: str | None = None,
    follow: bool = True,
    last_n: int = 20,
    conv_filter: int | None = None,
    level_filter: str | None = None,
    raw: bool = False,
):
    """
    Live tail of the dispatch log.

    Args:
        log_path: Path to dispatch.jsonl. If None, reads from config.
        follow: If True, keep watching for new entries (tail -f behavior).
        last_n: Show this many recent entries before following.
        conv_filter: Only show entries for this conversation id.
        level_filter: Only show entries with this level.
        raw: Output raw JSONL instead of formatted.
    """
    if log_path is None:
        from lmdispatch.config import get_config
        log_path = get_config().get("dispatch_log", {}).get("path", "./data/dispatch.jsonl")

    path = Path(log_path)
    if not path.exists():
        print(f"  ✗  No dispatch log found at {path}")
        print("     Start a conversation first: lmdispatch dispatch \"<goal>\"")
        return

    if not raw:
        print(f"  ☎  Tapping into {path}")

    with open(path) as f:
        all_lines = f.readlines()

    for line in all_lines[max(0, len(all_lines) - last_n):]:
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if _matches(entry, conv_filter, level_filter):
            print(_format_entry(entry, raw=raw))

    if not follow:
        return

    if not raw:
        print(f"\n  {C_DIM}[listening for new entries... Ctrl+C to hang up]{C_RESET}\n")

    try:
        with open(path) as f:
            f.seek(0, 2)
            while True:
                line = f.readline()
                if not line:
                    time.sleep(0.1)
                    continue
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if _matches(entry, conv_filter, level_filter):
                    print(_format_entry(entry, raw=raw))
    except KeyboardInterrupt:
        if not raw:
            print(f"\n  {C_DIM}[line disconnected]{C_RESET}")
