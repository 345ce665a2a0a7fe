"""
Board pane — the live list of dispatched conversations.

Polls a running lmdispatch server and renders one card per conversation,
newest first. The selected card can be cancelled, deleted, or have its
full results shown; actions go through /api/v1/monitor/action.
"""
from __future__ import annotations

import httpx
from textual.app import ComposeResult
from textual.containers import ScrollableContainer
from textual.timer import Timer
from textual.widgets import Static

from lmdispatch.monitor import format_time, status_icon, truncate_summary
from lmdispatch.tui.screens.base import DispatchPane

_STATUS_STYLE = {
    "started": "dim",
    "working": "bold blue",
    "task-complete": "bold green",
    "max-turns-reached": "bold yellow",
    "agent-finished": "bold cyan",
    "cancelled": "bold dark_orange",
    "error": "bold red",
}

ACTIVE = ("started", "working")


def render_conversation(conv: dict, selected: bool = False) -> str:
    status = conv.get("status", "")
    style = _STATUS_STYLE.get(status, "white")
    pointer = "[reverse]▶[/reverse]" if selected else " "
    title = conv.get("title") or ""
    lines = [
        f"{pointer} [{style}]{status_icon(status)}[/{style}] "
        f"[bold][{conv['id']}][/bold] {title}  [dim]{format_time(conv.get('started_at'))}[/dim]",
    ]
    meta = (
        f"    {conv.get('current_turn', 0)}/{conv.get('max_turns', 0)} │ "
        f"Tks: {conv.get('total_tokens', 0)} │ {conv.get('model_id', '')}"
    )
    if conv.get("caller"):
        meta += f" │ Who: {conv['caller']}"
    lines.append(f"[dim]{meta}[/dim]")
    lines.append(f"    {truncate_summary(conv.get('goal', ''), 200)}")
    if conv.get("error_message"):
        lines.append(f"    [red]Error: {conv['error_message']}[/red]")
    if conv.get("results"):
        lines.append(f"    [{style}]Results: {truncate_summary(conv['results'], 100)}[/{style}]")
    return "\n".join(lines)


def render_board(conversations: list[dict], selected_id: int | None) -> str:
    if not conversations:
        return "[dim]No conversations yet. Dispatch one: lmdispatch dispatch \"<goal>\"[/dim]"
    cards = [
        render_conversation(c, selected=c["id"] == selected_id)
        for c in sorted(conversations, key=lambda c: c["id"], reverse=True)
    ]
    return ("\n[dim]" + "─" * 60 + "[/dim]\n").join(cards)


class BoardPane(DispatchPane):
    """Live conversation board."""

    POLL_INTERVAL = 2.0

    def __init__(self, url: str, **kwargs):
        super().__init__(**kwargs)
        self.url = url.rstrip("/")
        self.conversations: list[dict] = []
        self.selected_id: int | None = None
        self._poller: Timer | None = None
        self._online = False

    def compose(self) -> ComposeResult:
        yield Static("", id="board-status", markup=True)
        with ScrollableContainer(id="board-scroll"):
            yield Static(id="board-body", markup=True)
        yield Static("", id="board-detail", markup=True)

    def on_mount(self) -> None:
        self.refresh_content()
        self._poller = self.set_interval(self.POLL_INTERVAL, self.refresh_content)

    def refresh_content(self) -> None:
        self.run_worker(self._poll(), exclusive=True, group="board-poll")

    async def _poll(self) -> None:
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(f"{self.url}/api/v1/conversations")
                resp.raise_for_status()
                self.conversations = resp.json().get("conversations", [])
                self._online = True
        except Exception:
            self._online = False
        self._render()

    def _render(self) -> None:
        status = self.query_one("#board-status", Static)
        body = self.query_one("#board-body", Static)

        if not self._online:
            status.update(f"[dim]── no answer at {self.url} ──[/dim]")
            body.update("[dim]Start the server: lmdispatch dial[/dim]")
            return

        ids = [c["id"] for c in self.conversations]
        if self.selected_id not in ids:
            self.selected_id = max(ids) if ids else None

        active = sum(1 for c in self.conversations if c.get("status") in ACTIVE)
        status.update(
            f"[dim]{self.url}  │  {len(self.conversations)} conversations  │  "
            f"{active} active  │  polling every {self.POLL_INTERVAL:.0f}s[/dim]"
        )
        body.update(render_board(self.conversations, self.selected_id))

    # ── Selection ────────────────────────────────────────────────────────────

    def move_selection(self, step: int) -> None:
        ids = sorted((c["id"] for c in self.conversations), reverse=True)
        if not ids:
            return
        idx = ids.index(self.selected_id) if self.selected_id in ids else 0
        self.selected_id = ids[max(0, min(len(ids) - 1, idx + step))]
        self._render()

    # ── Actions ──────────────────────────────────────────────────────────────

    async def send_action(self, kind: str) -> dict | None:
        if self.selected_id is None:
            return None
        detail = self.query_one("#board-detail", Static)
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.post(
                    f"{self.url}/api/v1/monitor/action",
                    json={"type": kind, "id": self.selected_id},
                )
                data = resp.json()
        except Exception as e:
            detail.update(f"[red]Action failed: {e}[/red]")
            return None

        if kind == "show-results":
            results = data.get("results")
            detail.update(
                f"[bold]── Results [{self.selected_id}] ──[/bold]\n{results}"
                if results else f"[dim]No results for {self.selected_id} yet[/dim]"
            )
        else:
            detail.update(f"[dim]{kind}: {self.selected_id} ({'ok' if data.get('ok') else 'not found'})[/dim]")
            await self._poll()
        return data
