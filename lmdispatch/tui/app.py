"""
lmdispatch board — watch the line.
Textual TUI over a running lmdispatch server.
Entry point: lmdispatch board (alias: monitor, tui)
"""
from __future__ import annotations

from typing import ClassVar

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.widgets import Footer, Header

from lmdispatch.tui.screens.board import BoardPane


class DispatchBoardApp(App):
    """Live conversation board."""

    CSS = """
    #board-status { height: 1; padding: 0 1; }
    #board-scroll { height: 1fr; padding: 0 1; }
    #board-detail { height: auto; max-height: 12; padding: 0 1; border-top: solid green; }
    """

    TITLE = "lmdispatch board"
    SUB_TITLE = "dial out · watch the line"

    BINDINGS: ClassVar[list[Binding]] = [
        Binding("q", "quit", "Disconnect", priority=True),
        Binding("r", "refresh_all", "Refresh", show=True),
        Binding("up,k", "select(-1)", "Up", show=False),
        Binding("down,j", "select(1)", "Down", show=False),
        Binding("c", "monitor_action('cancel-conversation')", "Cancel", show=True),
        Binding("d", "monitor_action('delete-conversation')", "Delete", show=True),
        Binding("v", "monitor_action('show-results')", "Results", show=True),
    ]

    def __init__(self, url: str, **kwargs):
        super().__init__(**kwargs)
        self.url = url

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        yield BoardPane(self.url, id="board")
        yield Footer()

    def action_refresh_all(self) -> None:
        self.query_one(BoardPane).refresh_content()

    def action_select(self, step: int) -> None:
        self.query_one(BoardPane).move_selection(step)

    async def action_monitor_action(self, kind: str) -> None:
        await self.query_one(BoardPane).send_action(kind)
