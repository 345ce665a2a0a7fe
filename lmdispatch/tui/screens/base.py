"""
Base class for lmdispatch TUI panes.
Panes inherit from DispatchPane, which provides:
  - refresh_content() hook (called by the app-level refresh action)
  - a section header helper
"""
from __future__ import annotations

from textual.widget import Widget
from textual.widgets import Static


class DispatchPane(Widget):
    """
    Base widget for TUI panel content.
    Subclass this, implement compose() and optionally refresh_content().
    """

    DEFAULT_CSS = """
    DispatchPane {
        height: 1fr;
        width: 1fr;
    }
    """

    def refresh_content(self) -> None:
        """Called by the app to request a data refresh. Override in subclasses."""
        self.refresh()

    @staticmethod
    def section(title: str) -> Static:
        """Return a styled section header widget."""
        return Static(f"[bold green]── {title} ──[/bold green]", markup=True)
