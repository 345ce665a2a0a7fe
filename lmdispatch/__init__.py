"""lmdispatch — dispatch autonomous tool-calling LM conversations and watch them work."""

__version__ = "0.3.0"
