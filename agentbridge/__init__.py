"""
Agent Bridge - drive Claude Code or OpenCode from Telegram.

Turns the re-rendering terminal pane (or SSE stream) of an interactive coding
agent into a short, ordered series of chat messages and edits.
"""
__version__ = "0.3.0"
