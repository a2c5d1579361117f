"""
Command definitions and message formatting helpers for the Telegram bot.
"""
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple
import html

from ..adapters import AgentSessionInfo


@dataclass
class BotCommand:
    """Telegram bot command definition."""
    command: str
    description: str


COMMANDS: List[BotCommand] = [
    BotCommand("start", "Welcome message"),
    BotCommand("help", "List all commands"),
    BotCommand("setup", "Set work directory - /setup <path>"),
    BotCommand("status", "Work dir, agent and session state"),
    BotCommand("claude", "Start the selected agent - /claude [instruction]"),
    BotCommand("agent", "Select agent - /agent [claude|opencode]"),
    BotCommand("stop", "Stop the session"),
    BotCommand("c", "Send Ctrl+C"),
    BotCommand("y", "Answer yes"),
    BotCommand("n", "Answer no"),
    BotCommand("enter", "Press Enter"),
    BotCommand("up", "Press Up"),
    BotCommand("down", "Press Down"),
    BotCommand("tab", "Press Tab"),
    BotCommand("model", "Show or switch model - /model [name]"),
    BotCommand("sessions", "List saved sessions"),
    BotCommand("resume", "Resume a session - /resume <id>"),
    BotCommand("output", "Full terminal output"),
    BotCommand("clear", "Delete the bot's recent messages"),
    BotCommand("forget", "Stop and delete your work dir setting"),
]


def format_help_text() -> str:
    """Format the help message listing all commands."""
    lines = ["<b>Agent Bridge Commands</b>\n"]
    for cmd in COMMANDS:
        lines.append(f"/{cmd.command} - {html.escape(cmd.description)}")
    lines.append("\nOr send <code>claude &lt;instruction&gt;</code> to start with a task.")
    return "\n".join(lines)


def format_welcome(work_dir: Optional[str], default_work_dir: str, agent_label: str) -> str:
    if work_dir:
        return (
            "<b>Agent Bridge</b>\n\n"
            f"Work dir: <code>{html.escape(work_dir)}</code>\n"
            f"Agent: {html.escape(agent_label)}\n\n"
            "/claude - Start the agent\n"
            "/stop - Stop the agent\n"
            "/setup - Change work directory\n"
            "/status - Show status\n"
            "/help - All commands"
        )
    return (
        "<b>Agent Bridge</b>\n\n"
        "Send /setup to configure a work directory.\n"
        f"Or /claude to start with the default: <code>{html.escape(default_work_dir)}</code>"
    )


def format_status(
    work_dir: str,
    is_default: bool,
    agent_label: str,
    active_label: Optional[str],
    state: str,
    model: Optional[str] = None,
    cooldown: float = 0.0,
) -> str:
    lines = ["<b>Status</b>\n"]
    suffix = " (default)" if is_default else ""
    lines.append(f"Work dir: <code>{html.escape(work_dir)}</code>{suffix}")
    lines.append(f"Agent: {html.escape(agent_label)}")
    if active_label:
        lines.append(f"Session: running ({html.escape(active_label)})")
    else:
        lines.append(f"Session: {html.escape(state)}")
    if model:
        lines.append(f"Model: <code>{html.escape(model)}</code>")
    if cooldown > 0:
        lines.append(f"Rate limited: {cooldown:.0f}s left")
    return "\n".join(lines)


def format_agent_list(agents: Iterable[Tuple[str, str]], selected: str) -> str:
    lines = ["<b>Agents</b>\n"]
    for name, label in agents:
        marker = "[*]" if name == selected else "[ ]"
        lines.append(f"{marker} <code>{name}</code> - {html.escape(label)}")
    lines.append("\n/agent &lt;name&gt; to switch")
    return "\n".join(lines)


def format_session_list(sessions: List[AgentSessionInfo], limit: int = 10) -> str:
    """Format saved sessions as Telegram HTML."""
    if not sessions:
        return "No saved sessions."

    lines = [f"<b>Sessions ({len(sessions)})</b>\n"]
    for s in sessions[:limit]:
        when = s.updated_at or s.created_at
        stamp = f" - {when.strftime('%Y-%m-%d %H:%M')}" if when else ""
        lines.append(f"<code>{html.escape(s.id)}</code> {html.escape(s.title[:60])}{stamp}")
    if len(sessions) > limit:
        lines.append(f"... and {len(sessions) - limit} more")
    lines.append("\n/resume &lt;id&gt; to continue one")
    return "\n".join(lines)


def format_model_list(current: Optional[str], models: List[str], limit: int = 30) -> str:
    lines = [f"Current model: <code>{html.escape(current)}</code>" if current else "Current model: not set"]
    if models:
        lines.append(f"\n<b>Available ({len(models)})</b>")
        for model in models[:limit]:
            lines.append(f"<code>{html.escape(model)}</code>")
        if len(models) > limit:
            lines.append(f"... and {len(models) - limit} more")
    lines.append("\n/model &lt;name&gt; to switch")
    return "\n".join(lines)


def truncate_output(text: str, max_chars: int = 3500) -> str:
    """Keep the tail of long output for Telegram display."""
    if not text or not text.strip():
        return "(no output)"
    text = text.strip()
    if len(text) <= max_chars:
        return text
    tail = text[-max_chars:]
    newline = tail.find("\n")
    if 0 <= newline < len(tail) // 2:
        tail = tail[newline + 1:]
    omitted = text[:len(text) - len(tail)].count("\n") + 1
    return f"... ({omitted} lines omitted)\n{tail}"
