#!/usr/bin/env python3
"""
Agent Bridge - drive Claude Code or OpenCode from a Telegram chat.
"""
import asyncio
import signal
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from agentbridge import __version__

console = Console()


def build_registry(config):
    """One adapter per backend, created on first use."""
    from agentbridge.adapters import AdapterRegistry, ClaudeCliAdapter, OpenCodeAdapter
    from agentbridge.installer import InstallManager
    from agentbridge.storage import SessionStore
    from agentbridge.terminal import TmuxTerminal

    installer = InstallManager(npm_prefix=config.npm_prefix, server_url=config.opencode_url)
    store = SessionStore(config.data_path / "sessions.json")

    factories = {
        "claude": lambda: ClaudeCliAdapter(
            TmuxTerminal(), installer, store, default_work_dir=config.work_dir,
        ),
        "opencode": lambda: OpenCodeAdapter(
            installer,
            base_url=config.opencode_url,
            username=config.opencode_username,
            password=config.opencode_password,
            default_work_dir=config.work_dir,
        ),
    }
    return AdapterRegistry(factories, default=config.default_agent)


def load_config():
    from agentbridge.config import BridgeConfig
    from agentbridge.errors import ConfigError

    try:
        return BridgeConfig.from_env()
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


async def serve(config):
    from agentbridge.storage import MessageTracker, UserStorage
    from agentbridge.telegram.bot import TelegramBot

    data = config.data_path
    data.mkdir(parents=True, exist_ok=True)
    bot = TelegramBot(
        config,
        build_registry(config),
        UserStorage(data / "agentbridge.db"),
        MessageTracker(data / "messages.json"),
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await bot.start()
    try:
        await stop.wait()
    finally:
        console.print("\n[dim]Shutting down...[/dim]")
        await bot.stop()


@click.group()
@click.version_option(version=__version__)
def cli():
    """Agent Bridge - drive Claude Code or OpenCode from Telegram"""
    pass


@cli.command()
def run():
    """Start the Telegram bot"""
    from agentbridge.logging_config import setup_logging

    setup_logging()
    config = load_config()

    console.print(Panel.fit(
        f"[bold cyan]Agent Bridge[/bold cyan] v{__version__}\n"
        f"[dim]Allowed users: {', '.join(str(u) for u in config.allowed_user_ids)}\n"
        f"Work dir: {config.work_dir}\n"
        f"Default agent: {config.default_agent}[/dim]",
        border_style="cyan"
    ))
    console.print("[dim]Press Ctrl+C to stop[/dim]\n")

    asyncio.run(serve(config))


@cli.command()
def check():
    """Show configuration and whether the agent tools are available"""
    from agentbridge.installer import InstallManager

    config = load_config()
    installer = InstallManager(npm_prefix=config.npm_prefix, server_url=config.opencode_url)

    table = Table(title="Agent Bridge Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="white")
    for key, value in config.to_safe_dict().items():
        table.add_row(key, str(value))
    console.print(table)

    tools = Table(title="Agent Tools")
    tools.add_column("Tool", style="cyan")
    tools.add_column("Status", justify="center")
    tools.add_column("Command", style="dim")
    for tool in ("claude", "opencode"):
        installed = installer.is_installed(tool)
        tools.add_row(
            tool,
            "[green]Installed[/green]" if installed else "[yellow]Missing[/yellow]",
            installer.tool_command(tool) if installed else "",
        )
    console.print(tools)

    running = asyncio.run(installer.is_server_running())
    status = "[green]✓[/green] reachable" if running else "[dim]not running[/dim]"
    console.print(f"OpenCode server at {config.opencode_url}: {status}")


if __name__ == "__main__":
    cli()
