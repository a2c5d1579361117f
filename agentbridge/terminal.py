"""
Thin async wrapper around the tmux CLI.

The poll adapter only needs create/destroy/send_keys/capture_pane/list_active;
everything else about tmux stays out of the core.
"""
import asyncio
import shlex
from typing import List, Optional, Sequence, Set, Tuple

from .errors import TerminalError
from .logging_config import get_logger

logger = get_logger("agentbridge.terminal")

TMUX_TIMEOUT = 5.0


class TmuxTerminal:
    def __init__(self, binary: str = "tmux", timeout: float = TMUX_TIMEOUT):
        self.binary = binary
        self.timeout = timeout

    async def _run(self, *args: str) -> Tuple[int, str, str]:
        """Run one tmux command and return (returncode, stdout, stderr)."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise TerminalError(f"{self.binary} not found in PATH")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TerminalError(f"tmux {args[0]} timed out after {self.timeout}s")

        return (
            proc.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def create(
        self,
        name: str,
        command: Sequence[str],
        cwd: Optional[str] = None,
        width: int = 300,
        height: int = 50,
    ):
        """Start ``command`` in a new detached session called ``name``."""
        args = ["new-session", "-d", "-s", name, "-x", str(width), "-y", str(height)]
        if cwd:
            args += ["-c", cwd]
        args.append(shlex.join(command))

        code, _, stderr = await self._run(*args)
        if code != 0:
            raise TerminalError(f"Failed to create tmux session {name}: {stderr.strip()}")
        logger.info(f"tmux session {name} created")

    async def destroy(self, name: str):
        """Kill the session if it exists."""
        try:
            await self._run("kill-session", "-t", name)
        except TerminalError as e:
            logger.warning(f"kill-session {name} failed: {e}")

    async def send_keys(self, name: str, keys: str, literal: bool = False):
        """Send text (``literal=True``) or a tmux key name such as ``Enter``."""
        args = ["send-keys", "-t", name]
        if literal:
            args.append("-l")
        args.append(keys)
        code, _, stderr = await self._run(*args)
        if code != 0:
            raise TerminalError(f"send-keys to {name} failed: {stderr.strip()}")

    async def capture_pane(self, name: str, with_ansi: bool = True, scrollback: int = 200) -> str:
        """Return the rendered pane, or an empty string if it cannot be read."""
        args = ["capture-pane", "-t", name, "-p"]
        if with_ansi:
            args.append("-e")
        args += ["-S", f"-{scrollback}"]
        try:
            code, stdout, _ = await self._run(*args)
        except TerminalError as e:
            logger.warning(f"capture-pane {name} failed: {e}")
            return ""
        return stdout if code == 0 else ""

    async def list_active(self) -> List[str]:
        try:
            code, stdout, _ = await self._run("list-sessions", "-F", "#{session_name}")
        except TerminalError:
            return []
        if code != 0:
            return []
        return [line for line in stdout.strip().split("\n") if line]

    async def exists(self, name: str) -> bool:
        active: Set[str] = set(await self.list_active())
        return name in active
