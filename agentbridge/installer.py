"""
Installation of agent CLIs and supervision of the OpenCode server process.
"""
import asyncio
import os
import shutil
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import urlparse

import httpx

from .errors import InstallError, ServerStartError
from .logging_config import get_logger

logger = get_logger("agentbridge.installer")

TOOL_PACKAGES: Dict[str, str] = {
    "claude": "@anthropic-ai/claude-code",
    "opencode": "opencode-ai",
}

INSTALL_TIMEOUT = 120.0
HEALTH_TIMEOUT = 2.0
SERVER_START_ATTEMPTS = 15


class InstallManager:
    def __init__(
        self,
        npm_prefix: Optional[str] = None,
        server_url: str = "http://localhost:4096",
        env: Optional[Dict[str, str]] = None,
        sleep=asyncio.sleep,
    ):
        self.env = dict(os.environ if env is None else env)
        home = self.env.get("HOME", str(Path.home()))
        self.npm_prefix = npm_prefix or f"{home}/.npm-global"
        self.server_url = server_url.rstrip("/")
        self._sleep = sleep
        self._server_proc: Optional[asyncio.subprocess.Process] = None
        self._pump_tasks = []

    # ─── Tools ────────────────────────────────────────────────────────

    def _custom_binary(self, tool: str) -> Optional[str]:
        """Path from ``<TOOL>_BIN`` if it points at an existing file."""
        path = self.env.get(f"{tool.upper()}_BIN")
        if path and Path(path).exists():
            return path
        return None

    def _search_path(self) -> str:
        return f"{self.npm_prefix}/bin{os.pathsep}{self.env.get('PATH', '')}"

    def is_installed(self, tool: str) -> bool:
        if self._custom_binary(tool):
            return True
        return shutil.which(tool, path=self._search_path()) is not None

    def tool_command(self, tool: str) -> str:
        """Executable to run for ``tool``."""
        custom = self._custom_binary(tool)
        if custom:
            return custom
        return shutil.which(tool, path=self._search_path()) or tool

    async def install(self, tool: str):
        """Install ``tool`` globally with npm into the configured prefix."""
        package = TOOL_PACKAGES.get(tool)
        if not package:
            raise InstallError(f"Unknown tool: {tool}. Available: {', '.join(TOOL_PACKAGES)}")

        logger.info(f"Installing {tool} ({package})...")
        env = dict(self.env, NPM_CONFIG_PREFIX=self.npm_prefix)
        try:
            proc = await asyncio.create_subprocess_exec(
                "npm", "install", "-g", package,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise InstallError(f"Failed to install {tool}: npm not found")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=INSTALL_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise InstallError(f"Failed to install {tool}: timed out after {int(INSTALL_TIMEOUT)}s")

        if proc.returncode != 0:
            err = stderr.decode("utf-8", errors="replace").strip()
            logger.error(f"Failed to install {tool}: {err}")
            raise InstallError(f"Failed to install {tool}: {err or f'exit code {proc.returncode}'}")

        out = stdout.decode("utf-8", errors="replace").strip()
        if out:
            logger.debug(out)
        logger.info(f"{tool} installed successfully")

    async def ensure_installed(self, tool: str) -> bool:
        """Install if missing. Returns True if it was already there."""
        if self.is_installed(tool):
            return True
        await self.install(tool)
        return False

    # ─── OpenCode server ──────────────────────────────────────────────

    async def is_server_running(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=HEALTH_TIMEOUT) as client:
                response = await client.get(f"{self.server_url}/global/health")
            return response.is_success
        except httpx.HTTPError:
            return False

    async def _pump(self, stream: asyncio.StreamReader, level: str):
        while True:
            line = await stream.readline()
            if not line:
                break
            getattr(logger, level)(f"[opencode] {line.decode('utf-8', errors='replace').rstrip()}")

    async def ensure_server_running(self):
        """Start ``opencode serve`` unless a healthy server already answers."""
        if await self.is_server_running():
            return

        if self._server_proc and self._server_proc.returncode is None:
            # Running but not answering
            self._server_proc.kill()
            await self._server_proc.wait()
            self._server_proc = None

        port = str(urlparse(self.server_url).port or 4096)
        command = self.tool_command("opencode")
        logger.info(f"Starting OpenCode server on port {port} ({command})")

        env = dict(self.env, PATH=self._search_path())
        try:
            self._server_proc = await asyncio.create_subprocess_exec(
                command, "serve", "--hostname", "127.0.0.1", "--port", port,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ServerStartError(f"OpenCode server failed to start: {e}")

        self._pump_tasks = [
            asyncio.create_task(self._pump(self._server_proc.stdout, "info")),
            asyncio.create_task(self._pump(self._server_proc.stderr, "warning")),
        ]

        for _ in range(SERVER_START_ATTEMPTS):
            await self._sleep(1.0)
            if await self.is_server_running():
                logger.info("OpenCode server ready")
                return
            if self._server_proc.returncode is not None:
                raise ServerStartError(
                    f"OpenCode server failed to start (exit code {self._server_proc.returncode})"
                )

        raise ServerStartError(
            f"OpenCode server did not become ready within {SERVER_START_ATTEMPTS} seconds"
        )

    async def stop_server(self):
        proc, self._server_proc = self._server_proc, None
        if proc and proc.returncode is None:
            logger.info("Stopping OpenCode server...")
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
        for task in self._pump_tasks:
            task.cancel()
        self._pump_tasks = []
