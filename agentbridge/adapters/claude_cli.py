"""
Claude Code CLI backend.

Runs ``claude`` inside a tmux session per user and polls the rendered pane.
Every capture goes through normalize -> diff -> noise filter -> classify
before anything is emitted.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from ..auto_actions import AutoActionRule, AutoActionTracker, DEFAULT_RULES, Step
from ..classifier import StatusTracker, is_status_output
from ..diff import get_new_content
from ..errors import BackendError, TerminalError
from ..events import AgentEvent, EventKind
from ..installer import InstallManager
from ..logging_config import get_logger
from ..storage import SessionStore, StoredSession
from ..terminal import TmuxTerminal
from ..terminal_text import clean_output
from ..tui_filter import CLAUDE_CODE_RULES, TuiRuleSet, strip_tui_elements
from .base import AgentAdapter, AgentSessionInfo, Capability, SessionState

logger = get_logger("agentbridge.claude")

POLL_INTERVAL = 0.3
CAPTURE_SCROLLBACK = 200
PANE_WIDTH = 300
PANE_HEIGHT = 50


@dataclass
class ClaudeSession:
    user_id: int
    work_dir: str
    name: str
    active: bool = True
    last_content: str = ""
    status: StatusTracker = field(default_factory=StatusTracker)
    auto_actions: AutoActionTracker = field(default_factory=AutoActionTracker)
    _poll_task: Optional[asyncio.Task] = field(default=None, repr=False)
    _action_tasks: List[asyncio.Task] = field(default_factory=list, repr=False)


def _parse_time(value: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None


class ClaudeCliAdapter(AgentAdapter):
    name = "claude"
    label = "Claude Code"
    capabilities = Capability.MODELS | Capability.KEYS | Capability.FULL_OUTPUT
    outputs_deltas = True

    def __init__(
        self,
        terminal: TmuxTerminal,
        installer: InstallManager,
        store: SessionStore,
        rules: TuiRuleSet = CLAUDE_CODE_RULES,
        auto_action_rules: Optional[Sequence[AutoActionRule]] = None,
        poll_interval: float = POLL_INTERVAL,
        default_work_dir: str = "/workspace",
    ):
        super().__init__()
        self.terminal = terminal
        self.installer = installer
        self.store = store
        self.rules = rules
        self.auto_action_rules = list(DEFAULT_RULES if auto_action_rules is None else auto_action_rules)
        self.poll_interval = poll_interval
        self.default_work_dir = default_work_dir
        self._sessions: dict = {}

    @staticmethod
    def session_name(user_id: int) -> str:
        return f"claude-{user_id}"

    def get_session(self, user_id: int) -> Optional[ClaudeSession]:
        return self._sessions.get(user_id)

    # ─── Lifecycle ────────────────────────────────────────────────────

    async def start(self, user_id: int, work_dir: str, instruction: Optional[str] = None):
        await self.stop(user_id)
        args = [instruction] if instruction else []
        await self._launch(user_id, work_dir, args)
        self.store.save(StoredSession.new(
            self.session_name(user_id),
            instruction or f"Session {self.session_name(user_id)}",
        ))

    async def resume_session(self, user_id: int, session_id: str, work_dir: Optional[str] = None):
        # claude --resume is per working directory; the id only picks the user
        current = self._sessions.get(user_id)
        work_dir = work_dir or (current.work_dir if current else self.default_work_dir)
        await self.stop(user_id)
        logger.info(f"Resuming session {session_id} in {work_dir}")
        await self._launch(user_id, work_dir, ["--resume"])

    async def _launch(self, user_id: int, work_dir: str, args: List[str]):
        self._set_state(user_id, SessionState.STARTING)
        try:
            if not self.installer.is_installed("claude"):
                await self._emit_output(user_id, "Installing Claude Code...", notice=True)
                await self.installer.install("claude")

            name = self.session_name(user_id)
            log = logger.for_session(user_id, self.name)
            log.info(f"Starting tmux session {name}", fields={"work_dir": work_dir})
            await self.terminal.destroy(name)

            command = [self.installer.tool_command("claude"), "--dangerously-skip-permissions", *args]
            try:
                await self.terminal.create(name, command, cwd=work_dir, width=PANE_WIDTH, height=PANE_HEIGHT)
            except TerminalError as e:
                raise BackendError(f"Failed to start Claude session: {e}")
        except Exception:
            self._set_state(user_id, SessionState.ABSENT)
            raise

        session = ClaudeSession(
            user_id=user_id,
            work_dir=work_dir,
            name=name,
            auto_actions=AutoActionTracker(rules=list(self.auto_action_rules)),
        )
        self._sessions[user_id] = session
        session._poll_task = asyncio.create_task(self._poll_loop(session))
        self._set_state(user_id, SessionState.ACTIVE)
        await self._emit(EventKind.STARTED, user_id)

    async def stop(self, user_id: int):
        session = self._sessions.get(user_id)
        if not session:
            return

        logger.for_session(user_id, self.name).info("Stopping session")
        self._set_state(user_id, SessionState.STOPPING)
        self._teardown(session)
        await self.terminal.destroy(session.name)
        self.store.remove(session.name)
        self._set_state(user_id, SessionState.ABSENT)
        await self._emit(EventKind.STOPPED, user_id)

    def _teardown(self, session: ClaudeSession):
        session.active = False
        if self._sessions.get(session.user_id) is session:
            del self._sessions[session.user_id]

        current = asyncio.current_task()
        tasks = [session._poll_task, *session._action_tasks]
        for task in tasks:
            if task is not None and task is not current and not task.done():
                task.cancel()
        session._action_tasks.clear()

    def is_active(self, user_id: int) -> bool:
        session = self._sessions.get(user_id)
        return bool(session and session.active)

    # ─── Polling ──────────────────────────────────────────────────────

    async def _poll_loop(self, session: ClaudeSession):
        while session.active:
            try:
                await self.poll_once(session)
                await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Poll error for user {session.user_id}: {e}")
                await asyncio.sleep(1)

    async def poll_once(self, session: ClaudeSession):
        """Capture the pane once and emit whatever is new."""
        raw = await self.terminal.capture_pane(session.name, with_ansi=True, scrollback=CAPTURE_SCROLLBACK)
        if not raw:
            if not await self.terminal.exists(session.name):
                log = logger.for_session(session.user_id, self.name)
                log.info(f"tmux session {session.name} is gone, cleaning up")
                self._set_state(session.user_id, SessionState.CLOSED)
                self._teardown(session)
                self._set_state(session.user_id, SessionState.ABSENT)
                await self._emit(EventKind.CLOSED, session.user_id)
            return

        content = clean_output(raw)
        if content == session.last_content:
            return

        new_part = get_new_content(session.last_content, content)
        session.last_content = content

        if new_part:
            logger.debug(f"Raw output ({len(new_part)}):\n{new_part}")
            filtered = strip_tui_elements(new_part, self.rules)
            if not filtered:
                logger.debug("Output filtered out completely")
            elif is_status_output(filtered):
                if session.status.should_emit(filtered):
                    await self._notify(AgentEvent.status(session.user_id, filtered))
            else:
                session.status.reset()
                await self._emit_output(session.user_id, filtered)

        for rule in session.auto_actions.observe(content, new_part):
            task = asyncio.create_task(self._run_steps(session, rule.steps))
            session._action_tasks.append(task)
            task.add_done_callback(
                lambda t, s=session: s._action_tasks.remove(t) if t in s._action_tasks else None
            )

    async def _run_steps(self, session: ClaudeSession, steps: Sequence[Step]):
        for step in steps:
            if not session.active:
                return
            if isinstance(step, (int, float)):
                await asyncio.sleep(step)
                continue
            try:
                await self.terminal.send_keys(session.name, step)
            except TerminalError as e:
                logger.warning(f"Auto action key {step} failed: {e}")
                return

    # ─── Input ────────────────────────────────────────────────────────

    async def _send_key(self, user_id: int, key: str) -> Optional[str]:
        session = self._sessions.get(user_id)
        if not session or not session.active:
            return "No active session"
        try:
            await self.terminal.send_keys(session.name, key)
        except TerminalError as e:
            logger.error(f"send_keys {key} failed: {e}")
            return str(e)
        return None

    async def send_input(self, user_id: int, text: str) -> bool:
        session = self._sessions.get(user_id)
        if not session or not session.active:
            logger.info(f"send_input: no active session for user {user_id}")
            return False
        try:
            await self.terminal.send_keys(session.name, text, literal=True)
            await self.terminal.send_keys(session.name, "Enter")
        except TerminalError as e:
            logger.error(f"send_input failed: {e}")
            return False
        return True

    async def send_signal(self, user_id: int, signal: str = "SIGINT") -> bool:
        if signal != "SIGINT":
            return False
        return await self._send_key(user_id, "C-c") is None

    async def send_enter(self, user_id: int) -> Optional[str]:
        return await self._send_key(user_id, "Enter")

    async def send_arrow(self, user_id: int, direction: str) -> Optional[str]:
        key = direction.capitalize()
        if key not in ("Up", "Down", "Left", "Right"):
            return f"Unknown direction: {direction}"
        return await self._send_key(user_id, key)

    async def send_tab(self, user_id: int) -> Optional[str]:
        return await self._send_key(user_id, "Tab")

    async def set_model(self, user_id: int, model: str) -> Optional[str]:
        # The CLI switches models through its own slash command
        if not await self.send_input(user_id, f"/model {model}"):
            return "No active session"
        return None

    def get_model(self, user_id: int) -> Optional[str]:
        return None

    async def get_full_output(self, user_id: int, lines: int = 500) -> Optional[str]:
        session = self._sessions.get(user_id)
        if not session or not session.active:
            return None
        raw = await self.terminal.capture_pane(session.name, with_ansi=False, scrollback=lines)
        if not raw:
            return None
        return clean_output(raw)

    async def list_sessions(self) -> List[AgentSessionInfo]:
        return [
            AgentSessionInfo(
                id=s.id,
                title=s.title,
                created_at=_parse_time(s.created_at),
                updated_at=_parse_time(s.updated_at),
            )
            for s in self.store.load()
        ]
