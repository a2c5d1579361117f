"""
Common interface for agent backends.

An adapter owns at most one session per user and reports everything that
happens through ``AgentEvent`` callbacks. Optional features are advertised
through ``Capability`` flags; calling an unsupported method returns an error
string instead of raising.
"""
import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, Flag, auto
from typing import Callable, Dict, List, Optional

from ..events import AgentEvent, EventKind
from ..logging_config import get_logger

logger = get_logger("agentbridge.adapters")

EventCallback = Callable[[AgentEvent], object]


class Capability(Flag):
    NONE = 0
    MODELS = auto()
    KEYS = auto()
    FULL_OUTPUT = auto()
    QUESTIONS = auto()


class SessionState(str, Enum):
    ABSENT = "absent"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"
    CLOSED = "closed"


@dataclass
class AgentSessionInfo:
    """A session that can be listed and resumed."""
    id: str
    title: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class AgentAdapter(ABC):
    name: str = ""
    label: str = ""
    capabilities: Capability = Capability.NONE
    # True when OUTPUT events carry only the text that is new since the last one
    outputs_deltas: bool = False

    def __init__(self):
        self._event_callbacks: List[EventCallback] = []
        self._states: Dict[int, SessionState] = {}

    # ─── Events ───────────────────────────────────────────────────────

    def add_event_callback(self, callback: EventCallback):
        self._event_callbacks.append(callback)

    def remove_event_callback(self, callback: EventCallback):
        if callback in self._event_callbacks:
            self._event_callbacks.remove(callback)

    async def _notify(self, event: AgentEvent):
        if not event.agent:
            event.agent = self.name
        for callback in self._event_callbacks:
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"[{self.name}] Event callback error ({event.kind.value}): {e}")

    async def _emit_output(self, user_id: int, text: str, notice: bool = False):
        await self._notify(AgentEvent.output(user_id, text, notice=notice))

    async def _emit(self, kind: EventKind, user_id: int):
        await self._notify(AgentEvent.lifecycle(kind, user_id))

    # ─── State ────────────────────────────────────────────────────────

    def state(self, user_id: int) -> SessionState:
        return self._states.get(user_id, SessionState.ABSENT)

    def _set_state(self, user_id: int, state: SessionState):
        if state == SessionState.ABSENT:
            self._states.pop(user_id, None)
        else:
            self._states[user_id] = state
        logger.debug(f"[{self.name}] user {user_id} -> {state.value}")

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    # ─── Core ─────────────────────────────────────────────────────────

    @abstractmethod
    async def start(self, user_id: int, work_dir: str, instruction: Optional[str] = None):
        """Start a session, replacing any session the user already has.

        Raises ``BackendError`` when the backend cannot be made available.
        """

    @abstractmethod
    async def stop(self, user_id: int):
        """Stop the user's session. Does nothing if there is none."""

    @abstractmethod
    def is_active(self, user_id: int) -> bool:
        ...

    @abstractmethod
    async def send_input(self, user_id: int, text: str) -> bool:
        """Forward user text. Returns False if there is no active session."""

    @abstractmethod
    async def send_signal(self, user_id: int, signal: str = "SIGINT") -> bool:
        ...

    @abstractmethod
    async def list_sessions(self) -> List[AgentSessionInfo]:
        ...

    @abstractmethod
    async def resume_session(self, user_id: int, session_id: str, work_dir: Optional[str] = None):
        ...

    # ─── Optional capabilities ────────────────────────────────────────

    def _unsupported(self, what: str) -> str:
        return f"{self.label} does not support {what}"

    async def set_model(self, user_id: int, model: str) -> Optional[str]:
        """Switch model. Returns an error message, or None on success."""
        return self._unsupported("model selection")

    def get_model(self, user_id: int) -> Optional[str]:
        return None

    async def get_available_models(self) -> List[str]:
        return []

    async def send_enter(self, user_id: int) -> Optional[str]:
        return self._unsupported("key presses")

    async def send_arrow(self, user_id: int, direction: str) -> Optional[str]:
        return self._unsupported("key presses")

    async def send_tab(self, user_id: int) -> Optional[str]:
        return self._unsupported("key presses")

    async def get_full_output(self, user_id: int, lines: int = 500) -> Optional[str]:
        return None

    async def flush_output(self, user_id: int):
        """Emit any output the adapter is still holding back."""

    async def answer_question(self, user_id: int, request_id: str, answers: List[str]) -> Optional[str]:
        return self._unsupported("answering questions")

    async def shutdown(self):
        """Stop every session this adapter owns."""
        for user_id in list(self._states):
            try:
                await self.stop(user_id)
            except Exception as e:
                logger.error(f"[{self.name}] Failed to stop session for user {user_id}: {e}")
