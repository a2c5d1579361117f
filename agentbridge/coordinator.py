"""
Per-user routing between chat users and agent backends.

The coordinator owns one ``UserContext`` per chat user, starts and stops
sessions on the selected backend, and turns adapter events into delivery
queue calls.
"""
import re
from typing import Dict, Optional

from .adapters import AdapterRegistry, AgentAdapter, Capability
from .events import AgentEvent, EventKind
from .logging_config import get_logger
from .storage import UserConfig, UserStorage
from .telegram.delivery import DeliveryQueue
from .telegram.models import PendingQuestion, UserContext

logger = get_logger("agentbridge.coordinator")

START_PHRASE_RE = re.compile(r"^claude\s+(.+)", re.IGNORECASE | re.DOTALL)


def parse_start_phrase(text: str) -> Optional[str]:
    """The instruction in ``claude <instruction>``, or None."""
    match = START_PHRASE_RE.match(text.strip())
    if not match:
        return None
    return match.group(1).strip() or None


class Coordinator:
    def __init__(
        self,
        registry: AdapterRegistry,
        delivery: DeliveryQueue,
        users: UserStorage,
        default_work_dir: str = "/workspace",
    ):
        self.registry = registry
        self.delivery = delivery
        self.users = users
        self.default_work_dir = default_work_dir
        self._contexts: Dict[int, UserContext] = {}
        registry.add_event_callback(self.handle_event)

    def context(self, user_id: int) -> UserContext:
        ctx = self._contexts.get(user_id)
        if ctx is None:
            ctx = UserContext(user_id=user_id, agent=self.registry.default)
            self._contexts[user_id] = ctx
        return ctx

    # ─── Work directory ───────────────────────────────────────────────

    def user_config(self, user_id: int) -> Optional[UserConfig]:
        return self.users.get_user(user_id)

    def work_dir(self, user_id: int) -> str:
        config = self.users.get_user(user_id)
        return config.work_dir if config else self.default_work_dir

    def set_work_dir(self, user_id: int, work_dir: str) -> UserConfig:
        return self.users.save_work_dir(user_id, work_dir)

    async def forget(self, user_id: int) -> bool:
        """Stop any session and delete the stored work directory."""
        await self.stop(user_id)
        return self.users.delete_user(user_id)

    # ─── Agents ───────────────────────────────────────────────────────

    def select_agent(self, user_id: int, name: str) -> str:
        """Pick the backend for the next start. Raises KeyError if unknown."""
        name = name.strip().lower()
        if name not in self.registry.names:
            raise KeyError(f"Unknown agent: {name}. Available: {', '.join(self.registry.names)}")
        self.context(user_id).agent = name
        return name

    def selected_adapter(self, user_id: int) -> AgentAdapter:
        return self.registry.get(self.context(user_id).agent)

    def active_adapter(self, user_id: int) -> Optional[AgentAdapter]:
        return self.registry.find_active(user_id)

    def is_active(self, user_id: int) -> bool:
        return self.active_adapter(user_id) is not None

    # ─── Sessions ─────────────────────────────────────────────────────

    async def start(self, user_id: int, instruction: Optional[str] = None) -> AgentAdapter:
        """Start the selected agent. Raises ``BackendError`` if it can't run."""
        adapter = self.selected_adapter(user_id)
        active = self.active_adapter(user_id)
        if active is not None and active is not adapter:
            logger.for_session(user_id, active.name).info(f"Stopping before starting {adapter.name}")
            await active.stop(user_id)

        self.context(user_id).pending_question = None
        self.delivery.mark_new_turn(user_id)
        await adapter.start(user_id, self.work_dir(user_id), instruction)
        return adapter

    async def resume(self, user_id: int, session_id: str) -> AgentAdapter:
        adapter = self.selected_adapter(user_id)
        active = self.active_adapter(user_id)
        if active is not None and active is not adapter:
            await active.stop(user_id)

        self.context(user_id).pending_question = None
        self.delivery.mark_new_turn(user_id)
        await adapter.resume_session(user_id, session_id, self.work_dir(user_id))
        return adapter

    async def stop(self, user_id: int) -> bool:
        adapter = self.active_adapter(user_id)
        if adapter is None:
            return False
        await adapter.stop(user_id)
        self.context(user_id).pending_question = None
        self.delivery.clear_status(user_id)
        return True

    async def send_input(self, user_id: int, text: str) -> bool:
        """Forward user text to the running session as a new turn."""
        adapter = self.active_adapter(user_id)
        if adapter is None:
            return False
        # The previous answer's tail has to land in the previous turn
        await adapter.flush_output(user_id)
        self.delivery.mark_new_turn(user_id)
        return await adapter.send_input(user_id, text)

    async def interrupt(self, user_id: int) -> bool:
        adapter = self.active_adapter(user_id)
        if adapter is None:
            return False
        return await adapter.send_signal(user_id, "SIGINT")

    async def answer(self, user_id: int, question: int, option: int) -> str:
        """Record a ``qa_`` button press. Returns the text for the button toast."""
        ctx = self.context(user_id)
        pending = ctx.pending_question
        label = pending.option_label(question, option) if pending else None
        if pending is None or label is None:
            return "This question is no longer open"

        pending.record(question, label)
        if not pending.is_complete:
            return f"Selected: {label}"

        ctx.pending_question = None
        adapter = self.registry.get(pending.agent)
        if adapter.supports(Capability.QUESTIONS):
            error = await adapter.answer_question(user_id, pending.request_id, pending.ordered_answers())
            if error:
                return error
            self.delivery.mark_new_turn(user_id)
            return f"Answered: {label}"

        number = str(option + 1)
        if not await self.send_input(user_id, number):
            return "No active session"
        return f"Sent: {number}"

    # ─── Events ───────────────────────────────────────────────────────

    def _appends(self, event: AgentEvent) -> bool:
        if not event.agent:
            return False
        try:
            return self.registry.get(event.agent).outputs_deltas
        except KeyError:
            return False

    async def handle_event(self, event: AgentEvent):
        user_id = event.user_id
        kind = event.kind

        if kind == EventKind.OUTPUT:
            if not event.text.strip():
                return
            if event.notice:
                self.delivery.push_notice(user_id, event.text)
            else:
                self.delivery.push_output(user_id, event.text, append=self._appends(event))
        elif kind == EventKind.STATUS:
            self.delivery.push_status(user_id, event.text)
        elif kind == EventKind.QUESTION:
            self.context(user_id).pending_question = PendingQuestion(
                request_id=event.request_id or "",
                agent=event.agent,
                questions=list(event.questions),
            )
            self.delivery.push_question(user_id, event.questions)
        elif kind == EventKind.STOPPED:
            self.context(user_id).pending_question = None
            self.delivery.clear_status(user_id)
        elif kind == EventKind.CLOSED:
            self.context(user_id).pending_question = None
            self.delivery.clear_status(user_id)
            self.delivery.push_notice(user_id, "Session ended")
        elif kind == EventKind.ERROR:
            self.delivery.push_notice(user_id, f"Agent error: {event.error}")
        elif kind == EventKind.STARTED:
            logger.for_session(user_id, event.agent).info("Session started")

    async def shutdown(self):
        await self.registry.shutdown()
        await self.delivery.close()
