"""
Per-user delivery of agent output to Telegram.

Output for the current turn is edited into one chat message until it grows
past the message limit, at which point the finished part is committed and
the rest continues in a new message. Status lines live in a separate message
that is deleted as soon as real output arrives.

Each user has a job queue with at most one Bot API call in flight; every call
goes through the rate-limit governor.
"""
import asyncio
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Tuple

from telegram import InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import BadRequest

from ..debounce import Debouncer
from ..events import Question
from ..logging_config import get_logger
from ..storage import MessageTracker
from .rate_limiter import RateLimitGovernor

logger = get_logger("agentbridge.delivery")

MESSAGE_LIMIT = 4000
MAX_TRACKED_MESSAGES = 100
OUTPUT_DELAY = 0.5
STATUS_DELAY = 0.3
PARSE_MODE = "Markdown"

MIN_OPTIONS = 2
MAX_OPTIONS = 6
OPTION_LABEL_LENGTH = 30
QUESTION_LABEL_LENGTH = 60

_OPTION_RE = re.compile(r"^\s*(\d+)[.)]\s*(.+)$", re.MULTILINE)


def split_message(text: str, limit: int = MESSAGE_LIMIT) -> List[str]:
    """Split ``text`` into chunks of at most ``limit`` characters.

    Cuts after the last newline when it lies in the second half of the window,
    otherwise cuts hard at the limit. The chunks concatenate back to ``text``.
    """
    chunks = []
    rest = text
    while len(rest) > limit:
        cut = rest.rfind("\n", 0, limit)
        if cut < limit // 2:
            cut = limit
        else:
            cut += 1
        chunks.append(rest[:cut])
        rest = rest[cut:]
    chunks.append(rest)
    return chunks


def parse_options(text: str) -> List[Tuple[str, str]]:
    """Numbered choices like ``1. Yes`` / ``2) No`` found in the text.

    Returns nothing unless there are between 2 and 6 of them.
    """
    options = [(m.group(1), m.group(2).strip()[:OPTION_LABEL_LENGTH]) for m in _OPTION_RE.finditer(text)]
    if MIN_OPTIONS <= len(options) <= MAX_OPTIONS:
        return options
    return []


def options_keyboard(options: List[Tuple[str, str]]) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [InlineKeyboardButton(f"{number}. {label}", callback_data=f"opt_{number}")]
        for number, label in options
    ])


def question_text(question: Question) -> str:
    lines = []
    if question.header:
        lines.append(f"*{question.header}*")
    lines.append(question.question)
    for option in question.options:
        if option.description:
            lines.append(f"- {option.label}: {option.description}")
    return "\n".join(lines)


def question_keyboard(index: int, question: Question) -> Optional[InlineKeyboardMarkup]:
    if not question.options:
        return None
    return InlineKeyboardMarkup([
        [InlineKeyboardButton(option.label[:QUESTION_LABEL_LENGTH], callback_data=f"qa_{index}_{i}")]
        for i, option in enumerate(question.options)
    ])


@dataclass
class Turn:
    """Output accumulated since the user last sent input."""
    text: str = ""
    # Length of the prefix already closed into earlier messages
    committed: int = 0
    message_id: Optional[int] = None
    needs_new_message: bool = False

    def pending_text(self) -> str:
        return self.text[self.committed:]

    def close_at(self, position: int):
        """Stop editing the current message; text past ``position`` goes to a new one."""
        self.message_id = None
        self.committed = max(self.committed, position)


@dataclass
class DeliveryState:
    turn: Turn = field(default_factory=Turn)
    # Last output message delivered, across turns
    message_id: Optional[int] = None
    status_message_id: Optional[int] = None
    recent_message_ids: Deque[int] = field(default_factory=lambda: deque(maxlen=MAX_TRACKED_MESSAGES))

    @property
    def needs_new_message(self) -> bool:
        return self.turn.needs_new_message

    def track(self, message_id: int) -> bool:
        if message_id in self.recent_message_ids:
            return False
        self.recent_message_ids.append(message_id)
        return True


class _Channel:
    def __init__(self, user_id: int, output_delay: float, status_delay: float, queue: "DeliveryQueue"):
        self.state = DeliveryState()
        self.jobs: Deque[Tuple[str, object]] = deque()
        self.in_flight = False
        self.idle = asyncio.Event()
        self.idle.set()
        self.drain_task: Optional[asyncio.Task] = None
        self.output = Debouncer(
            output_delay,
            lambda turn: queue._submit(user_id, "output", turn),
            name=f"output-{user_id}",
        )
        self.status = Debouncer(
            status_delay,
            lambda text: queue._submit(user_id, "status", text),
            name=f"status-{user_id}",
        )


class DeliveryQueue:
    def __init__(
        self,
        bot,
        governor: Optional[RateLimitGovernor] = None,
        tracker: Optional[MessageTracker] = None,
        output_delay: float = OUTPUT_DELAY,
        status_delay: float = STATUS_DELAY,
        limit: int = MESSAGE_LIMIT,
    ):
        self.bot = bot
        self.governor = governor or RateLimitGovernor()
        self.tracker = tracker
        self.output_delay = output_delay
        self.status_delay = status_delay
        self.limit = limit
        self._channels: Dict[int, _Channel] = {}

    def _channel(self, user_id: int) -> _Channel:
        channel = self._channels.get(user_id)
        if channel is None:
            channel = _Channel(user_id, self.output_delay, self.status_delay, self)
            if self.tracker is not None:
                channel.state.recent_message_ids.extend(self.tracker.get(user_id))
            self._channels[user_id] = channel
        return channel

    def state(self, user_id: int) -> DeliveryState:
        return self._channel(user_id).state

    # ─── Producers ────────────────────────────────────────────────────

    def push_output(self, user_id: int, text: str, append: bool = False):
        """Add agent output to the current turn.

        ``append`` joins a delta onto what is already there; otherwise ``text``
        is the whole turn so far and replaces it.
        """
        channel = self._channel(user_id)
        turn = channel.state.turn
        if append:
            turn.text = f"{turn.text}\n{text}" if turn.text else text
        else:
            if turn.committed and not text.startswith(turn.text[:turn.committed]):
                # Not a continuation of what was already delivered
                turn.committed = 0
                turn.message_id = None
            turn.text = text
        channel.status.cancel()
        channel.output.push(turn)

    def push_status(self, user_id: int, text: str):
        self._channel(user_id).status.push(text)

    def push_notice(self, user_id: int, text: str):
        """Send ``text`` as its own message after any pending output."""
        channel = self._channel(user_id)
        self._flush_output(user_id, channel)
        turn = channel.state.turn
        self._submit(user_id, "notice", (text, turn, len(turn.text)))

    def push_question(self, user_id: int, questions: List[Question]):
        channel = self._channel(user_id)
        self._flush_output(user_id, channel)
        turn = channel.state.turn
        self._submit(user_id, "question", (questions, turn, len(turn.text)))

    def mark_new_turn(self, user_id: int):
        """The user sent input: the next output starts a fresh message."""
        channel = self._channel(user_id)
        self._flush_output(user_id, channel)
        channel.state.turn = Turn(needs_new_message=True)

    def clear_status(self, user_id: int):
        channel = self._channel(user_id)
        channel.status.cancel()
        self._drop_jobs(channel, "status")
        if channel.state.status_message_id is not None:
            self._submit(user_id, "delete_status", None)

    async def clear_messages(self, user_id: int) -> int:
        """Delete every tracked message for the user. Returns how many went."""
        channel = self._channel(user_id)
        channel.output.cancel()
        channel.status.cancel()
        done = asyncio.get_running_loop().create_future()
        self._submit(user_id, "clear", done)
        return await done

    async def flush(self, user_id: int):
        """Deliver anything pending for the user and wait until it is sent."""
        channel = self._channel(user_id)
        if channel.output.pending:
            channel.status.cancel()
            self._flush_output(user_id, channel)
        elif channel.status.pending:
            self._submit(user_id, "status", channel.status.take())
        await channel.idle.wait()

    async def close(self):
        for user_id in list(self._channels):
            try:
                await self.flush(user_id)
            except Exception as e:
                logger.error(f"Failed to flush output for user {user_id}: {e}")
        for channel in self._channels.values():
            channel.output.cancel()
            channel.status.cancel()

    def recent_message_ids(self, user_id: int) -> List[int]:
        return list(self._channel(user_id).state.recent_message_ids)

    def _flush_output(self, user_id: int, channel: _Channel):
        if channel.output.pending:
            self._submit(user_id, "output", channel.output.take())

    # ─── Queue ────────────────────────────────────────────────────────

    @staticmethod
    def _drop_jobs(channel: _Channel, kind: str):
        channel.jobs = deque(job for job in channel.jobs if job[0] != kind)

    def _submit(self, user_id: int, kind: str, payload):
        channel = self._channel(user_id)
        if kind == "output":
            self._drop_jobs(channel, "status")
            # A queued output job reads the turn when it runs
            if any(k == "output" and p is payload for k, p in channel.jobs):
                return
        elif kind == "status":
            for i, (k, _) in enumerate(channel.jobs):
                if k == "status":
                    channel.jobs[i] = (kind, payload)
                    return
        channel.jobs.append((kind, payload))

        if not channel.in_flight:
            channel.in_flight = True
            channel.idle.clear()
            channel.drain_task = asyncio.get_running_loop().create_task(self._drain(user_id, channel))

    async def _drain(self, user_id: int, channel: _Channel):
        try:
            while channel.jobs:
                kind, payload = channel.jobs.popleft()
                try:
                    await self._execute(user_id, channel.state, kind, payload)
                except Exception as e:
                    logger.error(f"Delivery of {kind} to user {user_id} failed: {e}")
                    if kind == "clear" and not payload.done():
                        payload.set_exception(e)
        finally:
            channel.in_flight = False
            channel.drain_task = None
            channel.idle.set()

    async def _execute(self, user_id: int, state: DeliveryState, kind: str, payload):
        if kind == "output":
            await self._deliver_output(user_id, state, payload)
        elif kind == "status":
            await self._deliver_status(user_id, state, payload)
        elif kind == "notice":
            text, turn, position = payload
            await self._deliver_notice(user_id, state, text)
            turn.close_at(position)
        elif kind == "question":
            questions, turn, position = payload
            await self._deliver_questions(user_id, state, questions)
            turn.close_at(position)
        elif kind == "delete_status":
            await self._delete_status(user_id, state)
        elif kind == "clear":
            payload.set_result(await self._delete_tracked(user_id, state))

    # ─── Bot API ──────────────────────────────────────────────────────

    async def _call(self, user_id: int, operation):
        return await self.governor.call(user_id, operation)

    async def _with_plain_fallback(self, user_id: int, make):
        """Run ``make(parse_mode)``, retrying without markup if Telegram can't parse it."""
        try:
            return await self._call(user_id, lambda: make(PARSE_MODE))
        except BadRequest as e:
            if "can't parse" not in str(e).lower():
                raise
            logger.debug(f"Markdown rejected, sending plain text: {e}")
            return await self._call(user_id, lambda: make(None))

    def _remember(self, user_id: int, state: DeliveryState, message_id: int):
        if state.track(message_id) and self.tracker is not None:
            self.tracker.set(user_id, list(state.recent_message_ids))

    async def _send(self, user_id: int, state: DeliveryState, text: str, reply_markup=None) -> int:
        message = await self._with_plain_fallback(
            user_id,
            lambda parse_mode: self.bot.send_message(
                chat_id=user_id, text=text, parse_mode=parse_mode, reply_markup=reply_markup,
            ),
        )
        self._remember(user_id, state, message.message_id)
        return message.message_id

    async def _edit_or_send(
        self, user_id: int, state: DeliveryState, message_id: int, text: str, reply_markup=None
    ) -> int:
        try:
            await self._with_plain_fallback(
                user_id,
                lambda parse_mode: self.bot.edit_message_text(
                    text=text, chat_id=user_id, message_id=message_id,
                    parse_mode=parse_mode, reply_markup=reply_markup,
                ),
            )
        except BadRequest as e:
            error = str(e).lower()
            if "message is not modified" in error:
                return message_id
            if "message to edit not found" in error or "message can't be edited" in error:
                logger.info(f"Message {message_id} can no longer be edited, sending a new one")
                return await self._send(user_id, state, text, reply_markup)
            raise
        self._remember(user_id, state, message_id)
        return message_id

    async def _delete(self, user_id: int, message_id: int) -> bool:
        try:
            await self._call(user_id, lambda: self.bot.delete_message(chat_id=user_id, message_id=message_id))
            return True
        except BadRequest as e:
            logger.debug(f"Could not delete message {message_id}: {e}")
            return False

    # ─── Jobs ─────────────────────────────────────────────────────────

    async def _deliver_output(self, user_id: int, state: DeliveryState, turn: Turn):
        raw = turn.pending_text()
        if not raw.strip():
            return

        if state.status_message_id is not None:
            await self._delete_status(user_id, state)

        chunks = split_message(raw, self.limit)
        options = parse_options(chunks[-1])
        markup = options_keyboard(options) if options else None

        message_id = turn.message_id
        for index, chunk in enumerate(chunks):
            body = chunk.strip()
            if not body:
                continue
            reply_markup = markup if index == len(chunks) - 1 else None
            if index == 0 and message_id is not None and not turn.needs_new_message:
                message_id = await self._edit_or_send(user_id, state, message_id, body, reply_markup)
            else:
                message_id = await self._send(user_id, state, body, reply_markup)
            turn.needs_new_message = False

        turn.message_id = message_id
        state.message_id = message_id
        if len(chunks) > 1:
            turn.committed += len(raw) - len(chunks[-1])

    async def _deliver_status(self, user_id: int, state: DeliveryState, text: str):
        text = text.strip()
        if not text:
            return
        if state.status_message_id is None:
            state.status_message_id = await self._send(user_id, state, text)
        else:
            state.status_message_id = await self._edit_or_send(user_id, state, state.status_message_id, text)

    async def _delete_status(self, user_id: int, state: DeliveryState):
        message_id, state.status_message_id = state.status_message_id, None
        if message_id is not None:
            await self._delete(user_id, message_id)

    async def _deliver_notice(self, user_id: int, state: DeliveryState, text: str):
        for chunk in split_message(text, self.limit):
            body = chunk.strip()
            if body:
                await self._send(user_id, state, body)

    async def _deliver_questions(self, user_id: int, state: DeliveryState, questions: List[Question]):
        if state.status_message_id is not None:
            await self._delete_status(user_id, state)
        for index, question in enumerate(questions):
            await self._send(user_id, state, question_text(question), question_keyboard(index, question))

    async def _delete_tracked(self, user_id: int, state: DeliveryState) -> int:
        ids = list(state.recent_message_ids)
        if self.tracker is not None:
            ids = list(dict.fromkeys([*self.tracker.get(user_id), *ids]))

        deleted = 0
        for message_id in ids:
            if await self._delete(user_id, message_id):
                deleted += 1

        state.recent_message_ids.clear()
        state.status_message_id = None
        state.message_id = None
        state.turn = Turn(needs_new_message=True)
        if self.tracker is not None:
            self.tracker.clear(user_id)
        logger.info(f"Deleted {deleted}/{len(ids)} messages for user {user_id}")
        return deleted
