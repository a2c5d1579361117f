import asyncio
import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from agentbridge.adapters import AdapterRegistry, OpenCodeAdapter
from agentbridge.coordinator import Coordinator, parse_start_phrase
from agentbridge.events import AgentEvent, EventKind, Question, QuestionOption
from agentbridge.storage import UserStorage
from agentbridge.telegram.delivery import DeliveryQueue

SETTLE = 0.12


@pytest.fixture
def users(tmp_path):
    return UserStorage(tmp_path / "users.db")


@pytest.fixture
def delivery(fake_bot):
    return DeliveryQueue(fake_bot, output_delay=0.03, status_delay=0.02)


@pytest.fixture
def coordinator(claude, opencode, delivery, users):
    registry = AdapterRegistry({"claude": lambda: claude, "opencode": lambda: opencode}, default="claude")
    return Coordinator(registry, delivery, users, default_work_dir="/workspace")


async def settle(delivery, user_id=1):
    await asyncio.sleep(SETTLE)
    await delivery.flush(user_id)


class TestStartPhrase:
    def test_instruction(self):
        assert parse_start_phrase("claude fix the bug") == "fix the bug"

    def test_case_and_newlines(self):
        assert parse_start_phrase("Claude\nwrite tests\nfor parser") == "write tests\nfor parser"

    def test_no_instruction(self):
        assert parse_start_phrase("claude") is None
        assert parse_start_phrase("claudefix") is None
        assert parse_start_phrase("please claude do it") is None


class TestSessions:
    @pytest.mark.asyncio
    async def test_start_uses_stored_work_dir(self, coordinator, claude, users):
        users.save_work_dir(1, "/srv/app")

        await coordinator.start(1, "fix the bug")

        assert claude.started == [(1, "/srv/app", "fix the bug")]
        assert coordinator.is_active(1)

    @pytest.mark.asyncio
    async def test_start_defaults_work_dir(self, coordinator, claude):
        await coordinator.start(1)
        assert claude.started == [(1, "/workspace", None)]

    @pytest.mark.asyncio
    async def test_starting_other_agent_stops_running_one(self, coordinator, claude, opencode):
        await coordinator.start(1)
        coordinator.select_agent(1, "OpenCode")

        await coordinator.start(1)

        assert not claude.is_active(1)
        assert opencode.is_active(1)
        assert coordinator.active_adapter(1) is opencode

    @pytest.mark.asyncio
    async def test_unknown_agent(self, coordinator):
        with pytest.raises(KeyError):
            coordinator.select_agent(1, "gpt")
        assert coordinator.context(1).agent == "claude"

    @pytest.mark.asyncio
    async def test_send_input_and_interrupt(self, coordinator, claude):
        assert await coordinator.send_input(1, "hi") is False
        assert await coordinator.interrupt(1) is False

        await coordinator.start(1)
        assert await coordinator.send_input(1, "hi") is True
        assert await coordinator.interrupt(1) is True
        assert claude.inputs == ["hi"]

    @pytest.mark.asyncio
    async def test_stop(self, coordinator, claude):
        assert await coordinator.stop(1) is False
        await coordinator.start(1)
        assert await coordinator.stop(1) is True
        assert not coordinator.is_active(1)

    @pytest.mark.asyncio
    async def test_forget(self, coordinator, claude, users):
        users.save_work_dir(1, "/srv/app")
        await coordinator.start(1)

        assert await coordinator.forget(1) is True

        assert not claude.is_active(1)
        assert coordinator.work_dir(1) == "/workspace"


class TestEventRouting:
    @pytest.mark.asyncio
    async def test_delta_output_is_joined(self, coordinator, claude, delivery, fake_bot):
        await coordinator.start(1)
        await claude._emit_output(1, "first")
        await claude._emit_output(1, "second")
        await settle(delivery)

        assert fake_bot.texts() == ["first\nsecond"]

    @pytest.mark.asyncio
    async def test_cumulative_output_replaces(self, coordinator, opencode, delivery, fake_bot):
        coordinator.select_agent(1, "opencode")
        await coordinator.start(1)
        await opencode._emit_output(1, "one")
        await opencode._emit_output(1, "one two")
        await settle(delivery)

        assert fake_bot.texts() == ["one two"]

    @pytest.mark.asyncio
    async def test_user_input_starts_new_message(self, coordinator, claude, delivery, fake_bot):
        await coordinator.start(1)
        await claude._emit_output(1, "first answer")
        await settle(delivery)
        await claude._emit_output(1, "more of it")
        await settle(delivery)

        await coordinator.send_input(1, "thanks, now the tests")
        await claude._emit_output(1, "second answer")
        await settle(delivery)

        assert fake_bot.texts("send") == ["first answer", "second answer"]
        assert fake_bot.texts("edit") == ["first answer\nmore of it"]

    @pytest.mark.asyncio
    async def test_blank_output_ignored(self, coordinator, claude, delivery, fake_bot):
        await coordinator.start(1)
        await claude._emit_output(1, "   ")
        await settle(delivery)
        assert fake_bot.log == []

    @pytest.mark.asyncio
    async def test_status_then_output(self, coordinator, claude, delivery, fake_bot):
        await coordinator.start(1)
        await claude._notify(AgentEvent.status(1, "✻ Thinking…"))
        await settle(delivery)
        await claude._emit_output(1, "Here it is")
        await settle(delivery)

        assert [kind for kind, _ in fake_bot.log] == ["send", "delete", "send"]
        assert fake_bot.texts() == ["✻ Thinking…", "Here it is"]

    @pytest.mark.asyncio
    async def test_closed_session_announced(self, coordinator, claude, delivery, fake_bot):
        await coordinator.start(1)
        await claude._emit(EventKind.CLOSED, 1)
        await delivery.flush(1)

        assert fake_bot.texts() == ["Session ended"]

    @pytest.mark.asyncio
    async def test_error_announced(self, coordinator, claude, delivery, fake_bot):
        coordinator.registry.get("claude")
        await claude._notify(AgentEvent.failure(1, "server gone"))
        await delivery.flush(1)

        assert fake_bot.texts() == ["Agent error: server gone"]


def two_questions():
    return [
        Question(question="Database?", options=[QuestionOption("Postgres"), QuestionOption("SQLite")]),
        Question(question="Cache?", options=[QuestionOption("Redis"), QuestionOption("None")]),
    ]


class TestQuestions:
    @pytest.mark.asyncio
    async def test_answers_collected_then_sent(self, coordinator, opencode, delivery, fake_bot):
        coordinator.select_agent(1, "opencode")
        await coordinator.start(1)
        await opencode._notify(AgentEvent.question(1, "que_1", two_questions()))
        await delivery.flush(1)

        assert fake_bot.texts() == ["Database?", "Cache?"]

        assert await coordinator.answer(1, 0, 1) == "Selected: SQLite"
        assert opencode.answers == []
        assert await coordinator.answer(1, 1, 0) == "Answered: Redis"
        assert opencode.answers == [("que_1", ["SQLite", "Redis"])]

        assert await coordinator.answer(1, 0, 0) == "This question is no longer open"

    @pytest.mark.asyncio
    async def test_invalid_choice(self, coordinator, opencode):
        coordinator.select_agent(1, "opencode")
        await coordinator.start(1)
        await opencode._notify(AgentEvent.question(1, "que_1", two_questions()))

        assert await coordinator.answer(1, 5, 0) == "This question is no longer open"
        assert await coordinator.answer(1, 0, 9) == "This question is no longer open"

    @pytest.mark.asyncio
    async def test_backend_without_question_api_gets_number(self, coordinator, claude):
        await coordinator.start(1)
        await claude._notify(AgentEvent.question(1, "", [two_questions()[0]]))

        assert await coordinator.answer(1, 0, 1) == "Sent: 2"
        assert claude.inputs == ["2"]

    @pytest.mark.asyncio
    async def test_new_start_drops_pending_question(self, coordinator, opencode):
        coordinator.select_agent(1, "opencode")
        await coordinator.start(1)
        await opencode._notify(AgentEvent.question(1, "que_1", two_questions()))

        await coordinator.start(1)

        assert coordinator.context(1).pending_question is None


class TestOpenCodeEndToEnd:
    @pytest.mark.asyncio
    async def test_start_phrase_reports_model_first(self, server, fake_bot, users):
        installer = MagicMock()
        installer.is_installed.return_value = True
        installer.is_server_running = AsyncMock(return_value=True)
        installer.stop_server = AsyncMock()
        client = httpx.AsyncClient(base_url="http://opencode.test", transport=httpx.MockTransport(server.handler))
        adapter = OpenCodeAdapter(installer, client=client, catalog=MagicMock(), output_delay=0.03, reconnect_delay=60)

        registry = AdapterRegistry({"opencode": lambda: adapter}, default="opencode")
        delivery = DeliveryQueue(fake_bot, output_delay=0.03, status_delay=0.02)
        coordinator = Coordinator(registry, delivery, users)

        instruction = parse_start_phrase("claude fix the bug")
        await coordinator.start(1, instruction)
        await delivery.flush(1)

        assert fake_bot.texts()[0] == "Model: anthropic/claude-sonnet-4"
        assert server.posted("/prompt_async")[0]["parts"][0]["text"] == "fix the bug"

        await coordinator.shutdown()
        installer.stop_server.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_input_before_debounce_keeps_previous_tail(self, server, fake_bot, users):
        installer = MagicMock()
        installer.is_installed.return_value = True
        installer.is_server_running = AsyncMock(return_value=True)
        installer.stop_server = AsyncMock()
        client = httpx.AsyncClient(base_url="http://opencode.test", transport=httpx.MockTransport(server.handler))
        adapter = OpenCodeAdapter(installer, client=client, catalog=MagicMock(), output_delay=10, reconnect_delay=60)

        registry = AdapterRegistry({"opencode": lambda: adapter}, default="opencode")
        delivery = DeliveryQueue(fake_bot, output_delay=0.03, status_delay=0.02)
        coordinator = Coordinator(registry, delivery, users)

        def delta(text, part_id):
            return json.dumps({
                "type": "message.part.updated",
                "properties": {"part": {"id": part_id, "sessionID": "ses_1", "type": "text"}, "delta": text},
            })

        idle = json.dumps({"type": "session.idle", "properties": {"sessionID": "ses_1"}})

        await coordinator.start(1)
        session = adapter.get_session(1)
        await adapter.handle_event(session, delta("First answer, complete.", "prt_1"))
        await adapter.handle_event(session, idle)
        await delivery.flush(1)

        # Still inside the adapter's quiet period when the user replies
        await adapter.handle_event(session, delta(" Tail that must stay.", "prt_1"))
        await coordinator.send_input(1, "and now the tests")
        await adapter.handle_event(session, delta("Second answer.", "prt_2"))
        await adapter.handle_event(session, idle)
        await delivery.flush(1)

        assert fake_bot.texts("send") == [
            "Model: anthropic/claude-sonnet-4",
            "First answer, complete.",
            "Second answer.",
        ]
        assert fake_bot.texts("edit") == ["First answer, complete. Tail that must stay."]

        await coordinator.shutdown()
