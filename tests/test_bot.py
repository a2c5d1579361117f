import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from agentbridge.adapters import AdapterRegistry
from agentbridge.config import BridgeConfig
from agentbridge.errors import BackendError
from agentbridge.storage import UserStorage
from agentbridge.telegram.bot import TelegramBot
from agentbridge.telegram.commands import COMMANDS, format_help_text, truncate_output


def make_update(user_id=1, text="", chat_type="private"):
    update = MagicMock()
    update.effective_chat.type = chat_type
    update.effective_user.id = user_id
    update.effective_message.reply_text = AsyncMock()
    update.message.text = text
    return update


def make_context(*args):
    context = MagicMock()
    context.args = list(args)
    return context


def make_callback(data, user_id=1):
    update = MagicMock()
    update.callback_query.from_user.id = user_id
    update.callback_query.data = data
    update.callback_query.answer = AsyncMock()
    return update


def replies(update):
    return [c.args[0] for c in update.effective_message.reply_text.await_args_list]


@pytest.fixture
def config():
    return BridgeConfig(
        bot_token="123456:TEST",
        allowed_user_ids=[1],
        work_dir="/workspace",
        output_debounce=0.02,
        status_debounce=0.02,
    )


@pytest.fixture
def users(tmp_path):
    return UserStorage(tmp_path / "users.db")


@pytest.fixture
def bot(config, claude, opencode, users, fake_bot):
    registry = AdapterRegistry({"claude": lambda: claude, "opencode": lambda: opencode}, default="claude")
    telegram_bot = TelegramBot(config, registry, users)
    telegram_bot.attach(fake_bot)
    return telegram_bot


class TestAuth:
    @pytest.mark.asyncio
    async def test_unknown_user_denied(self, bot):
        update = make_update(user_id=99)
        await bot._cmd_start(update, make_context())
        assert replies(update) == ["Access denied."]

    @pytest.mark.asyncio
    async def test_group_chat_refused(self, bot):
        update = make_update(chat_type="group")
        await bot._cmd_start(update, make_context())
        assert replies(update) == ["This bot works only in private messages."]

    @pytest.mark.asyncio
    async def test_group_text_ignored(self, bot, claude):
        update = make_update(text="claude fix it", chat_type="supergroup")
        await bot._handle_text(update, make_context())
        assert replies(update) == []
        assert claude.started == []

    @pytest.mark.asyncio
    async def test_unknown_user_commands_silent(self, bot):
        update = make_update(user_id=99)
        await bot._cmd_status(update, make_context())
        assert replies(update) == []


class TestCommands:
    @pytest.mark.asyncio
    async def test_start_without_setup_mentions_default(self, bot):
        update = make_update()
        await bot._cmd_start(update, make_context())
        assert "<code>/workspace</code>" in replies(update)[0]

    @pytest.mark.asyncio
    async def test_setup(self, bot, users):
        update = make_update()
        await bot._cmd_setup(update, make_context("/srv/my", "app"))

        assert users.get_user(1).work_dir == "/srv/my app"
        assert replies(update)[0].startswith("Work directory set to: <code>/srv/my app</code>")

    @pytest.mark.asyncio
    async def test_setup_usage(self, bot):
        update = make_update()
        await bot._cmd_setup(update, make_context())
        assert replies(update)[0].startswith("Usage: /setup")

    @pytest.mark.asyncio
    async def test_status(self, bot, users):
        users.save_work_dir(1, "/srv/app")
        update = make_update()
        await bot._cmd_status(update, make_context())

        text = replies(update)[0]
        assert "Work dir: <code>/srv/app</code>" in text
        assert "Agent: Claude Code" in text
        assert "Session: absent" in text

    @pytest.mark.asyncio
    async def test_claude_command_starts_with_instruction(self, bot, claude):
        update = make_update()
        await bot._cmd_claude(update, make_context("add", "tests"))

        assert claude.started == [(1, "/workspace", "add tests")]
        assert replies(update) == ["Starting Claude Code in <code>/workspace</code>..."]

    @pytest.mark.asyncio
    async def test_claude_command_when_running(self, bot, claude):
        await bot._cmd_claude(make_update(), make_context())
        update = make_update()
        await bot._cmd_claude(update, make_context())

        assert replies(update) == ["Claude Code already running. /stop to stop"]
        assert len(claude.started) == 1

    @pytest.mark.asyncio
    async def test_start_failure_reported(self, bot, claude):
        claude.start = AsyncMock(side_effect=BackendError("tmux not found"))
        update = make_update()
        await bot._cmd_claude(update, make_context())

        assert replies(update)[-1] == "Error: tmux not found"

    @pytest.mark.asyncio
    async def test_agent_switch(self, bot):
        update = make_update()
        await bot._cmd_agent(update, make_context("opencode"))

        assert replies(update) == ["Agent set to OpenCode. /claude to start"]
        assert bot.coordinator.context(1).agent == "opencode"

    @pytest.mark.asyncio
    async def test_agent_unknown(self, bot):
        update = make_update()
        await bot._cmd_agent(update, make_context("gpt"))
        assert replies(update)[0].startswith("Unknown agent: gpt")

    @pytest.mark.asyncio
    async def test_agent_list(self, bot):
        update = make_update()
        await bot._cmd_agent(update, make_context())

        text = replies(update)[0]
        assert "[*] <code>claude</code> - Claude Code" in text
        assert "[ ] <code>opencode</code> - OpenCode" in text

    @pytest.mark.asyncio
    async def test_stop(self, bot, claude):
        await bot._cmd_claude(make_update(), make_context())
        update = make_update()
        await bot._cmd_stop(update, make_context())
        await bot._cmd_stop(update, make_context())

        assert replies(update) == ["Claude Code stopped", "No session running"]
        assert not claude.is_active(1)

    @pytest.mark.asyncio
    async def test_interrupt(self, bot):
        update = make_update()
        await bot._cmd_interrupt(update, make_context())
        await bot._cmd_claude(make_update(), make_context())
        await bot._cmd_interrupt(update, make_context())

        assert replies(update) == ["No session running", "Ctrl+C sent"]

    @pytest.mark.asyncio
    async def test_yes_no(self, bot, claude):
        await bot._cmd_claude(make_update(), make_context())
        await bot._cmd_yes(make_update(), make_context())
        await bot._cmd_no(make_update(), make_context())
        assert claude.inputs == ["y", "n"]

    @pytest.mark.asyncio
    async def test_keys_unsupported(self, bot):
        await bot._cmd_claude(make_update(), make_context())
        update = make_update()
        await bot._cmd_enter(update, make_context())
        assert replies(update) == ["Claude Code does not support key presses"]

    @pytest.mark.asyncio
    async def test_model_unsupported(self, bot):
        update = make_update()
        await bot._cmd_model(update, make_context())
        assert replies(update) == ["Claude Code does not support model selection"]

    @pytest.mark.asyncio
    async def test_sessions_empty(self, bot):
        update = make_update()
        await bot._cmd_sessions(update, make_context())
        assert replies(update) == ["No saved sessions."]

    @pytest.mark.asyncio
    async def test_resume(self, bot, claude):
        update = make_update()
        await bot._cmd_resume(update, make_context("abc"))
        assert claude.is_active(1)
        assert replies(update) == ["Resuming Claude Code session <code>abc</code>..."]

    @pytest.mark.asyncio
    async def test_clear(self, bot, fake_bot):
        bot.delivery.push_notice(1, "hello")
        await bot.delivery.flush(1)
        update = make_update()
        await bot._cmd_clear(update, make_context())

        assert replies(update) == ["Deleted 1 messages"]
        assert fake_bot.calls("delete")[0]["message_id"] == 101

    @pytest.mark.asyncio
    async def test_forget(self, bot, users):
        users.save_work_dir(1, "/srv/app")
        update = make_update()
        await bot._cmd_forget(update, make_context())

        assert users.get_user(1) is None
        assert replies(update) == ["Configuration deleted"]


class TestText:
    @pytest.mark.asyncio
    async def test_start_phrase_starts_agent(self, bot, claude):
        update = make_update(text="claude fix the bug")
        await bot._handle_text(update, make_context())

        assert claude.started == [(1, "/workspace", "fix the bug")]

    @pytest.mark.asyncio
    async def test_text_goes_to_running_agent(self, bot, claude):
        await bot._cmd_claude(make_update(), make_context())
        await bot._handle_text(make_update(text="also update the docs"), make_context())
        assert claude.inputs == ["also update the docs"]

    @pytest.mark.asyncio
    async def test_text_without_session(self, bot):
        update = make_update(text="hello")
        await bot._handle_text(update, make_context())
        assert replies(update)[0].startswith("Claude Code not running.")


class TestCallbacks:
    @pytest.mark.asyncio
    async def test_option_sends_number(self, bot, claude):
        await bot._cmd_claude(make_update(), make_context())
        update = make_callback("opt_2")
        await bot._handle_callback(update, make_context())

        assert claude.inputs == ["2"]
        update.callback_query.answer.assert_awaited_once_with("Sent: 2")

    @pytest.mark.asyncio
    async def test_option_without_session(self, bot):
        update = make_callback("opt_1")
        await bot._handle_callback(update, make_context())
        update.callback_query.answer.assert_awaited_once_with("No session running")

    @pytest.mark.asyncio
    async def test_stale_answer(self, bot):
        update = make_callback("qa_0_1")
        await bot._handle_callback(update, make_context())
        update.callback_query.answer.assert_awaited_once_with("This question is no longer open")

    @pytest.mark.asyncio
    async def test_unauthorized(self, bot):
        update = make_callback("opt_1", user_id=42)
        await bot._handle_callback(update, make_context())
        update.callback_query.answer.assert_awaited_once_with("Not authorized.", show_alert=True)

    @pytest.mark.asyncio
    async def test_garbage(self, bot):
        update = make_callback("rm -rf")
        await bot._handle_callback(update, make_context())
        update.callback_query.answer.assert_awaited_once_with("Unknown action.")


class TestFormatting:
    def test_help_lists_every_command(self):
        text = format_help_text()
        for cmd in COMMANDS:
            assert f"/{cmd.command} - " in text

    def test_truncate_output(self):
        assert truncate_output("") == "(no output)"
        assert truncate_output("short") == "short"
        text = "\n".join(f"line {i}" for i in range(1000))
        result = truncate_output(text, max_chars=100)
        assert result.startswith("... (")
        assert result.endswith("line 999")
        assert len(result) < 140
