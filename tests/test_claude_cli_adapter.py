import asyncio
import re
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, call

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from agentbridge.adapters.base import SessionState
from agentbridge.adapters.claude_cli import ClaudeCliAdapter, ClaudeSession
from agentbridge.auto_actions import AutoActionRule, AutoActionTracker
from agentbridge.errors import BackendError, TerminalError
from agentbridge.events import EventKind
from agentbridge.storage import SessionStore
from agentbridge.terminal import TmuxTerminal


@pytest.fixture
def terminal():
    term = MagicMock(spec=TmuxTerminal)
    term.create = AsyncMock()
    term.destroy = AsyncMock()
    term.send_keys = AsyncMock()
    term.capture_pane = AsyncMock(return_value="")
    term.exists = AsyncMock(return_value=True)
    return term


@pytest.fixture
def installer():
    inst = MagicMock()
    inst.is_installed.return_value = True
    inst.tool_command.return_value = "claude"
    inst.install = AsyncMock()
    return inst


@pytest.fixture
def adapter(terminal, installer, tmp_path):
    return ClaudeCliAdapter(
        terminal,
        installer,
        SessionStore(tmp_path / "sessions.json"),
        auto_action_rules=[
            AutoActionRule(name="press_enter", all_of=[re.compile("Press Enter")], steps=(0.01, "Enter")),
        ],
        poll_interval=60,
    )


@pytest.fixture
def events(adapter):
    received = []
    adapter.add_event_callback(received.append)
    return received


def attach_session(adapter, user_id=1):
    session = ClaudeSession(
        user_id=user_id,
        work_dir="/w",
        name=adapter.session_name(user_id),
        auto_actions=AutoActionTracker(rules=list(adapter.auto_action_rules)),
    )
    adapter._sessions[user_id] = session
    adapter._set_state(user_id, SessionState.ACTIVE)
    return session


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_runs_claude_in_tmux(self, adapter, terminal, events):
        await adapter.start(1, "/srv/app", "fix the bug")

        terminal.create.assert_awaited_once_with(
            "claude-1",
            ["claude", "--dangerously-skip-permissions", "fix the bug"],
            cwd="/srv/app", width=300, height=50,
        )
        assert adapter.is_active(1)
        assert adapter.state(1) == SessionState.ACTIVE
        assert [e.kind for e in events] == [EventKind.STARTED]
        assert events[0].agent == "claude"
        assert adapter.store.load()[0].title == "fix the bug"

        await adapter.stop(1)

    @pytest.mark.asyncio
    async def test_stop_tears_down(self, adapter, terminal, events):
        await adapter.start(1, "/srv/app")
        await adapter.stop(1)

        terminal.destroy.assert_awaited_with("claude-1")
        assert not adapter.is_active(1)
        assert adapter.state(1) == SessionState.ABSENT
        assert events[-1].kind == EventKind.STOPPED
        assert adapter.store.load() == []

    @pytest.mark.asyncio
    async def test_stop_without_session_is_noop(self, adapter, events):
        await adapter.stop(1)
        assert events == []

    @pytest.mark.asyncio
    async def test_installs_when_missing(self, adapter, installer, events):
        installer.is_installed.return_value = False

        await adapter.start(1, "/w")

        installer.install.assert_awaited_once_with("claude")
        assert events[0].kind == EventKind.OUTPUT
        assert events[0].notice is True
        assert events[0].text == "Installing Claude Code..."
        await adapter.stop(1)

    @pytest.mark.asyncio
    async def test_tmux_failure_raises_backend_error(self, adapter, terminal, events):
        terminal.create.side_effect = TerminalError("no server")

        with pytest.raises(BackendError):
            await adapter.start(1, "/w")

        assert adapter.state(1) == SessionState.ABSENT
        assert events == []

    @pytest.mark.asyncio
    async def test_resume_uses_resume_flag(self, adapter, terminal):
        await adapter.resume_session(1, "claude-1", "/srv/app")

        args = terminal.create.await_args
        assert args.args[1] == ["claude", "--dangerously-skip-permissions", "--resume"]
        assert args.kwargs["cwd"] == "/srv/app"
        await adapter.stop(1)

    @pytest.mark.asyncio
    async def test_list_sessions_from_store(self, adapter):
        await adapter.start(1, "/w", "write docs")
        await adapter.stop(1)
        await adapter.start(2, "/w", "add tests")

        sessions = await adapter.list_sessions()
        assert [s.title for s in sessions] == ["add tests"]
        assert sessions[0].created_at is not None
        await adapter.stop(2)


class TestPolling:
    @pytest.mark.asyncio
    async def test_new_lines_emitted_once(self, adapter, terminal, events):
        session = attach_session(adapter)

        terminal.capture_pane.return_value = "I looked at the repo\n● Bash(ls)"
        await adapter.poll_once(session)
        await adapter.poll_once(session)

        terminal.capture_pane.return_value = "I looked at the repo\n○ Bash(ls)\nAll files are listed above"
        await adapter.poll_once(session)

        assert [e.text for e in events] == [
            "I looked at the repo\n⏳ Bash(ls)",
            "All files are listed above",
        ]
        assert all(e.kind == EventKind.OUTPUT for e in events)

    @pytest.mark.asyncio
    async def test_status_after_output_is_reported(self, adapter, terminal, events):
        session = attach_session(adapter)

        terminal.capture_pane.return_value = "Reading the code now\n✻ Thinking…"
        await adapter.poll_once(session)
        terminal.capture_pane.return_value = "Reading the code now\n✽ Thinking…"
        await adapter.poll_once(session)
        terminal.capture_pane.return_value = "Reading the code now\nThe fix is ready to commit"
        await adapter.poll_once(session)

        assert [(e.kind, e.text) for e in events] == [
            (EventKind.OUTPUT, "Reading the code now\n✻ Thinking…"),
            (EventKind.STATUS, "✽ Thinking…"),
            (EventKind.OUTPUT, "The fix is ready to commit"),
        ]

    @pytest.mark.asyncio
    async def test_status_only_capture(self, adapter, terminal, events):
        session = attach_session(adapter)
        session.last_content = "Done reading files"

        terminal.capture_pane.return_value = "Done reading files\n✻ Thinking…"
        await adapter.poll_once(session)
        terminal.capture_pane.return_value = "Done reading files\n✽ Thinking…"
        await adapter.poll_once(session)

        assert [(e.kind, e.text) for e in events] == [(EventKind.STATUS, "✻ Thinking…")]

    @pytest.mark.asyncio
    async def test_chrome_only_change_emits_nothing(self, adapter, terminal, events):
        session = attach_session(adapter)
        session.last_content = "hello world from claude"

        terminal.capture_pane.return_value = "hello world from claude\n────────\n❯ "
        await adapter.poll_once(session)

        assert events == []

    @pytest.mark.asyncio
    async def test_vanished_session_is_closed(self, adapter, terminal, events):
        session = attach_session(adapter)
        terminal.capture_pane.return_value = ""
        terminal.exists.return_value = False

        await adapter.poll_once(session)

        assert [e.kind for e in events] == [EventKind.CLOSED]
        assert not adapter.is_active(1)
        assert adapter.state(1) == SessionState.ABSENT
        assert adapter.get_session(1) is None

    @pytest.mark.asyncio
    async def test_empty_capture_of_live_session_is_ignored(self, adapter, terminal, events):
        session = attach_session(adapter)
        await adapter.poll_once(session)
        assert events == []
        assert adapter.is_active(1)

    @pytest.mark.asyncio
    async def test_blocking_prompt_gets_keystroke(self, adapter, terminal):
        session = attach_session(adapter)
        terminal.capture_pane.return_value = "Login successful. Press Enter to continue"

        await adapter.poll_once(session)
        await asyncio.sleep(0.05)
        await adapter.poll_once(session)
        await asyncio.sleep(0.05)

        terminal.send_keys.assert_awaited_once_with("claude-1", "Enter")


class TestInput:
    @pytest.mark.asyncio
    async def test_send_input_types_then_enters(self, adapter, terminal):
        attach_session(adapter)

        assert await adapter.send_input(1, "run the tests") is True
        assert terminal.send_keys.await_args_list == [
            call("claude-1", "run the tests", literal=True),
            call("claude-1", "Enter"),
        ]

    @pytest.mark.asyncio
    async def test_send_input_without_session(self, adapter):
        assert await adapter.send_input(1, "hello") is False

    @pytest.mark.asyncio
    async def test_interrupt_sends_ctrl_c(self, adapter, terminal):
        attach_session(adapter)
        assert await adapter.send_signal(1) is True
        terminal.send_keys.assert_awaited_once_with("claude-1", "C-c")
        assert await adapter.send_signal(1, "SIGTERM") is False

    @pytest.mark.asyncio
    async def test_keys(self, adapter, terminal):
        attach_session(adapter)
        assert await adapter.send_arrow(1, "up") is None
        assert await adapter.send_tab(1) is None
        assert await adapter.send_arrow(1, "sideways") == "Unknown direction: sideways"
        assert [c.args[1] for c in terminal.send_keys.await_args_list] == ["Up", "Tab"]

    @pytest.mark.asyncio
    async def test_model_goes_through_slash_command(self, adapter, terminal):
        attach_session(adapter)
        assert await adapter.set_model(1, "opus") is None
        assert terminal.send_keys.await_args_list[0] == call("claude-1", "/model opus", literal=True)

    @pytest.mark.asyncio
    async def test_questions_unsupported(self, adapter):
        attach_session(adapter)
        assert await adapter.answer_question(1, "q", ["Yes"]) == "Claude Code does not support answering questions"

    @pytest.mark.asyncio
    async def test_full_output_is_plain(self, adapter, terminal):
        attach_session(adapter)
        terminal.capture_pane.return_value = "line one\r\n\n\n\nline two"

        assert await adapter.get_full_output(1, lines=100) == "line one\n\nline two"
        terminal.capture_pane.assert_awaited_with("claude-1", with_ansi=False, scrollback=100)
