import itertools
import json
import sys
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from agentbridge.adapters import AgentAdapter, Capability
from agentbridge.events import EventKind


class FakeBot:
    """Records Bot API calls in order. Queue exceptions in ``*_errors`` to fail the next call."""

    def __init__(self):
        self.log = []
        self.ids = itertools.count(101)
        self.send_errors = []
        self.edit_errors = []

    async def send_message(self, **kwargs):
        self.log.append(("send", kwargs))
        if self.send_errors:
            raise self.send_errors.pop(0)
        return SimpleNamespace(message_id=next(self.ids))

    async def edit_message_text(self, **kwargs):
        self.log.append(("edit", kwargs))
        if self.edit_errors:
            raise self.edit_errors.pop(0)
        return True

    async def delete_message(self, **kwargs):
        self.log.append(("delete", kwargs))
        return True

    def calls(self, kind):
        return [kwargs for k, kwargs in self.log if k == kind]

    def texts(self, kind="send"):
        return [kwargs["text"] for kwargs in self.calls(kind)]


@pytest.fixture
def fake_bot():
    return FakeBot()


class FakeServer:
    """Minimal opencode serve: answers the endpoints the adapter calls and records requests."""

    def __init__(self):
        self.requests = []
        self.config = {"model": "anthropic/claude-sonnet-4"}
        self.sessions = [
            {"id": "ses_1", "title": "Fix parser", "time": {"created": 1700000000000, "updated": 1700000360000}},
            {"title": "missing id"},
        ]
        self.event_stream = b""
        # Bodies for successive /event connections; event_stream once these run out
        self.event_streams = []
        self.refuse = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        if self.refuse:
            raise httpx.ConnectError("connection refused", request=request)

        path = request.url.path
        if path == "/session" and request.method == "POST":
            return httpx.Response(200, json={"id": "ses_1", "title": body["title"]})
        if path == "/session":
            return httpx.Response(200, json=self.sessions)
        if path.startswith("/session/") and path.endswith("/prompt_async"):
            return httpx.Response(204)
        if path.startswith("/session/") and path.endswith("/abort"):
            return httpx.Response(200, json=True)
        if path.startswith("/session/"):
            return httpx.Response(200, json={"id": path.rsplit("/", 1)[1], "title": "old"})
        if path == "/config":
            return httpx.Response(200, json=self.config)
        if path == "/event":
            content = self.event_streams.pop(0) if self.event_streams else self.event_stream
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=content)
        if path.startswith("/permission/") or path.startswith("/question/"):
            return httpx.Response(200, json=True)
        return httpx.Response(404, text="not found")

    def connections(self):
        return len([path for method, path, body in self.requests if path == "/event"])

    def posted(self, suffix):
        return [body for method, path, body in self.requests if method == "POST" and path.endswith(suffix)]


@pytest.fixture
def server():
    return FakeServer()


class FakeAdapter(AgentAdapter):
    """In-memory backend that records what the coordinator asks of it."""

    def __init__(self, name: str, label: str, deltas: bool = True, questions: bool = False):
        super().__init__()
        self.name = name
        self.label = label
        self.outputs_deltas = deltas
        self.capabilities = Capability.QUESTIONS if questions else Capability.NONE
        self.active = set()
        self.started = []
        self.inputs = []
        self.answers = []

    async def start(self, user_id, work_dir, instruction=None):
        self.active.add(user_id)
        self.started.append((user_id, work_dir, instruction))
        await self._emit(EventKind.STARTED, user_id)

    async def stop(self, user_id):
        if user_id in self.active:
            self.active.discard(user_id)
            await self._emit(EventKind.STOPPED, user_id)

    def is_active(self, user_id):
        return user_id in self.active

    async def send_input(self, user_id, text):
        if user_id not in self.active:
            return False
        self.inputs.append(text)
        return True

    async def send_signal(self, user_id, signal="SIGINT"):
        return user_id in self.active

    async def list_sessions(self):
        return []

    async def resume_session(self, user_id, session_id, work_dir=None):
        await self.start(user_id, work_dir, None)

    async def answer_question(self, user_id, request_id, answers):
        self.answers.append((request_id, answers))
        return None


@pytest.fixture
def claude():
    return FakeAdapter("claude", "Claude Code", deltas=True)


@pytest.fixture
def opencode():
    return FakeAdapter("opencode", "OpenCode", deltas=False, questions=True)
