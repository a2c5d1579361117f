"""
OpenCode backend.

Talks to an ``opencode serve`` instance over HTTP. Prompts are fire-and-forget
(``prompt_async``); everything the agent produces comes back on the shared
``/event`` server-sent-event stream, which is filtered to the user's session.
"""
import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from ..debounce import Debouncer
from ..errors import AgentApiError
from ..events import AgentEvent, EventKind, Question, QuestionOption
from ..installer import InstallManager
from ..logging_config import get_logger
from .base import AgentAdapter, AgentSessionInfo, Capability, SessionState

logger = get_logger("agentbridge.opencode")

OUTPUT_DEBOUNCE = 0.5
RECONNECT_DELAY = 3.0
MODELS_CACHE_TTL = 300.0
MODELS_TIMEOUT = 10.0


# ─── Wire models ──────────────────────────────────────────────────────

class _Wire(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ModelRef(_Wire):
    providerID: str = ""
    modelID: str

    @property
    def label(self) -> str:
        return f"{self.providerID}/{self.modelID}" if self.providerID else self.modelID


class ServerConfig(_Wire):
    model: Optional[str] = None
    defaultModel: Optional[ModelRef] = None


class SessionTime(_Wire):
    created: Optional[float] = None
    updated: Optional[float] = None


class ApiSession(_Wire):
    id: str
    title: Optional[str] = None
    time: Optional[SessionTime] = None


class Part(_Wire):
    id: Optional[str] = None
    sessionID: Optional[str] = None
    messageID: Optional[str] = None
    type: Optional[str] = None
    text: Optional[str] = None


class MessageInfo(_Wire):
    id: Optional[str] = None
    sessionID: Optional[str] = None
    role: Optional[str] = None
    finish: Optional[str] = None
    error: Any = None
    modelID: Optional[str] = None
    providerID: Optional[str] = None


class QuestionOptionWire(_Wire):
    label: str
    description: Optional[str] = None


class QuestionWire(_Wire):
    question: str
    header: Optional[str] = None
    options: List[QuestionOptionWire] = []

    def to_question(self) -> Question:
        return Question(
            question=self.question,
            header=self.header or "",
            options=[QuestionOption(label=o.label, description=o.description or "") for o in self.options],
        )


class QuestionAsked(_Wire):
    id: Optional[str] = None
    requestID: Optional[str] = None
    questions: List[QuestionWire] = []


class EventEnvelope(_Wire):
    type: str
    properties: Dict[str, Any] = {}


# ─── Helpers ──────────────────────────────────────────────────────────

def extract_error_message(error: Any) -> str:
    """Best-effort human readable text from the server's error shapes."""
    if isinstance(error, str):
        return error
    if not isinstance(error, dict):
        return str(error)

    data = error.get("data")
    if isinstance(data, dict) and isinstance(data.get("message"), str):
        return data["message"]
    if isinstance(error.get("message"), str):
        return error["message"]
    return json.dumps(error)


def event_session_id(properties: Dict[str, Any]) -> Optional[str]:
    """The session an event belongs to, wherever the server put it."""
    if isinstance(properties.get("sessionID"), str):
        return properties["sessionID"]
    for key in ("part", "info"):
        nested = properties.get(key)
        if isinstance(nested, dict) and isinstance(nested.get("sessionID"), str):
            return nested["sessionID"]
    return None


def find_model_by_query(query: str, models: List[str]) -> Optional[str]:
    """Exact match, then model-name match, then substring match."""
    normalized = "-".join(query.lower().split())
    if not normalized:
        return None

    for m in models:
        if m.lower() == normalized:
            return m

    for m in models:
        model_part = m.split("/", 1)[1].lower() if "/" in m else ""
        if model_part == normalized or normalized in model_part:
            return m

    for m in models:
        if normalized in m.lower():
            return m

    return None


def resolve_model_id(value: str, models: List[str]) -> Optional[ModelRef]:
    """Turn ``provider/model`` or a fuzzy query into a model reference."""
    value = value.strip()
    slash = value.find("/")
    if slash > 0:
        if models and not any(m.lower() == value.lower() for m in models):
            logger.info(f'Model "{value}" not in available list, using anyway')
        return ModelRef(providerID=value[:slash], modelID=value[slash + 1:])

    found = find_model_by_query(value, models)
    if not found:
        return None
    provider, _, model = found.partition("/")
    return ModelRef(providerID=provider, modelID=model)


def _epoch(value: Optional[float]) -> Optional[datetime]:
    if not value:
        return None
    # The server reports milliseconds; older builds used seconds
    seconds = value / 1000 if value > 1e11 else value
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class ModelCatalog:
    """Models reported by ``opencode models``, cached for a few minutes."""

    def __init__(self, installer: InstallManager, ttl: float = MODELS_CACHE_TTL, clock=time.monotonic):
        self.installer = installer
        self.ttl = ttl
        self._clock = clock
        self._models: List[str] = []
        self._fetched_at: Optional[float] = None

    def _is_fresh(self) -> bool:
        return (
            self._fetched_at is not None
            and bool(self._models)
            and self._clock() - self._fetched_at < self.ttl
        )

    async def _fetch(self) -> List[str]:
        proc = await asyncio.create_subprocess_exec(
            self.installer.tool_command("opencode"), "models",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=MODELS_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        lines = stdout.decode("utf-8", errors="replace").splitlines()
        return [line.strip() for line in lines if "/" in line]

    async def list(self) -> List[str]:
        if self._is_fresh():
            return self._models
        try:
            models = await self._fetch()
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Failed to fetch models: {e}")
            return self._models
        if models:
            self._models = models
            self._fetched_at = self._clock()
            logger.info(f"Fetched {len(models)} models from CLI")
        return models


# ─── Adapter ──────────────────────────────────────────────────────────

@dataclass
class OpenCodeSession:
    user_id: int
    session_id: str
    work_dir: str
    active: bool = True
    # Whole assistant text of the current turn; reset when a prompt is sent
    response_text: str = ""
    last_part_id: Optional[str] = None
    last_emitted: str = ""
    model_info_shown: bool = False
    model_override: Optional[ModelRef] = None
    model_label: Optional[str] = None
    debouncer: Optional[Debouncer] = field(default=None, repr=False)
    _sse_task: Optional[asyncio.Task] = field(default=None, repr=False)


class OpenCodeAdapter(AgentAdapter):
    name = "opencode"
    label = "OpenCode"
    capabilities = Capability.MODELS | Capability.QUESTIONS
    outputs_deltas = False

    def __init__(
        self,
        installer: InstallManager,
        base_url: str = "http://localhost:4096",
        username: str = "opencode",
        password: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        catalog: Optional[ModelCatalog] = None,
        output_delay: float = OUTPUT_DEBOUNCE,
        reconnect_delay: float = RECONNECT_DELAY,
        default_work_dir: str = "/workspace",
    ):
        super().__init__()
        self.installer = installer
        self.base_url = base_url.rstrip("/")
        auth = httpx.BasicAuth(username, password) if password else None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            auth=auth,
            headers={"Accept": "application/json"},
            timeout=30.0,
        )
        self.catalog = catalog or ModelCatalog(installer)
        self.output_delay = output_delay
        self.reconnect_delay = reconnect_delay
        self.default_work_dir = default_work_dir
        self._sessions: Dict[int, OpenCodeSession] = {}

    def get_session(self, user_id: int) -> Optional[OpenCodeSession]:
        return self._sessions.get(user_id)

    # ─── HTTP ─────────────────────────────────────────────────────────

    async def _api(self, method: str, path: str, body: Any = None) -> Any:
        try:
            response = await self._client.request(method, path, json=body)
        except httpx.ConnectError:
            raise AgentApiError(f'OpenCode server not available at {self.base_url}. Is "opencode serve" running?')
        except httpx.HTTPError as e:
            raise AgentApiError(f"OpenCode server connection failed ({self.base_url}): {e}")

        if response.status_code == 204:
            return None
        if not response.is_success:
            raise AgentApiError(
                f"OpenCode API {method} {path} failed: {response.status_code} {response.text}",
                status_code=response.status_code,
            )
        if "application/json" in response.headers.get("content-type", ""):
            return response.json()
        return None

    async def _ensure_backend(self, user_id: int):
        if not self.installer.is_installed("opencode"):
            await self._emit_output(user_id, "Installing OpenCode...", notice=True)
            await self.installer.install("opencode")

        if not await self.installer.is_server_running():
            await self._emit_output(user_id, "Starting OpenCode server...", notice=True)
            await self.installer.ensure_server_running()

    # ─── Lifecycle ────────────────────────────────────────────────────

    async def start(self, user_id: int, work_dir: str, instruction: Optional[str] = None):
        await self.stop(user_id)
        self._set_state(user_id, SessionState.STARTING)
        try:
            await self._ensure_backend(user_id)
            logger.for_session(user_id, self.name).info("Starting session", fields={"work_dir": work_dir})
            data = await self._api("POST", "/session", {"title": instruction or f"Telegram session {user_id}"})
            api_session = ApiSession.model_validate(data)
        except ValidationError as e:
            self._set_state(user_id, SessionState.ABSENT)
            raise AgentApiError(f"Unexpected response from POST /session: {e}")
        except Exception:
            self._set_state(user_id, SessionState.ABSENT)
            raise

        session = self._open(user_id, api_session.id, work_dir)
        await self._announce_model(session)
        if instruction:
            await self._send_prompt(session, instruction)
        await self._emit(EventKind.STARTED, user_id)

    async def resume_session(self, user_id: int, session_id: str, work_dir: Optional[str] = None):
        await self.stop(user_id)
        self._set_state(user_id, SessionState.STARTING)
        try:
            await self._ensure_backend(user_id)
            logger.for_session(user_id, self.name).info(f"Resuming session {session_id}")
            api_session = ApiSession.model_validate(await self._api("GET", f"/session/{session_id}"))
        except ValidationError as e:
            self._set_state(user_id, SessionState.ABSENT)
            raise AgentApiError(f"Unexpected response from GET /session/{session_id}: {e}")
        except Exception:
            self._set_state(user_id, SessionState.ABSENT)
            raise

        self._open(user_id, api_session.id, work_dir or self.default_work_dir)
        await self._emit(EventKind.STARTED, user_id)

    def _open(self, user_id: int, session_id: str, work_dir: str) -> OpenCodeSession:
        session = OpenCodeSession(user_id=user_id, session_id=session_id, work_dir=work_dir)
        session.debouncer = Debouncer(
            self.output_delay,
            lambda text, s=session: self._emit_response(s, text),
            name=f"opencode-output-{user_id}",
        )
        self._sessions[user_id] = session
        session._sse_task = asyncio.create_task(self._sse_loop(session))
        self._set_state(user_id, SessionState.ACTIVE)
        return session

    async def stop(self, user_id: int):
        session = self._sessions.pop(user_id, None)
        if not session:
            return

        logger.for_session(user_id, self.name).info("Stopping session")
        self._set_state(user_id, SessionState.STOPPING)
        session.active = False
        session.debouncer.cancel()
        if session._sse_task and session._sse_task is not asyncio.current_task():
            session._sse_task.cancel()

        try:
            await self._api("POST", f"/session/{session.session_id}/abort")
        except AgentApiError as e:
            logger.warning(f"Abort on stop failed: {e}")

        self._set_state(user_id, SessionState.ABSENT)
        await self._emit(EventKind.STOPPED, user_id)

    def is_active(self, user_id: int) -> bool:
        session = self._sessions.get(user_id)
        return bool(session and session.active)

    async def shutdown(self):
        await super().shutdown()
        await self._client.aclose()
        await self.installer.stop_server()

    # ─── Model ────────────────────────────────────────────────────────

    async def _announce_model(self, session: OpenCodeSession):
        """Report the server's default model once, as the first output."""
        if not session.active or session.model_info_shown:
            return

        try:
            config = ServerConfig.model_validate(await self._api("GET", "/config") or {})
        except (AgentApiError, ValidationError) as e:
            logger.warning(f"Fetching model info failed: {e}")
            config = ServerConfig()

        if config.defaultModel and config.defaultModel.providerID and config.defaultModel.modelID:
            session.model_override = config.defaultModel
            session.model_label = config.defaultModel.label
        elif config.model:
            provider, slash, model = config.model.partition("/")
            if slash and provider:
                session.model_override = ModelRef(providerID=provider, modelID=model)
            session.model_label = config.model
        else:
            session.model_label = "not set"
            await self._emit_output(session.user_id, "Model: not set (use /model to select)", notice=True)
            return

        session.model_info_shown = True
        logger.info(f"Default model: {session.model_label}")
        await self._emit_output(session.user_id, f"Model: {session.model_label}", notice=True)

    async def set_model(self, user_id: int, model: str) -> Optional[str]:
        session = self._sessions.get(user_id)
        if not session or not session.active:
            return "No active session"

        resolved = resolve_model_id(model, await self.catalog.list())
        if not resolved:
            return f'Model "{model}" not found. Use /model to see available models.'

        session.model_override = resolved
        session.model_label = resolved.label
        session.model_info_shown = False
        logger.info(f"Model set to: {resolved.label}")
        return None

    def get_model(self, user_id: int) -> Optional[str]:
        session = self._sessions.get(user_id)
        return session.model_label if session else None

    async def get_available_models(self) -> List[str]:
        return await self.catalog.list()

    # ─── Input ────────────────────────────────────────────────────────

    async def _send_prompt(self, session: OpenCodeSession, text: str) -> bool:
        session.debouncer.cancel()
        session.response_text = ""
        session.last_part_id = None
        session.last_emitted = ""
        body: Dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        if session.model_override:
            model = {"modelID": session.model_override.modelID}
            if session.model_override.providerID:
                model["providerID"] = session.model_override.providerID
            body["model"] = model

        try:
            await self._api("POST", f"/session/{session.session_id}/prompt_async", body)
        except AgentApiError as e:
            logger.error(f"Failed to send message: {e}")
            await self._notify(AgentEvent.failure(session.user_id, str(e)))
            return False
        return True

    async def send_input(self, user_id: int, text: str) -> bool:
        session = self._sessions.get(user_id)
        if not session or not session.active:
            logger.info(f"send_input: no active session for user {user_id}")
            return False
        return await self._send_prompt(session, text)

    async def flush_output(self, user_id: int):
        session = self._sessions.get(user_id)
        if session and session.active:
            await self._flush(session)

    async def send_signal(self, user_id: int, signal: str = "SIGINT") -> bool:
        session = self._sessions.get(user_id)
        if signal != "SIGINT" or not session or not session.active:
            return False
        try:
            await self._api("POST", f"/session/{session.session_id}/abort")
        except AgentApiError as e:
            logger.error(f"Abort failed: {e}")
            return False
        return True

    async def answer_question(self, user_id: int, request_id: str, answers: List[str]) -> Optional[str]:
        session = self._sessions.get(user_id)
        if not session or not session.active:
            return "No active session"
        try:
            await self._api("POST", f"/question/{request_id}/reply", {"answers": [[a] for a in answers]})
        except AgentApiError as e:
            logger.error(f"Failed to answer question {request_id}: {e}")
            return str(e)
        return None

    async def list_sessions(self) -> List[AgentSessionInfo]:
        try:
            data = await self._api("GET", "/session")
        except AgentApiError as e:
            logger.error(f"Failed to get sessions: {e}")
            return []
        if not isinstance(data, list):
            return []

        sessions = []
        for item in data:
            try:
                s = ApiSession.model_validate(item)
            except ValidationError:
                continue
            sessions.append(AgentSessionInfo(
                id=s.id,
                title=s.title or s.id,
                created_at=_epoch(s.time.created) if s.time else None,
                updated_at=_epoch(s.time.updated) if s.time else None,
            ))
        return sessions

    # ─── Event stream ─────────────────────────────────────────────────

    async def _sse_loop(self, session: OpenCodeSession):
        while session.active:
            try:
                await self._read_events(session)
                if session.active:
                    logger.warning("SSE stream closed")
            except asyncio.CancelledError:
                return
            except (httpx.HTTPError, AgentApiError) as e:
                if session.active:
                    logger.error(f"SSE error: {e}")
            except Exception as e:
                if session.active:
                    logger.error(f"SSE stream failed unexpectedly: {e}")

            if not session.active:
                return
            try:
                await asyncio.sleep(self.reconnect_delay)
            except asyncio.CancelledError:
                return
            logger.info("SSE reconnecting...")

    async def _read_events(self, session: OpenCodeSession):
        async with self._client.stream(
            "GET", "/event",
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(10.0, read=None),
        ) as response:
            if not response.is_success:
                raise AgentApiError(f"SSE connection failed: {response.status_code}", response.status_code)
            logger.info("SSE connected")
            async for line in response.aiter_lines():
                if not session.active:
                    break
                if line.startswith("data: "):
                    await self.handle_event(session, line[6:])

    async def handle_event(self, session: OpenCodeSession, data: str):
        """Dispatch one ``data:`` payload from the event stream."""
        if not session.active:
            return
        try:
            event = EventEnvelope.model_validate_json(data)
        except ValidationError as e:
            logger.warning(f"Dropping malformed event: {e.error_count()} validation errors")
            return

        sid = event_session_id(event.properties)
        if sid and sid != session.session_id:
            return

        handlers = {
            "message.part.updated": self._on_part_updated,
            "message.updated": self._on_message_updated,
            "session.idle": self._on_session_idle,
            "session.error": self._on_session_error,
            "permission.asked": self._on_permission,
            "permission.updated": self._on_permission,
            "question.asked": self._on_question,
        }
        handler = handlers.get(event.type)
        if handler is None:
            if event.type not in ("server.heartbeat", "server.connected"):
                logger.debug(f"SSE event: {event.type}")
            return

        try:
            await handler(session, event.properties)
        except ValidationError as e:
            logger.warning(f"Dropping malformed {event.type} event: {e.error_count()} validation errors")
        except Exception as e:
            logger.error(f"Error handling {event.type} event: {e}")

    async def _on_part_updated(self, session: OpenCodeSession, props: Dict[str, Any]):
        part = Part.model_validate(props.get("part") or {})
        if part.type and part.type != "text":
            return
        delta = props.get("delta")
        if not isinstance(delta, str) or not delta:
            return
        if part.id and session.last_part_id and part.id != session.last_part_id and session.response_text:
            session.response_text += "\n\n"
        session.last_part_id = part.id or session.last_part_id
        session.response_text += delta
        session.debouncer.push(session.response_text)

    async def _on_message_updated(self, session: OpenCodeSession, props: Dict[str, Any]):
        if not props.get("info"):
            return
        info = MessageInfo.model_validate(props["info"])

        if info.role == "assistant" and info.modelID:
            label = f"{info.providerID}/{info.modelID}" if info.providerID else info.modelID
            session.model_label = label
            if not session.model_info_shown:
                session.model_info_shown = True
                logger.info(f"Using model: {label}")
                await self._emit_output(session.user_id, f"Model: {label}", notice=True)

        if info.finish and info.role == "assistant":
            await self._flush(session)

        if info.error:
            message = extract_error_message(info.error)
            logger.error(f"Message error: {message}")
            await self._emit_output(session.user_id, f"Error: {message}", notice=True)

    async def _on_session_idle(self, session: OpenCodeSession, props: Dict[str, Any]):
        logger.debug("Session idle")
        await self._flush(session)

    async def _on_session_error(self, session: OpenCodeSession, props: Dict[str, Any]):
        message = extract_error_message(props.get("error"))
        logger.for_session(session.user_id, self.name).error(
            f"Session error: {message}", fields={"session_id": session.session_id},
        )
        await self._emit_output(session.user_id, f"OpenCode error: {message}", notice=True)

    async def _on_permission(self, session: OpenCodeSession, props: Dict[str, Any]):
        request_id = props.get("requestID") or props.get("id")
        if not request_id:
            return
        logger.info(f"Auto-approving permission request {request_id}")
        try:
            await self._api("POST", f"/permission/{request_id}/reply", {"reply": "always"})
        except AgentApiError as e:
            logger.error(f"Failed to reply to permission: {e}")

    async def _on_question(self, session: OpenCodeSession, props: Dict[str, Any]):
        asked = QuestionAsked.model_validate(props)
        request_id = asked.id or asked.requestID
        questions = [q.to_question() for q in asked.questions]
        if not request_id or not questions:
            return
        # Text streamed before the question belongs above it in the chat
        await self._flush(session)
        await self._notify(AgentEvent.question(session.user_id, request_id, questions))

    # ─── Output ───────────────────────────────────────────────────────

    async def _emit_response(self, session: OpenCodeSession, text: str):
        if not session.active or not text or not text.strip():
            return
        if text == session.last_emitted:
            return
        session.last_emitted = text
        await self._emit_output(session.user_id, text)

    async def _flush(self, session: OpenCodeSession):
        session.debouncer.take()
        await self._emit_response(session, session.response_text)
