"""
Logging setup for the bridge.

Records can be bound to the chat user and agent they concern through
``get_logger(...).for_session(user_id, agent)``. The plain format shows that
binding as a ``[user agent]`` prefix; the JSON format emits it as fields.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

SESSION_FIELDS = ("user_id", "agent")

# These log every HTTP request at INFO; long-polling and SSE make that unreadable
NOISY_LOGGERS = ("httpx", "httpcore", "telegram", "telegram.ext")

PLAIN_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(session)s%(message)s"


class SessionFilter(logging.Filter):
    """Renders the session binding into ``record.session`` for the plain format."""

    def filter(self, record: logging.LogRecord) -> bool:
        parts = [str(getattr(record, name)) for name in SESSION_FIELDS if getattr(record, name, None) is not None]
        record.session = f"[{' '.join(parts)}] " if parts else ""
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        data: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for name in SESSION_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                data[name] = value
        data.update(getattr(record, "fields", None) or {})

        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)

        return json.dumps(data, ensure_ascii=False, default=str)


class SessionLogger(logging.LoggerAdapter):
    """A logger bound to one user's session. ``fields=`` adds JSON-only data."""

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.pop("extra", None) or {})
        fields = kwargs.pop("fields", None)
        if fields:
            extra["fields"] = fields
        kwargs["extra"] = extra
        return msg, kwargs


class BridgeLogger(logging.Logger):
    def for_session(self, user_id: int, agent: Optional[str] = None) -> SessionLogger:
        return SessionLogger(self, {"user_id": user_id, "agent": agent})


logging.setLoggerClass(BridgeLogger)


def setup_logging(
    level: str = None,
    json_format: bool = None,
    log_file: str = None
):
    level = level or os.environ.get("AGENTBRIDGE_LOG_LEVEL", "INFO")
    if json_format is None:
        json_format = os.environ.get("AGENTBRIDGE_LOG_JSON", "0") == "1"
    log_file = log_file or os.environ.get("AGENTBRIDGE_LOG_FILE")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    plain = logging.Formatter(PLAIN_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        handler.addFilter(SessionFilter())
        handler.setFormatter(JSONFormatter() if json_format else plain)
        root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> BridgeLogger:
    return logging.getLogger(name)
