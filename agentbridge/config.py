"""
Runtime configuration, read from the environment.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .errors import ConfigError

AGENTS = ("claude", "opencode")


def _parse_user_ids(raw: str) -> List[int]:
    ids = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ids.append(int(part))
        except ValueError:
            raise ConfigError(f"ALLOWED_USERS contains a non-numeric id: {part!r}")
    return ids


@dataclass
class BridgeConfig:
    """Configuration for the bridge process."""
    bot_token: str = ""
    allowed_user_ids: List[int] = field(default_factory=list)
    work_dir: str = "/workspace"
    data_dir: str = "./data"
    default_agent: str = "claude"
    opencode_url: str = "http://localhost:4096"
    opencode_username: str = "opencode"
    opencode_password: Optional[str] = None
    npm_prefix: Optional[str] = None
    output_debounce: float = 0.5
    status_debounce: float = 0.3

    @classmethod
    def from_env(cls, env=None) -> "BridgeConfig":
        env = os.environ if env is None else env

        token = env.get("TELEGRAM_BOT_TOKEN", "").strip()
        if not token:
            raise ConfigError("TELEGRAM_BOT_TOKEN is not set")

        users = _parse_user_ids(env.get("ALLOWED_USERS", ""))
        if not users:
            raise ConfigError("ALLOWED_USERS is not set")

        agent = env.get("DEFAULT_AGENT", "claude").strip().lower()
        if agent not in AGENTS:
            raise ConfigError(f"DEFAULT_AGENT must be one of {', '.join(AGENTS)}, got {agent!r}")

        return cls(
            bot_token=token,
            allowed_user_ids=users,
            work_dir=env.get("WORK_DIR", "/workspace"),
            data_dir=env.get("DATA_DIR", "./data"),
            default_agent=agent,
            opencode_url=env.get("OPENCODE_URL", "http://localhost:4096").rstrip("/"),
            opencode_username=env.get("OPENCODE_USERNAME", "opencode"),
            opencode_password=env.get("OPENCODE_PASSWORD") or None,
            npm_prefix=env.get("NPM_PREFIX") or None,
        )

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    def to_dict(self) -> dict:
        return {
            "bot_token": self.bot_token,
            "allowed_user_ids": self.allowed_user_ids,
            "work_dir": self.work_dir,
            "data_dir": self.data_dir,
            "default_agent": self.default_agent,
            "opencode_url": self.opencode_url,
            "opencode_username": self.opencode_username,
            "opencode_password": self.opencode_password,
            "npm_prefix": self.npm_prefix,
            "output_debounce": self.output_debounce,
            "status_debounce": self.status_debounce,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BridgeConfig":
        return cls(
            bot_token=data.get("bot_token", ""),
            allowed_user_ids=data.get("allowed_user_ids", []),
            work_dir=data.get("work_dir", "/workspace"),
            data_dir=data.get("data_dir", "./data"),
            default_agent=data.get("default_agent", "claude"),
            opencode_url=data.get("opencode_url", "http://localhost:4096"),
            opencode_username=data.get("opencode_username", "opencode"),
            opencode_password=data.get("opencode_password"),
            npm_prefix=data.get("npm_prefix"),
            output_debounce=data.get("output_debounce", 0.5),
            status_debounce=data.get("status_debounce", 0.3),
        )

    def to_safe_dict(self) -> dict:
        """Return config with secrets masked for display."""
        d = self.to_dict()
        if d["bot_token"]:
            token = d["bot_token"]
            if len(token) > 10:
                d["bot_token"] = token[:4] + "..." + token[-4:]
            else:
                d["bot_token"] = "***"
        if d["opencode_password"]:
            d["opencode_password"] = "***"
        return d
