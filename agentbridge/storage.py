"""
Persistence for the bridge: per-user work directories (SQLite), the list of
Claude Code sessions started through the bot, and the ids of chat messages the
bot sent (JSON files). The JSON files are caches, not a stable format.
"""
import json
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .logging_config import get_logger

logger = get_logger("agentbridge.storage")

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    user_id INTEGER PRIMARY KEY,
    work_dir TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);
"""

MAX_STORED_SESSIONS = 50
MAX_TRACKED_MESSAGES = 100


@dataclass
class UserConfig:
    user_id: int
    work_dir: str
    created_at: int
    updated_at: int

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "work_dir": self.work_dir,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class UserStorage:
    """Work directory per Telegram user."""

    def __init__(self, db_file: Path):
        self.db_file = Path(db_file)
        self.db_file.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def _get_connection(self):
        conn = sqlite3.connect(self.db_file, timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_user(self, user_id: int) -> Optional[UserConfig]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
            if not row:
                return None
            return UserConfig(
                user_id=row["user_id"],
                work_dir=row["work_dir"],
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )

    def save_work_dir(self, user_id: int, work_dir: str) -> UserConfig:
        now = int(time.time() * 1000)
        existing = self.get_user(user_id)
        config = UserConfig(
            user_id=user_id,
            work_dir=work_dir,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        with self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO users (user_id, work_dir, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (config.user_id, config.work_dir, config.created_at, config.updated_at))
        return config

    def delete_user(self, user_id: int) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM users WHERE user_id = ?", (user_id,))
            return cursor.rowcount > 0


@dataclass
class StoredSession:
    id: str
    title: str
    created_at: str
    updated_at: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StoredSession":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )

    @classmethod
    def new(cls, session_id: str, title: str) -> "StoredSession":
        now = datetime.now(timezone.utc).isoformat()
        return cls(id=session_id, title=title, created_at=now, updated_at=now)


class SessionStore:
    """Most-recent-first list of sessions, capped."""

    def __init__(self, path: Path, limit: int = MAX_STORED_SESSIONS):
        self.path = Path(path)
        self.limit = limit

    def load(self) -> List[StoredSession]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r") as f:
                return [StoredSession.from_dict(d) for d in json.load(f)]
        except (OSError, ValueError, KeyError) as e:
            logger.error(f"Failed to load sessions from {self.path}: {e}")
            return []

    def _write(self, sessions: List[StoredSession]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self.path, "w") as f:
                json.dump([s.to_dict() for s in sessions], f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save sessions to {self.path}: {e}")

    def save(self, session: StoredSession):
        sessions = self.load()
        for i, existing in enumerate(sessions):
            if existing.id == session.id:
                sessions[i] = session
                break
        else:
            sessions.insert(0, session)
        self._write(sessions[:self.limit])

    def remove(self, session_id: str):
        sessions = self.load()
        kept = [s for s in sessions if s.id != session_id]
        if len(kept) != len(sessions):
            self._write(kept)


class MessageTracker:
    """Recently sent message ids per chat, kept across restarts for /clear."""

    def __init__(self, path: Path, limit: int = MAX_TRACKED_MESSAGES):
        self.path = Path(path)
        self.limit = limit
        self._messages: Dict[int, List[int]] = self._load()

    def _load(self) -> Dict[int, List[int]]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            return {int(k): list(v) for k, v in data.items()}
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load tracked messages: {e}")
            return {}

    def _save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self.path, "w") as f:
                json.dump({str(k): v for k, v in self._messages.items()}, f)
        except OSError as e:
            logger.error(f"Failed to save tracked messages: {e}")

    def get(self, chat_id: int) -> List[int]:
        return list(self._messages.get(chat_id, []))

    def set(self, chat_id: int, message_ids: List[int]):
        self._messages[chat_id] = list(message_ids)[-self.limit:]
        self._save()

    def clear(self, chat_id: int):
        if self._messages.pop(chat_id, None) is not None:
            self._save()
