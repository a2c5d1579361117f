"""
Status vs. output classification for filtered pane chunks.

Spinner glyphs and verbs change between releases of the CLI, so the
classifier looks at the shape of a chunk rather than at specific words.
"""
import re
from typing import Optional

MAX_STATUS_LENGTH = 200
MAX_STATUS_LINES = 3
SHORT_LINE = 40

_TREE_RE = re.compile(r"^[├└│─]")
_PROGRESS_RE = re.compile(r"\d+[smh]\b.*[·↓]|↓\s*[\d.]+k?\s*tokens|thought for \d", re.IGNORECASE)
_PROSE_RE = re.compile(r"[а-яёa-z]{3,}\s+[а-яёa-z]{3,}", re.IGNORECASE)
_SPINNER_PREFIX_RE = re.compile(r"^[✻✽✶✢·*●○]\s*", re.MULTILINE)


def _is_transient_line(line: str) -> bool:
    if _TREE_RE.match(line):
        return True
    if "…" in line:
        return True
    if _PROGRESS_RE.search(line):
        return True
    return len(line) < SHORT_LINE and not _PROSE_RE.search(line)


def is_status_output(text: str) -> bool:
    """True when a chunk looks like spinner or progress text."""
    if len(text) > MAX_STATUS_LENGTH:
        return False

    lines = [line.strip() for line in text.split("\n") if line.strip()]
    if not lines or len(lines) > MAX_STATUS_LINES:
        return False

    return all(_is_transient_line(line) for line in lines)


def status_key(text: str) -> str:
    """Dedup key for a status chunk, ignoring the animated spinner glyph."""
    return _SPINNER_PREFIX_RE.sub("", text)


class StatusTracker:
    """Remembers the last status shown so spinner frames are not resent."""

    def __init__(self):
        self.last_key: Optional[str] = None

    def should_emit(self, text: str) -> bool:
        key = status_key(text)
        if key == self.last_key:
            return False
        self.last_key = key
        return True

    def reset(self):
        self.last_key = None
