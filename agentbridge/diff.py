"""
Incremental diff between two normalized pane snapshots.

A capture is always the whole visible pane, so consecutive captures mostly
repeat each other. Lines are compared as a multiset rather than by position,
which tolerates partial redraws where an old line shows up further down.
"""
import re
from collections import Counter

_STATUS_GLYPH_RE = re.compile(r"^[●○⏳✓]\s*")


def comparison_key(line: str) -> str:
    """Line identity for diffing: trimmed, without a leading status glyph."""
    return _STATUS_GLYPH_RE.sub("", line.strip())


def get_new_content(old: str, new: str) -> str:
    """Return the lines of ``new`` that were not already present in ``old``."""
    if not old:
        return new
    if old == new:
        return ""

    remaining = Counter(key for key in map(comparison_key, old.split("\n")) if key)

    fresh = []
    for line in new.split("\n"):
        key = comparison_key(line)
        if not key:
            continue
        if remaining[key] > 0:
            remaining[key] -= 1
        else:
            fresh.append(line)

    return "\n".join(fresh).strip()
