"""
TUI noise filter for Claude Code pane captures.

Every rule is a plain line predicate; there is no parsing state. The rules
describe one particular rendering of the Claude Code TUI, so they are kept
together in a versioned ``TuiRuleSet`` that an adapter can swap out when the
upstream interface changes.
"""
import re
from dataclasses import dataclass, field
from typing import List, Optional, Pattern, Tuple

from .terminal_text import collapse_blank_lines

TOOL_VERBS: Tuple[str, ...] = (
    "Bash", "Read", "Write", "Edit", "Glob", "Grep",
    "Task", "TodoWrite", "WebFetch", "WebSearch",
)

RUNNING_ICON = "⏳"
DONE_ICON = "✓"


@dataclass
class NoiseRule:
    """A single suppression predicate.

    ``on_trimmed`` matches against the stripped line instead of the raw one.
    ``max_len``/``min_len`` further restrict the match by stripped length.
    ``skip_tool_calls`` leaves recognized tool-call lines alone.
    """
    name: str
    pattern: Pattern
    on_trimmed: bool = False
    max_len: Optional[int] = None
    min_len: Optional[int] = None
    skip_tool_calls: bool = False

    def matches(self, line: str, trimmed: str, is_tool_call: bool) -> bool:
        if self.skip_tool_calls and is_tool_call:
            return False
        if self.max_len is not None and len(trimmed) >= self.max_len:
            return False
        if self.min_len is not None and len(trimmed) <= self.min_len:
            return False
        return bool(self.pattern.search(trimmed if self.on_trimmed else line))


def _rule(name: str, pattern: str, flags: int = 0, **kwargs) -> NoiseRule:
    return NoiseRule(name=name, pattern=re.compile(pattern, flags), **kwargs)


def _tool_call_re(verbs: Tuple[str, ...], bullets: str) -> Pattern:
    return re.compile(
        r"^([" + re.escape(bullets) + r"])?\s*(" + "|".join(verbs) + r")\s*\(",
        re.IGNORECASE,
    )


@dataclass
class TuiRuleSet:
    """Ordered noise rules plus the tool-call vocabulary of one TUI version."""
    version: str
    rules: List[NoiseRule]
    tool_verbs: Tuple[str, ...] = TOOL_VERBS
    running_bullet: str = "●"
    done_bullet: str = "○"
    tool_call_re: Pattern = field(init=False, repr=False)

    def __post_init__(self):
        self.tool_call_re = _tool_call_re(self.tool_verbs, self.running_bullet + self.done_bullet)

    def is_tool_call(self, line: str) -> bool:
        return bool(self.tool_call_re.match(line.strip()))

    def is_noise(self, line: str) -> bool:
        trimmed = line.strip()
        is_tool_call = bool(self.tool_call_re.match(trimmed))
        return any(rule.matches(line, trimmed, is_tool_call) for rule in self.rules)


_I = re.IGNORECASE

CLAUDE_CODE_RULES = TuiRuleSet(
    version="claude-code-2",
    rules=[
        _rule("horizontal_border", r"^[─━]+$", on_trimmed=True),
        _rule("mode_banner", r"⏵⏵\s*(bypass permissions|accept edits)\s*(on|off)", _I),
        _rule("input_prompt", r"^❯"),
        _rule("mode_hint", r"\(shift\+tab to cycle\)", _I),
        _rule("glyph_only", r"^[\s·✽✢✶✻⏵❯─━↵]+$"),
        _rule("interrupt_hint", r"ctrl\+c.*to interrupt", _I, skip_tool_calls=True),
        _rule("installer_nag", r"claude code has switched|native installer|Run.*install.*or see", _I),
        _rule("installer_nag_tail", r"^install`?\s*(or see)?", _I, on_trimmed=True),
        _rule("docs_link", r"docs\.anthropic\.com", _I),
        _rule("more_options", r"more options\.?\s*$", _I, on_trimmed=True, max_len=20),
        _rule("box_border", r"^[╭─╮│╰╯\s]+$", on_trimmed=True),
        _rule("block_art", r"^[▐▛▜▌▝▘█▀▄░▒▓\s]+$", on_trimmed=True),
        _rule("tab_bar", r"^←.*→\s*$", on_trimmed=True),
        _rule("select_hint", r"Enter to select", _I),
        _rule("welcome_panel", r"Recent activity|What's new|/resume for more", _I),
        _rule("welcome_back", r"Welcome\s*back", _I),
        _rule("boxed_line", r"[╭─╮│╰╯]", min_len=50),
        _rule("activity_row", r"^\s*│.*\d+[smh]\s+ago\s+", _I),
        _rule("activity_rule", r"^\s*│.*[─]+\s*│\s*$"),
    ],
)


def normalize_tool_call_line(line: str, rules: TuiRuleSet = CLAUDE_CODE_RULES) -> str:
    """Replace a tool-call bullet with a status icon.

    A running bullet becomes an hourglass; a done bullet or a bare tool call
    becomes a checkmark. Anything that is not a tool call is returned as is.
    """
    trimmed = line.strip()
    match = rules.tool_call_re.match(trimmed)
    if not match:
        return line

    bullet = match.group(1)
    if bullet:
        rest = trimmed[len(bullet):].lstrip()
        icon = RUNNING_ICON if bullet == rules.running_bullet else DONE_ICON
        return f"{icon} {rest}"
    return f"{DONE_ICON} {trimmed}"


def strip_tui_elements(text: str, rules: TuiRuleSet = CLAUDE_CODE_RULES) -> str:
    """Drop TUI chrome from normalized text.

    Returns an empty string when nothing meaningful is left.
    """
    kept = []
    for line in text.split("\n"):
        if rules.is_noise(line):
            continue
        if rules.is_tool_call(line):
            line = normalize_tool_call_line(line, rules)
        kept.append(line)

    return collapse_blank_lines("\n".join(kept))
