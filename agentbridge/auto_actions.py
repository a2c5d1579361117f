"""
Automatic keystrokes for blocking CLI prompts.

These match English prompt wording from the CLI and will need updating when
that wording changes. Each rule fires once per burst of new content.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple, Union

from .logging_config import get_logger

logger = get_logger("agentbridge.auto_actions")

# A step is either a tmux key name or a pause in seconds
Step = Union[str, float]

RESET_THRESHOLD = 50


@dataclass
class AutoActionRule:
    """Keystrokes to send when every pattern in ``all_of`` matches."""
    name: str
    all_of: Sequence[re.Pattern]
    steps: Tuple[Step, ...]

    def matches(self, content: str) -> bool:
        return all(p.search(content) for p in self.all_of)


DEFAULT_RULES: List[AutoActionRule] = [
    AutoActionRule(
        name="press_enter",
        all_of=[re.compile(r"Press Enter to continue|Login successful\. Press Enter", re.IGNORECASE)],
        steps=(0.3, "Enter"),
    ),
    AutoActionRule(
        name="accept_bypass_permissions",
        all_of=[
            re.compile(r"WARNING.*Bypass|Bypass.*Permissions", re.IGNORECASE),
            re.compile(r"Yes,?\s*I\s*accept", re.IGNORECASE),
        ],
        steps=(0.3, "Down", 0.1, "Enter"),
    ),
]


@dataclass
class AutoActionTracker:
    """Per-session record of which rules already fired in this burst."""
    rules: List[AutoActionRule] = field(default_factory=lambda: list(DEFAULT_RULES))
    handled: Dict[str, bool] = field(default_factory=dict)

    def observe(self, content: str, new_part: str) -> List[AutoActionRule]:
        """Return the rules that should fire for this capture.

        ``content`` is the whole normalized pane, ``new_part`` the diff
        against the previous capture. A large enough diff rearms every rule.
        """
        if len(new_part) > RESET_THRESHOLD:
            self.handled.clear()

        due = []
        for rule in self.rules:
            if self.handled.get(rule.name):
                continue
            if rule.matches(content):
                self.handled[rule.name] = True
                logger.info(f"Auto action triggered: {rule.name}")
                due.append(rule)
        return due
