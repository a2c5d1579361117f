"""
Data models for the Telegram side of the bridge.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..events import Question

_OPTION_DATA_RE = re.compile(r"^opt_(\d+)$")
_ANSWER_DATA_RE = re.compile(r"^qa_(\d+)_(\d+)$")


@dataclass
class CallbackAction:
    """A parsed inline button payload."""
    kind: str                # "option" or "answer"
    option: int
    question: int = 0

    @classmethod
    def parse(cls, data: str) -> Optional["CallbackAction"]:
        match = _OPTION_DATA_RE.match(data or "")
        if match:
            return cls(kind="option", option=int(match.group(1)))
        match = _ANSWER_DATA_RE.match(data or "")
        if match:
            return cls(kind="answer", question=int(match.group(1)), option=int(match.group(2)))
        return None


@dataclass
class PendingQuestion:
    """Questions the agent asked that still wait for button presses."""
    request_id: str
    agent: str
    questions: List[Question]
    answers: Dict[int, str] = field(default_factory=dict)

    def option_label(self, question: int, option: int) -> Optional[str]:
        if not 0 <= question < len(self.questions):
            return None
        options = self.questions[question].options
        if not 0 <= option < len(options):
            return None
        return options[option].label

    def record(self, question: int, label: str):
        self.answers[question] = label

    @property
    def is_complete(self) -> bool:
        return all(i in self.answers for i in range(len(self.questions)))

    def ordered_answers(self) -> List[str]:
        return [self.answers[i] for i in range(len(self.questions))]


@dataclass
class UserContext:
    """What the bridge remembers about one chat user while it runs."""
    user_id: int
    agent: str
    pending_question: Optional[PendingQuestion] = None
