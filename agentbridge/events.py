"""
Events emitted by agent adapters.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class EventKind(str, Enum):
    OUTPUT = "output"
    STATUS = "status"
    QUESTION = "question"
    STARTED = "started"
    STOPPED = "stopped"
    CLOSED = "closed"
    ERROR = "error"


@dataclass
class QuestionOption:
    label: str
    description: str = ""


@dataclass
class Question:
    """One multiple-choice prompt the agent is waiting on."""
    question: str
    header: str = ""
    options: List[QuestionOption] = field(default_factory=list)


@dataclass
class AgentEvent:
    kind: EventKind
    user_id: int
    text: str = ""
    request_id: Optional[str] = None
    questions: List[Question] = field(default_factory=list)
    error: Optional[str] = None
    # Narration, model info and errors: delivered as their own message
    notice: bool = False
    # Name of the adapter that emitted the event
    agent: str = ""

    @classmethod
    def output(cls, user_id: int, text: str, notice: bool = False) -> "AgentEvent":
        return cls(EventKind.OUTPUT, user_id, text=text, notice=notice)

    @classmethod
    def status(cls, user_id: int, text: str) -> "AgentEvent":
        return cls(EventKind.STATUS, user_id, text=text)

    @classmethod
    def question(cls, user_id: int, request_id: str, questions: List[Question]) -> "AgentEvent":
        return cls(EventKind.QUESTION, user_id, request_id=request_id, questions=questions)

    @classmethod
    def lifecycle(cls, kind: EventKind, user_id: int) -> "AgentEvent":
        return cls(kind, user_id)

    @classmethod
    def failure(cls, user_id: int, message: str) -> "AgentEvent":
        return cls(EventKind.ERROR, user_id, error=message)
