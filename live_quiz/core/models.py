"""Domain models for live quiz sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import json


class SessionStatus(str, Enum):
    PENDING = "pending"
    QUESTION_ACTIVE = "question_active"
    QUESTION_CLOSED = "question_closed"
    ENDED = "ended"


class EventType(str, Enum):
    SNAPSHOT = "snapshot"
    QUESTION_STARTED = "question_started"
    QUESTION_CLOSED = "question_closed"
    PARTICIPANT_JOINED = "participant_joined"
    PARTICIPANT_REMOVED = "participant_removed"
    VIOLATION_WARNING = "violation_warning"
    ANSWER_RECEIVED = "answer_received"
    SESSION_ENDED = "session_ended"


class QuestionKind(str, Enum):
    MULTIPLE_CHOICE = "multiple_choice"
    SHORT_ANSWER = "short_answer"
    OPEN = "open"


class Role(str, Enum):
    TEACHER = "teacher"
    STUDENT = "student"
    ADMIN = "admin"


@dataclass(slots=True, frozen=True)
class Principal:
    """Identity yielded by the token gate."""

    user_id: int
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


@dataclass(slots=True)
class Question:
    """A stored question. Closed-form kinds carry their correct answer."""

    id: int
    text: str
    kind: QuestionKind = QuestionKind.MULTIPLE_CHOICE
    options: list[str] = field(default_factory=list)
    correct_option_index: int | None = None
    correct_answer: str | None = None
    time_limit_seconds: int | None = None
    points: int = 1
    list_id: int | None = None


@dataclass(slots=True)
class QuestionList:
    id: int
    class_id: int
    title: str
    question_ids: list[int] = field(default_factory=list)


@dataclass(slots=True)
class ClassRoom:
    id: int
    teacher_id: int
    name: str
    student_ids: set[int] = field(default_factory=set)


@dataclass(slots=True)
class SessionRecord:
    """Persisted state of one live run of a question list against a class.

    ``current_question_index`` is set only while a question is live; the
    closed question stays reachable through ``last_question_index``.
    """

    id: int
    teacher_id: int
    class_id: int
    list_id: int
    question_ids: list[int]
    status: SessionStatus = SessionStatus.PENDING
    current_question_index: int | None = None
    last_question_index: int | None = None
    questions_presented: int = 0
    question_started_at: datetime | None = None
    question_deadline: datetime | None = None
    created_at: datetime | None = None
    ended_at: datetime | None = None
    end_reason: str | None = None

    @property
    def current_question_id(self) -> int | None:
        if self.current_question_index is None:
            return None
        return self.question_ids[self.current_question_index]

    @property
    def has_remaining_questions(self) -> bool:
        return self.questions_presented < len(self.question_ids)


@dataclass(slots=True)
class Participant:
    """A student's membership and live state within a session."""

    id: int
    session_id: int
    student_id: int
    joined_at: datetime
    connected: bool = False
    violation_count: int = 0
    removed: bool = False
    removed_reason: str | None = None
    score: int = 0


@dataclass(slots=True, frozen=True)
class Answer:
    """One immutable submission by one participant for one question."""

    id: int
    session_id: int
    participant_id: int
    question_id: int
    payload: int | str
    submitted_at: datetime
    elapsed_ms: float
    is_correct: bool | None
    score: int | None


@dataclass(slots=True, frozen=True)
class ViolationRecord:
    session_id: int
    participant_id: int
    kind: str
    recorded_at: datetime
    count_after: int


@dataclass(slots=True, frozen=True)
class BroadcastEvent:
    """A state change pushed to the listeners of one session."""

    session_id: int
    sequence: int
    type: EventType
    data: dict[str, object]
    emitted_at: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "sequence": self.sequence,
            "type": self.type.value,
            "data": self.data,
            "emitted_at": self.emitted_at.isoformat(),
        }

    def to_sse(self) -> str:
        """Encode as one Server-Sent Events frame."""
        body = json.dumps(self.to_dict(), default=str)
        return f"id: {self.sequence}\nevent: {self.type.value}\ndata: {body}\n\n"


@dataclass(slots=True, frozen=True)
class AnswerOutcome:
    answer_id: int
    question_id: int
    submitted_at: datetime
    elapsed_ms: float
    is_correct: bool | None
    score: int | None
    total_score: int


@dataclass(slots=True, frozen=True)
class ViolationOutcome:
    participant_id: int
    violation_count: int
    threshold: int
    removed: bool
    changed: bool
