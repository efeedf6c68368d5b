"""Request and response schemas for the HTTP API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, model_validator


class StartSessionPayload(BaseModel):
    """Payload schema for creating a session."""

    list_id: int
    class_id: int


class SessionCreated(BaseModel):
    session_id: int


class JoinResult(BaseModel):
    participant_id: int


class TransitionResult(BaseModel):
    session_id: int
    status: str
    changed: bool = True


class AnswerPayload(BaseModel):
    """Payload schema for submitted answers: an option index or free text."""

    question_id: int
    selected_option_index: int | None = None
    text: str | None = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def _exactly_one_value(self) -> "AnswerPayload":
        if (self.selected_option_index is None) == (self.text is None):
            raise ValueError("Provide either selected_option_index or text.")
        return self

    @property
    def value(self) -> int | str:
        return self.selected_option_index if self.selected_option_index is not None else self.text


class AnswerResult(BaseModel):
    answer_id: int
    question_id: int
    submitted_at: datetime
    elapsed_ms: float
    is_correct: bool | None
    score: int | None
    total_score: int


class ViolationPayload(BaseModel):
    kind: str = Field(min_length=1, max_length=64)


class ViolationResult(BaseModel):
    participant_id: int
    violation_count: int
    threshold: int
    removed: bool
    changed: bool


class AnswerReviewRow(BaseModel):
    answer_id: int
    participant_id: int
    question_id: int
    payload: int | str
    submitted_at: datetime
    elapsed_ms: float
    is_correct: bool | None
    score: int | None


class LeaderboardEntry(BaseModel):
    participant_id: int
    student_id: int
    score: int
    correct_answers: int
    total_answers: int
    total_answer_time_ms: float
    removed: bool
