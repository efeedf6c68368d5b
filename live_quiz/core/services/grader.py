"""Answer intake, grading rules and score tallies."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import re
import string
import unicodedata

from live_quiz.core.errors import Duplicate, Forbidden, InvalidState
from live_quiz.core.models import (
    Answer,
    AnswerOutcome,
    Participant,
    Question,
    QuestionKind,
    SessionRecord,
    SessionStatus,
)
from live_quiz.core.services.session_store import SessionStore

_WHITESPACE = re.compile(r"\s+")
_EDGE_PUNCTUATION = string.punctuation + "¡¿«»“”‘’"


@dataclass(slots=True, frozen=True)
class Grade:
    is_correct: bool | None
    score: int | None


def normalize_text(value: str) -> str:
    """Fold an answer for comparison: NFKC, case-folded, single spaces, no edge punctuation."""
    folded = unicodedata.normalize("NFKC", value).casefold()
    collapsed = _WHITESPACE.sub(" ", folded).strip()
    return collapsed.strip(_EDGE_PUNCTUATION).strip()


def coerce_payload(question: Question, payload: object) -> int | str:
    """Check that the payload has the shape the question kind expects."""
    if question.kind is QuestionKind.MULTIPLE_CHOICE:
        if isinstance(payload, bool) or not isinstance(payload, int):
            raise ValueError("Multiple-choice answers must be an option index.")
        if not 0 <= payload < len(question.options):
            raise ValueError(f"Option index must be between 0 and {len(question.options) - 1}.")
        return payload
    if not isinstance(payload, str):
        raise ValueError("Answer text must be a string.")
    if not payload.strip():
        raise ValueError("Answer text must not be empty.")
    return payload.strip()


def grade(question: Question, payload: int | str) -> Grade:
    if question.kind is QuestionKind.MULTIPLE_CHOICE:
        if question.correct_option_index is None:
            return Grade(is_correct=None, score=None)
        is_correct = payload == question.correct_option_index
    elif question.kind is QuestionKind.SHORT_ANSWER:
        if question.correct_answer is None:
            return Grade(is_correct=None, score=None)
        is_correct = normalize_text(str(payload)) == normalize_text(question.correct_answer)
    else:
        # Open answers wait for manual review.
        return Grade(is_correct=None, score=None)
    return Grade(is_correct=is_correct, score=question.points if is_correct else 0)


class AnswerIntake:
    """Accepts at most one answer per participant for the live question."""

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    def submit(
        self,
        session: SessionRecord,
        participant: Participant,
        question: Question,
        payload: object,
        submitted_at: datetime,
    ) -> tuple[Answer, AnswerOutcome]:
        """Validate, grade and store an answer. ``participant`` is updated in place."""
        if session.status is not SessionStatus.QUESTION_ACTIVE:
            raise InvalidState(f"Session {session.id} is not accepting answers ({session.status.value}).")
        if question.id != session.current_question_id:
            raise InvalidState(f"Question {question.id} is not the live question of session {session.id}.")
        if participant.session_id != session.id:
            raise Forbidden(f"Participant {participant.id} is not a member of session {session.id}.")
        if participant.removed:
            raise Forbidden(f"Participant {participant.id} was removed from session {session.id}.")
        if self._store.find_answer(session.id, participant.id, question.id) is not None:
            raise Duplicate(f"Participant {participant.id} already answered question {question.id}.")

        value = coerce_payload(question, payload)
        result = grade(question, value)
        elapsed_ms = 0.0
        if session.question_started_at is not None:
            elapsed_ms = max(0.0, (submitted_at - session.question_started_at).total_seconds() * 1000)

        answer = self._store.add_answer(
            session_id=session.id,
            participant_id=participant.id,
            question_id=question.id,
            payload=value,
            submitted_at=submitted_at,
            elapsed_ms=elapsed_ms,
            is_correct=result.is_correct,
            score=result.score,
        )
        if result.score is not None:
            participant.score += result.score
        self._store.save_participant(participant)

        outcome = AnswerOutcome(
            answer_id=answer.id,
            question_id=question.id,
            submitted_at=submitted_at,
            elapsed_ms=elapsed_ms,
            is_correct=result.is_correct,
            score=result.score,
            total_score=participant.score,
        )
        return answer, outcome


@dataclass(slots=True, frozen=True)
class LeaderboardRow:
    """Immutable ranking entry returned to consumers."""

    participant_id: int
    student_id: int
    score: int
    correct_answers: int
    total_answers: int
    total_answer_time_ms: float
    removed: bool


def build_leaderboard(
    participants: list[Participant],
    answers: list[Answer],
    limit: int | None = None,
) -> list[LeaderboardRow]:
    """Rank participants by score, then by total answer time."""
    rows = []
    for participant in participants:
        own = [a for a in answers if a.participant_id == participant.id]
        rows.append(
            LeaderboardRow(
                participant_id=participant.id,
                student_id=participant.student_id,
                score=participant.score,
                correct_answers=sum(1 for a in own if a.is_correct),
                total_answers=len(own),
                total_answer_time_ms=sum(a.elapsed_ms for a in own),
                removed=participant.removed,
            )
        )
    rows.sort(key=lambda r: (-r.score, r.total_answer_time_ms, r.participant_id))
    return rows if limit is None else rows[:limit]
