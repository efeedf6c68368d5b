"""Transition rules for a live session.

    pending --start--> question_active --expire/force_close--> question_closed
    question_closed --advance--> question_active | ended
    any non-terminal --end--> ended

The machine mutates a ``SessionRecord`` in place and reports the event that
the transition produced. Ownership checks, locking and persistence are the
engine's job.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from live_quiz.core.errors import InvalidState
from live_quiz.core.models import EventType, Question, SessionRecord, SessionStatus

END_REASON_TEACHER = "teacher"
END_REASON_COMPLETED = "completed"
END_REASON_MAX_DURATION = "max_duration"
CLOSE_REASON_EXPIRED = "expired"
CLOSE_REASON_FORCED = "forced"


@dataclass(slots=True, frozen=True)
class Transition:
    event_type: EventType
    data: dict[str, object]


def state_payload(session: SessionRecord) -> dict[str, object]:
    """Status fields every transition event carries."""
    return {
        "status": session.status.value,
        "question_index": session.current_question_index,
        "question_id": session.current_question_id,
        "question_count": len(session.question_ids),
        "question_started_at": _iso(session.question_started_at),
        "deadline": _iso(session.question_deadline),
    }


class SessionStateMachine:
    def __init__(self, default_question_seconds: int) -> None:
        self._default_question_seconds = default_question_seconds

    def question_duration(self, question: Question) -> timedelta:
        seconds = question.time_limit_seconds or self._default_question_seconds
        return timedelta(seconds=seconds)

    def start(self, session: SessionRecord, first_question: Question, now: datetime) -> Transition:
        if session.status is not SessionStatus.PENDING:
            raise InvalidState(f"Session {session.id} has already been started.")
        return self._open_question(session, 0, first_question, now)

    def advance(self, session: SessionRecord, next_question: Question | None, now: datetime) -> Transition:
        """Open the next question, or end the session when none remain."""
        if session.status is not SessionStatus.QUESTION_CLOSED:
            raise InvalidState(
                f"Session {session.id} can only advance from question_closed, not {session.status.value}."
            )
        if not session.has_remaining_questions:
            return self.end(session, now, END_REASON_COMPLETED)
        if next_question is None:
            raise InvalidState(f"Session {session.id} has no question at index {session.questions_presented}.")
        return self._open_question(session, session.questions_presented, next_question, now)

    def force_close(self, session: SessionRecord) -> Transition:
        self._require_active(session)
        return self._close_question(session, CLOSE_REASON_FORCED)

    def expire(self, session: SessionRecord, question_index: int, now: datetime) -> Transition:
        """Close the question at ``question_index`` once its deadline has passed.

        Raises ``InvalidState`` when the timer is stale: the session moved on,
        the question was already closed, or the deadline is still ahead.
        """
        self._require_active(session)
        if session.current_question_index != question_index:
            raise InvalidState(
                f"Timer for question {question_index} is stale; "
                f"question {session.current_question_index} is live."
            )
        if session.question_deadline is None or now < session.question_deadline:
            raise InvalidState(f"Deadline for question {question_index} has not passed yet.")
        return self._close_question(session, CLOSE_REASON_EXPIRED)

    def end(self, session: SessionRecord, now: datetime, reason: str = END_REASON_TEACHER) -> Transition:
        if session.status is SessionStatus.ENDED:
            raise InvalidState(f"Session {session.id} has already ended.")
        if session.current_question_index is not None:
            session.last_question_index = session.current_question_index
        session.status = SessionStatus.ENDED
        session.current_question_index = None
        session.question_deadline = None
        session.ended_at = now
        session.end_reason = reason
        data = state_payload(session)
        data.update({"reason": reason, "ended_at": _iso(now)})
        return Transition(EventType.SESSION_ENDED, data)

    def _open_question(
        self,
        session: SessionRecord,
        index: int,
        question: Question,
        now: datetime,
    ) -> Transition:
        if question.id != session.question_ids[index]:
            raise InvalidState(f"Question {question.id} is not at position {index} of session {session.id}.")
        session.status = SessionStatus.QUESTION_ACTIVE
        session.current_question_index = index
        session.last_question_index = index
        session.questions_presented = index + 1
        session.question_started_at = now
        session.question_deadline = now + self.question_duration(question)
        return Transition(EventType.QUESTION_STARTED, state_payload(session))

    def _close_question(self, session: SessionRecord, reason: str) -> Transition:
        closed_index = session.current_question_index
        closed_id = session.current_question_id
        session.status = SessionStatus.QUESTION_CLOSED
        session.current_question_index = None
        session.question_deadline = None
        data = state_payload(session)
        data.update({"closed_question_index": closed_index, "closed_question_id": closed_id, "reason": reason})
        return Transition(EventType.QUESTION_CLOSED, data)

    @staticmethod
    def _require_active(session: SessionRecord) -> None:
        if session.status is not SessionStatus.QUESTION_ACTIVE:
            raise InvalidState(f"Session {session.id} has no live question ({session.status.value}).")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
