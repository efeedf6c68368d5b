"""Persistence port for sessions, participants and answers, plus an in-memory store."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
import copy
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Iterator

from live_quiz.constants.quiz_constants import MAX_OPTIONS, MIN_OPTIONS
from live_quiz.core.errors import Duplicate, NotFound
from live_quiz.core.models import (
    Answer,
    ClassRoom,
    Participant,
    Question,
    QuestionKind,
    QuestionList,
    SessionRecord,
    ViolationRecord,
)


class SessionStore(ABC):
    """Storage interface consumed by the session engine.

    Implementations must make ``transaction(session_id)`` atomic for the rows
    of that session: when the block raises, every write made inside it is
    undone. Rows of other sessions are never touched by the rollback.
    """

    # --- catalog (read-only for the engine) ---

    @abstractmethod
    def get_class(self, class_id: int) -> ClassRoom | None: ...

    @abstractmethod
    def get_question_list(self, list_id: int) -> QuestionList | None: ...

    @abstractmethod
    def get_question(self, question_id: int) -> Question | None: ...

    def list_questions(self, list_id: int) -> list[Question]:
        question_list = self.get_question_list(list_id)
        if question_list is None:
            raise NotFound(f"Question list {list_id} does not exist.")
        questions = []
        for question_id in question_list.question_ids:
            question = self.get_question(question_id)
            if question is None:
                raise NotFound(f"Question {question_id} does not exist.")
            questions.append(question)
        return questions

    # --- sessions ---

    @abstractmethod
    def create_session(
        self,
        teacher_id: int,
        class_id: int,
        list_id: int,
        question_ids: list[int],
        created_at: datetime,
    ) -> SessionRecord: ...

    @abstractmethod
    def get_session(self, session_id: int) -> SessionRecord | None: ...

    @abstractmethod
    def save_session(self, session: SessionRecord) -> None: ...

    @abstractmethod
    def transaction(self, session_id: int): ...

    # --- participants ---

    @abstractmethod
    def add_participant(self, session_id: int, student_id: int, joined_at: datetime) -> Participant: ...

    @abstractmethod
    def get_participant(self, participant_id: int) -> Participant | None: ...

    @abstractmethod
    def find_participant(self, session_id: int, student_id: int) -> Participant | None: ...

    @abstractmethod
    def list_participants(self, session_id: int) -> list[Participant]: ...

    @abstractmethod
    def save_participant(self, participant: Participant) -> None: ...

    # --- answers and violations ---

    @abstractmethod
    def add_answer(
        self,
        session_id: int,
        participant_id: int,
        question_id: int,
        payload: int | str,
        submitted_at: datetime,
        elapsed_ms: float,
        is_correct: bool | None,
        score: int | None,
    ) -> Answer: ...

    @abstractmethod
    def find_answer(self, session_id: int, participant_id: int, question_id: int) -> Answer | None: ...

    @abstractmethod
    def list_answers(self, session_id: int, question_id: int | None = None) -> list[Answer]: ...

    @abstractmethod
    def add_violation(self, record: ViolationRecord) -> None: ...

    @abstractmethod
    def list_violations(self, session_id: int) -> list[ViolationRecord]: ...


@dataclass(slots=True)
class _SessionRows:
    record: SessionRecord
    participants: dict[int, Participant] = field(default_factory=dict)
    answers: dict[tuple[int, int], Answer] = field(default_factory=dict)
    violations: list[ViolationRecord] = field(default_factory=list)


class InMemorySessionStore(SessionStore):
    """Process-local store. Reads hand out copies so callers must save to persist."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._classes: dict[int, ClassRoom] = {}
        self._lists: dict[int, QuestionList] = {}
        self._questions: dict[int, Question] = {}
        self._sessions: dict[int, _SessionRows] = {}
        self._participant_index: dict[int, int] = {}
        self._counters: dict[str, int] = {}

    # --- catalog seeding ---

    def add_class(self, teacher_id: int, name: str, student_ids: set[int] | None = None) -> ClassRoom:
        cleaned = name.strip()
        if not cleaned:
            raise ValueError("Class name must not be empty.")
        with self._lock:
            classroom = ClassRoom(
                id=self._next_id("class"),
                teacher_id=teacher_id,
                name=cleaned,
                student_ids=set(student_ids or ()),
            )
            self._classes[classroom.id] = classroom
            return copy.deepcopy(classroom)

    def enroll_student(self, class_id: int, student_id: int) -> None:
        with self._lock:
            classroom = self._classes.get(class_id)
            if classroom is None:
                raise NotFound(f"Class {class_id} does not exist.")
            classroom.student_ids.add(student_id)

    def add_question_list(self, class_id: int, title: str, questions: list[Question]) -> QuestionList:
        """Validate and store the questions, binding them to a new list of the class."""
        if not questions:
            raise ValueError("Question list must contain at least one question.")
        prepared = [self._prepare_question(q) for q in questions]
        with self._lock:
            if class_id not in self._classes:
                raise NotFound(f"Class {class_id} does not exist.")
            question_list = QuestionList(id=self._next_id("list"), class_id=class_id, title=title.strip())
            for question in prepared:
                question.id = self._next_id("question")
                question.list_id = question_list.id
                self._questions[question.id] = question
                question_list.question_ids.append(question.id)
            self._lists[question_list.id] = question_list
            return copy.deepcopy(question_list)

    def get_class(self, class_id: int) -> ClassRoom | None:
        with self._lock:
            return copy.deepcopy(self._classes.get(class_id))

    def get_question_list(self, list_id: int) -> QuestionList | None:
        with self._lock:
            return copy.deepcopy(self._lists.get(list_id))

    def get_question(self, question_id: int) -> Question | None:
        with self._lock:
            return copy.deepcopy(self._questions.get(question_id))

    # --- sessions ---

    def create_session(self, teacher_id, class_id, list_id, question_ids, created_at) -> SessionRecord:
        with self._lock:
            record = SessionRecord(
                id=self._next_id("session"),
                teacher_id=teacher_id,
                class_id=class_id,
                list_id=list_id,
                question_ids=list(question_ids),
                created_at=created_at,
            )
            self._sessions[record.id] = _SessionRows(record=record)
            return copy.deepcopy(record)

    def get_session(self, session_id: int) -> SessionRecord | None:
        with self._lock:
            rows = self._sessions.get(session_id)
            return copy.deepcopy(rows.record) if rows else None

    def save_session(self, session: SessionRecord) -> None:
        with self._lock:
            self._rows(session.id).record = copy.deepcopy(session)

    @contextmanager
    def transaction(self, session_id: int) -> Iterator[None]:
        with self._lock:
            backup = copy.deepcopy(self._sessions.get(session_id))
        try:
            yield
        except BaseException:
            with self._lock:
                if backup is None:
                    self._sessions.pop(session_id, None)
                else:
                    self._sessions[session_id] = backup
                self._participant_index = {
                    pid: sid
                    for pid, sid in self._participant_index.items()
                    if sid != session_id or (backup is not None and pid in backup.participants)
                }
            raise

    # --- participants ---

    def add_participant(self, session_id: int, student_id: int, joined_at: datetime) -> Participant:
        with self._lock:
            rows = self._rows(session_id)
            participant = Participant(
                id=self._next_id("participant"),
                session_id=session_id,
                student_id=student_id,
                joined_at=joined_at,
            )
            rows.participants[participant.id] = participant
            self._participant_index[participant.id] = session_id
            return copy.deepcopy(participant)

    def get_participant(self, participant_id: int) -> Participant | None:
        with self._lock:
            session_id = self._participant_index.get(participant_id)
            if session_id is None:
                return None
            return copy.deepcopy(self._sessions[session_id].participants.get(participant_id))

    def find_participant(self, session_id: int, student_id: int) -> Participant | None:
        with self._lock:
            rows = self._sessions.get(session_id)
            if rows is None:
                return None
            match = next((p for p in rows.participants.values() if p.student_id == student_id), None)
            return copy.deepcopy(match)

    def list_participants(self, session_id: int) -> list[Participant]:
        with self._lock:
            return [copy.deepcopy(p) for p in self._rows(session_id).participants.values()]

    def save_participant(self, participant: Participant) -> None:
        with self._lock:
            rows = self._rows(participant.session_id)
            if participant.id not in rows.participants:
                raise NotFound(f"Participant {participant.id} does not exist.")
            rows.participants[participant.id] = copy.deepcopy(participant)

    # --- answers and violations ---

    def add_answer(
        self,
        session_id,
        participant_id,
        question_id,
        payload,
        submitted_at,
        elapsed_ms,
        is_correct,
        score,
    ) -> Answer:
        with self._lock:
            rows = self._rows(session_id)
            key = (participant_id, question_id)
            if key in rows.answers:
                raise Duplicate(f"Participant {participant_id} already answered question {question_id}.")
            answer = Answer(
                id=self._next_id("answer"),
                session_id=session_id,
                participant_id=participant_id,
                question_id=question_id,
                payload=payload,
                submitted_at=submitted_at,
                elapsed_ms=elapsed_ms,
                is_correct=is_correct,
                score=score,
            )
            rows.answers[key] = answer
            return answer

    def find_answer(self, session_id: int, participant_id: int, question_id: int) -> Answer | None:
        with self._lock:
            rows = self._sessions.get(session_id)
            if rows is None:
                return None
            return rows.answers.get((participant_id, question_id))

    def list_answers(self, session_id: int, question_id: int | None = None) -> list[Answer]:
        with self._lock:
            answers = self._rows(session_id).answers.values()
            return sorted(
                (a for a in answers if question_id is None or a.question_id == question_id),
                key=lambda a: a.id,
            )

    def add_violation(self, record: ViolationRecord) -> None:
        with self._lock:
            self._rows(record.session_id).violations.append(record)

    def list_violations(self, session_id: int) -> list[ViolationRecord]:
        with self._lock:
            return list(self._rows(session_id).violations)

    # --- helpers ---

    def _rows(self, session_id: int) -> _SessionRows:
        rows = self._sessions.get(session_id)
        if rows is None:
            raise NotFound(f"Session {session_id} does not exist.")
        return rows

    def _next_id(self, kind: str) -> int:
        self._counters[kind] = self._counters.get(kind, 0) + 1
        return self._counters[kind]

    def _prepare_question(self, question: Question) -> Question:
        """Validate and normalize a question before storage."""
        cleaned_text = question.text.strip()
        if not cleaned_text:
            raise ValueError("Question text must not be empty.")

        options: list[str] = []
        correct_answer = question.correct_answer
        if question.kind is QuestionKind.MULTIPLE_CHOICE:
            options = self._validate_options(question.options)
            if question.correct_option_index is not None and not 0 <= question.correct_option_index < len(options):
                raise ValueError(f"Correct option index must be between 0 and {len(options) - 1}.")
        elif question.kind is QuestionKind.SHORT_ANSWER:
            if not correct_answer or not correct_answer.strip():
                raise ValueError("Short-answer questions need a correct answer.")
            correct_answer = correct_answer.strip()
        else:
            correct_answer = None

        if question.points < 0:
            raise ValueError("Points must not be negative.")

        return Question(
            id=0,
            text=cleaned_text,
            kind=question.kind,
            options=options,
            correct_option_index=question.correct_option_index if options else None,
            correct_answer=correct_answer,
            time_limit_seconds=self._normalize_time_limit(question.time_limit_seconds),
            points=question.points,
        )

    @staticmethod
    def _validate_options(options: list[str]) -> list[str]:
        if not MIN_OPTIONS <= len(options) <= MAX_OPTIONS:
            raise ValueError(f"Multiple-choice questions need {MIN_OPTIONS} to {MAX_OPTIONS} options.")
        cleaned = [option.strip() for option in options]
        if any(not option for option in cleaned):
            raise ValueError("Option text cannot be empty.")
        return cleaned

    @staticmethod
    def _normalize_time_limit(time_limit_seconds: int | None) -> int | None:
        if time_limit_seconds is None:
            return None
        if not isinstance(time_limit_seconds, int):
            raise ValueError("Time limit must be provided as an integer number of seconds.")
        if time_limit_seconds <= 0:
            raise ValueError("Time limit must be a positive integer.")
        return time_limit_seconds
