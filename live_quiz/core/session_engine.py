"""Facade over the live session services: store, state machine, violations, intake, broadcast.

All work on one session runs under that session's lock and inside a store
transaction scoped to it. Events are published only after the transaction
commits, still under the lock, so listeners see them in production order
and never see a change that was rolled back.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Callable, TypeVar

from live_quiz.core.access import ResourceKind, can_act
from live_quiz.core.errors import Forbidden, InvalidState, NotFound, StoreError
from live_quiz.core.models import (
    Answer,
    AnswerOutcome,
    EventType,
    Participant,
    Principal,
    Question,
    Role,
    SessionRecord,
    SessionStatus,
    ViolationOutcome,
)
from live_quiz.core.question_renderer import QuestionRenderer
from live_quiz.core.services.broadcast import BroadcastChannel, Subscription
from live_quiz.core.services.deadline_scheduler import Scheduler, ThreadingScheduler
from live_quiz.core.services.grader import AnswerIntake, LeaderboardRow, build_leaderboard
from live_quiz.core.services.session_locks import SessionLocks
from live_quiz.core.services.session_store import SessionStore
from live_quiz.core.services.state_machine import (
    END_REASON_MAX_DURATION,
    END_REASON_TEACHER,
    SessionStateMachine,
    Transition,
    state_payload,
)
from live_quiz.core.services.violation_tracker import (
    REMOVED_SESSION_ENDED,
    ViolationTracker,
    mark_removed,
)
from live_quiz.core.settings import EngineSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")
_Events = list[tuple[EventType, dict[str, object]]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionEngine:
    """Runs live quiz sessions for any number of classes in one process."""

    def __init__(
        self,
        store: SessionStore,
        settings: EngineSettings | None = None,
        scheduler: Scheduler | None = None,
        clock: Callable[[], datetime] = utcnow,
        renderer: QuestionRenderer | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or EngineSettings()
        self._scheduler = scheduler or ThreadingScheduler()
        self._clock = clock
        self._renderer = renderer or QuestionRenderer()
        self._locks = SessionLocks()
        self._machine = SessionStateMachine(self._settings.question_seconds)
        self._violations = ViolationTracker(self._settings.violation_threshold)
        self._intake = AnswerIntake(store)
        self._channel = BroadcastChannel(self._settings.subscriber_queue_size, clock)

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def channel(self) -> BroadcastChannel:
        return self._channel

    # --- Session lifecycle ---

    def start_session(self, list_id: int, class_id: int, teacher: Principal) -> int:
        """Create a pending session for a question list bound to one of the teacher's classes."""
        if self._store.get_class(class_id) is None:
            raise NotFound(f"Class {class_id} does not exist.")
        question_list = self._store.get_question_list(list_id)
        if question_list is None:
            raise NotFound(f"Question list {list_id} does not exist.")
        if (
            question_list.class_id != class_id
            or not can_act(self._store, teacher, ResourceKind.CLASS, class_id)
            or not can_act(self._store, teacher, ResourceKind.QUESTION_LIST, list_id)
        ):
            raise Forbidden(f"User {teacher.user_id} does not own class {class_id} and list {list_id}.")
        if not question_list.question_ids:
            raise ValueError("Question list has no questions.")

        session = self._store.create_session(
            teacher_id=teacher.user_id,
            class_id=class_id,
            list_id=list_id,
            question_ids=question_list.question_ids,
            created_at=self._clock(),
        )
        self._scheduler.schedule(
            ("lifetime", session.id),
            self._settings.max_session_seconds,
            lambda: self._end_after_max_duration(session.id),
        )
        logger.info(
            "Session %s created by teacher %s for list %s (%s questions)",
            session.id,
            teacher.user_id,
            list_id,
            len(session.question_ids),
        )
        return session.id

    def start(self, session_id: int, teacher: Principal) -> SessionStatus:
        def action(session: SessionRecord) -> tuple[SessionStatus, _Events]:
            self._require_owner(session, teacher)
            transition = self._machine.start(session, self._question_at(session, 0), self._clock())
            self._store.save_session(session)
            return session.status, [self._transition_event(session, transition)]

        status = self._apply(session_id, action, transition=True)
        logger.info("Session %s started", session_id)
        return status

    def advance(self, session_id: int, teacher: Principal) -> SessionStatus:
        """Open the next question, or end the session after the last one."""

        def action(session: SessionRecord) -> tuple[SessionStatus, _Events]:
            self._require_owner(session, teacher)
            next_question = None
            if session.status is SessionStatus.QUESTION_CLOSED and session.has_remaining_questions:
                next_question = self._question_at(session, session.questions_presented)
            transition = self._machine.advance(session, next_question, self._clock())
            if session.status is SessionStatus.ENDED:
                self._remove_all_participants(session)
            self._store.save_session(session)
            return session.status, [self._transition_event(session, transition)]

        status = self._apply(session_id, action, transition=True)
        logger.info("Session %s advanced to %s", session_id, status.value)
        return status

    def force_close(self, session_id: int, teacher: Principal) -> bool:
        """Close the live question now. Returns False if the deadline already closed it.

        Either way the committed status is ``question_closed``.
        """

        def action(session: SessionRecord) -> tuple[bool, _Events]:
            self._require_owner(session, teacher)
            if session.status is SessionStatus.QUESTION_CLOSED:
                logger.debug("Force close on session %s lost the race with expiry", session.id)
                return False, []
            transition = self._machine.force_close(session)
            self._store.save_session(session)
            return True, [self._transition_event(session, transition)]

        closed = self._apply(session_id, action, transition=True)
        if closed:
            logger.info("Session %s question closed by teacher", session_id)
        return closed

    def expire(self, session_id: int, question_index: int) -> bool:
        """Timer entry point: close ``question_index`` if it is still live and overdue.

        A stale or early call changes nothing and emits nothing.
        """

        def action(session: SessionRecord) -> tuple[bool, _Events]:
            try:
                transition = self._machine.expire(session, question_index, self._clock())
            except InvalidState as exc:
                logger.debug("Ignoring expiry on session %s: %s", session.id, exc)
                return False, []
            self._store.save_session(session)
            return True, [self._transition_event(session, transition)]

        expired = self._apply(session_id, action, transition=True)
        if expired:
            logger.info("Session %s question %s expired", session_id, question_index)
        return expired

    def end(self, session_id: int, teacher: Principal) -> SessionStatus:
        def action(session: SessionRecord) -> tuple[SessionStatus, _Events]:
            self._require_owner(session, teacher)
            event = self._end(session, END_REASON_TEACHER)
            return session.status, [event]

        status = self._apply(session_id, action, transition=True)
        logger.info("Session %s ended by teacher", session_id)
        return status

    # --- Participants ---

    def join_session(self, session_id: int, student_id: int) -> int:
        """Register a student of the session's class. Joining again returns the same id."""

        def action(session: SessionRecord) -> tuple[int, _Events]:
            if session.status is SessionStatus.ENDED:
                raise InvalidState(f"Session {session.id} has ended.")
            classroom = self._store.get_class(session.class_id)
            if classroom is None or student_id not in classroom.student_ids:
                raise Forbidden(f"Student {student_id} is not enrolled in class {session.class_id}.")
            existing = self._store.find_participant(session.id, student_id)
            if existing is not None:
                if existing.removed:
                    raise Forbidden(f"Student {student_id} was removed from session {session.id}.")
                return existing.id, []
            participant = self._store.add_participant(session.id, student_id, self._clock())
            data: dict[str, object] = {
                "participant_id": participant.id,
                "student_id": student_id,
                "participant_count": self._active_participant_count(session.id),
            }
            return participant.id, [(EventType.PARTICIPANT_JOINED, data)]

        participant_id = self._apply(session_id, action)
        logger.info("Student %s joined session %s as participant %s", student_id, session_id, participant_id)
        return participant_id

    def participant_id_for(self, session_id: int, student_id: int) -> int:
        self._require_session(session_id)
        participant = self._store.find_participant(session_id, student_id)
        if participant is None:
            raise NotFound(f"Student {student_id} has not joined session {session_id}.")
        return participant.id

    def record_violation(self, session_id: int, participant_id: int, kind: str) -> ViolationOutcome:
        def action(session: SessionRecord) -> tuple[ViolationOutcome, _Events]:
            participant = self._require_participant(session, participant_id)
            result = self._violations.record(participant, kind, self._clock())
            if result.audit is None:
                return result.outcome, []
            self._store.add_violation(result.audit)
            self._store.save_participant(participant)
            return result.outcome, [(result.event_type, result.data)]

        outcome = self._apply(session_id, action)
        if outcome.changed:
            logger.info(
                "Violation %s/%s (%s) for participant %s in session %s%s",
                outcome.violation_count,
                outcome.threshold,
                kind,
                participant_id,
                session_id,
                "; participant removed" if outcome.removed else "",
            )
        return outcome

    # --- Answers ---

    def submit_answer(
        self,
        session_id: int,
        participant_id: int,
        question_id: int,
        payload: object,
        submitted_at: datetime | None = None,
    ) -> AnswerOutcome:
        """Accept one answer for the live question.

        Arrival order under the session lock decides late answers: an answer
        that gets the lock before the close transition is accepted, even past
        the deadline.
        """
        received_at = submitted_at or self._clock()

        def action(session: SessionRecord) -> tuple[AnswerOutcome, _Events]:
            participant = self._store.get_participant(participant_id)
            if participant is None:
                raise NotFound(f"Participant {participant_id} does not exist.")
            question = self._store.get_question(question_id)
            if question is None:
                raise NotFound(f"Question {question_id} does not exist.")
            _, outcome = self._intake.submit(session, participant, question, payload, received_at)
            data: dict[str, object] = {
                "participant_id": participant.id,
                "submitted_at": received_at.isoformat(),
            }
            return outcome, [(EventType.ANSWER_RECEIVED, data)]

        outcome = self._apply(session_id, action)
        logger.debug("Answer %s recorded for participant %s in session %s", outcome.answer_id, participant_id, session_id)
        return outcome

    def answers_for_review(self, session_id: int, teacher: Principal, question_id: int | None = None) -> list[Answer]:
        session = self._require_session(session_id)
        self._require_owner(session, teacher)
        return self._store.list_answers(session_id, question_id)

    def leaderboard(self, session_id: int, teacher: Principal, limit: int | None = None) -> list[LeaderboardRow]:
        session = self._require_session(session_id)
        self._require_owner(session, teacher)
        with self._locks.hold(session_id):
            participants = self._store.list_participants(session_id)
            answers = self._store.list_answers(session_id)
        return build_leaderboard(participants, answers, limit)

    # --- Live stream ---

    def subscribe(self, session_id: int, principal: Principal) -> Subscription:
        """Open an event stream whose first item is a snapshot of the session."""
        with self._locks.hold(session_id):
            with self._store.transaction(session_id):
                session = self._require_session(session_id)
                participant = self._authorize_viewer(session, principal)
                if participant is not None and session.status is not SessionStatus.ENDED:
                    participant.connected = True
                    self._store.save_participant(participant)
            subscription = self._channel.subscribe(
                session_id,
                principal,
                self._snapshot(session, participant),
                final=session.status is SessionStatus.ENDED,
            )
            subscription.participant_id = participant.id if participant else None
        logger.debug("User %s subscribed to session %s", principal.user_id, session_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._channel.unsubscribe(subscription)
        participant_id = subscription.participant_id
        if participant_id is None:
            return
        session_id = subscription.session_id
        with self._locks.hold(session_id):
            still_listening = any(
                s.participant_id == participant_id for s in self._channel.listeners(session_id)
            )
            participant = self._store.get_participant(participant_id)
            if participant is None or still_listening or not participant.connected:
                return
            with self._store.transaction(session_id):
                participant.connected = False
                self._store.save_participant(participant)
        logger.debug("Participant %s disconnected from session %s", participant_id, session_id)

    def snapshot(self, session_id: int, principal: Principal) -> dict[str, object]:
        with self._locks.hold(session_id):
            session = self._require_session(session_id)
            participant = self._authorize_viewer(session, principal)
            data = self._snapshot(session, participant)
            data["sequence"] = self._channel.last_sequence(session_id)
            return data

    def shutdown(self) -> None:
        self._scheduler.cancel_all()
        self._channel.close_all()
        logger.info("Session engine stopped")

    # --- Internals ---

    def _apply(
        self,
        session_id: int,
        action: Callable[[SessionRecord], tuple[T, _Events]],
        transition: bool = False,
    ) -> T:
        with self._locks.hold(session_id):
            try:
                with self._store.transaction(session_id):
                    session = self._require_session(session_id)
                    result, events = action(session)
            except StoreError:
                logger.error("Store failure on session %s; changes rolled back", session_id)
                raise
            for event_type, data in events:
                self._channel.publish(session_id, event_type, data)
            if transition:
                self._sync_timers(session)
            return result

    def _sync_timers(self, session: SessionRecord) -> None:
        """Match the armed timers to the committed state."""
        deadline_key = ("deadline", session.id)
        if session.status is SessionStatus.QUESTION_ACTIVE and session.question_deadline is not None:
            index = session.current_question_index
            delay = (session.question_deadline - self._clock()).total_seconds()
            self._scheduler.schedule(deadline_key, delay, lambda: self.expire(session.id, index))
            return
        self._scheduler.cancel(deadline_key)
        if session.status is SessionStatus.ENDED:
            self._scheduler.cancel(("lifetime", session.id))
            self._channel.close_session(session.id)

    def _end_after_max_duration(self, session_id: int) -> None:
        def action(session: SessionRecord) -> tuple[bool, _Events]:
            if session.status is SessionStatus.ENDED:
                return False, []
            return True, [self._end(session, END_REASON_MAX_DURATION)]

        if self._apply(session_id, action, transition=True):
            logger.info("Session %s ended after reaching the maximum duration", session_id)

    def _end(self, session: SessionRecord, reason: str) -> tuple[EventType, dict[str, object]]:
        transition = self._machine.end(session, self._clock(), reason)
        self._remove_all_participants(session)
        self._store.save_session(session)
        return self._transition_event(session, transition)

    def _remove_all_participants(self, session: SessionRecord) -> None:
        for participant in self._store.list_participants(session.id):
            if mark_removed(participant, REMOVED_SESSION_ENDED):
                self._store.save_participant(participant)

    def _transition_event(self, session: SessionRecord, transition: Transition) -> tuple[EventType, dict[str, object]]:
        data = dict(transition.data)
        if transition.event_type is EventType.QUESTION_STARTED:
            question = self._question_at(session, session.current_question_index)
            data["question"] = self._renderer.public_payload(question)
        return transition.event_type, data

    def _snapshot(self, session: SessionRecord, participant: Participant | None) -> dict[str, object]:
        data = state_payload(session)
        question = None
        if session.current_question_id is not None:
            question = self._renderer.public_payload(self._question_at(session, session.current_question_index))
        participants = self._store.list_participants(session.id)
        data.update(
            {
                "session_id": session.id,
                "last_question_index": session.last_question_index,
                "questions_presented": session.questions_presented,
                "question": question,
                "participant_count": sum(1 for p in participants if not p.removed),
                "answered_count": (
                    len(self._store.list_answers(session.id, session.current_question_id))
                    if session.current_question_id is not None
                    else 0
                ),
                "end_reason": session.end_reason,
            }
        )
        if participant is not None:
            data["participant"] = {
                "participant_id": participant.id,
                "violation_count": participant.violation_count,
                "threshold": self._violations.threshold,
                "removed": participant.removed,
                "score": participant.score,
                "answered_current": (
                    session.current_question_id is not None
                    and self._store.find_answer(session.id, participant.id, session.current_question_id) is not None
                ),
            }
        return data

    def _authorize_viewer(self, session: SessionRecord, principal: Principal) -> Participant | None:
        """Owner and admins see the session as teacher; students only through their membership."""
        if can_act(self._store, principal, ResourceKind.SESSION, session.id):
            return None
        if principal.role is not Role.STUDENT:
            raise Forbidden(f"User {principal.user_id} does not own session {session.id}.")
        participant = self._store.find_participant(session.id, principal.user_id)
        if participant is None:
            raise Forbidden(f"Student {principal.user_id} has not joined session {session.id}.")
        if participant.removed and session.status is not SessionStatus.ENDED:
            raise Forbidden(f"Student {principal.user_id} was removed from session {session.id}.")
        return participant

    def _require_owner(self, session: SessionRecord, principal: Principal) -> None:
        if not can_act(self._store, principal, ResourceKind.SESSION, session.id):
            raise Forbidden(f"User {principal.user_id} does not own session {session.id}.")

    def _require_session(self, session_id: int) -> SessionRecord:
        session = self._store.get_session(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} does not exist.")
        return session

    def _require_participant(self, session: SessionRecord, participant_id: int) -> Participant:
        participant = self._store.get_participant(participant_id)
        if participant is None or participant.session_id != session.id:
            raise NotFound(f"Participant {participant_id} is not part of session {session.id}.")
        return participant

    def _question_at(self, session: SessionRecord, index: int) -> Question:
        question = self._store.get_question(session.question_ids[index])
        if question is None:
            raise NotFound(f"Question {session.question_ids[index]} does not exist.")
        return question

    def _active_participant_count(self, session_id: int) -> int:
        return sum(1 for p in self._store.list_participants(session_id) if not p.removed)

