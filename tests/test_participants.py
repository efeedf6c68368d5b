"""Joining sessions and the violation threshold."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest

from live_quiz.core.errors import Forbidden, InvalidState, NotFound
from live_quiz.core.models import EventType, Principal, Role
from live_quiz.core.services.violation_tracker import ViolationTracker
from tests.conftest import OUTSIDER_ID, STUDENT_IDS, drain


@pytest.fixture
def live_session(engine, teacher, session_id):
    engine.start(session_id, teacher)
    return session_id


class TestJoin:
    def test_enrolled_student_joins(self, engine, store, teacher, session_id):
        subscription = engine.subscribe(session_id, teacher)
        drain(subscription)
        participant_id = engine.join_session(session_id, STUDENT_IDS[0])
        participant = store.get_participant(participant_id)
        assert participant.student_id == STUDENT_IDS[0]
        assert participant.violation_count == 0
        assert not participant.removed
        [event] = drain(subscription)
        assert event.type is EventType.PARTICIPANT_JOINED
        assert event.data["participant_count"] == 1

    def test_join_is_idempotent(self, engine, store, teacher, session_id):
        subscription = engine.subscribe(session_id, teacher)
        first = engine.join_session(session_id, STUDENT_IDS[0])
        drain(subscription)
        assert engine.join_session(session_id, STUDENT_IDS[0]) == first
        assert drain(subscription) == []
        assert len(store.list_participants(session_id)) == 1

    def test_student_outside_class_is_forbidden(self, engine, session_id):
        with pytest.raises(Forbidden):
            engine.join_session(session_id, OUTSIDER_ID)

    def test_join_during_live_question(self, engine, live_session):
        assert engine.join_session(live_session, STUDENT_IDS[1]) > 0

    def test_join_after_end_is_invalid(self, engine, teacher, session_id):
        engine.end(session_id, teacher)
        with pytest.raises(InvalidState):
            engine.join_session(session_id, STUDENT_IDS[0])

    def test_unknown_session(self, engine):
        with pytest.raises(NotFound):
            engine.join_session(404, STUDENT_IDS[0])

    def test_participant_lookup(self, engine, session_id):
        participant_id = engine.join_session(session_id, STUDENT_IDS[2])
        assert engine.participant_id_for(session_id, STUDENT_IDS[2]) == participant_id
        with pytest.raises(NotFound):
            engine.participant_id_for(session_id, STUDENT_IDS[0])


class TestViolations:
    def test_warnings_then_removal_at_threshold(self, engine, store, teacher, live_session):
        participant_id = engine.join_session(live_session, STUDENT_IDS[0])
        subscription = engine.subscribe(live_session, teacher)
        drain(subscription)

        first = engine.record_violation(live_session, participant_id, "tab_hidden")
        second = engine.record_violation(live_session, participant_id, "window_blur")
        assert (first.violation_count, first.removed) == (1, False)
        assert (second.violation_count, second.removed) == (2, False)

        third = engine.record_violation(live_session, participant_id, "tab_hidden")
        assert third.removed
        assert third.violation_count == 3

        events = drain(subscription)
        assert [e.type for e in events] == [
            EventType.VIOLATION_WARNING,
            EventType.VIOLATION_WARNING,
            EventType.PARTICIPANT_REMOVED,
        ]
        assert events[-1].data["reason"] == "violations"
        assert [v.count_after for v in store.list_violations(live_session)] == [1, 2, 3]

    def test_removed_participant_cannot_answer(self, engine, store, live_session):
        participant_id = engine.join_session(live_session, STUDENT_IDS[0])
        for _ in range(3):
            engine.record_violation(live_session, participant_id, "tab_hidden")
        question_id = store.get_session(live_session).current_question_id
        with pytest.raises(Forbidden):
            engine.submit_answer(live_session, participant_id, question_id, 1)

    def test_removed_participant_cannot_rejoin(self, engine, live_session):
        participant_id = engine.join_session(live_session, STUDENT_IDS[0])
        for _ in range(3):
            engine.record_violation(live_session, participant_id, "tab_hidden")
        with pytest.raises(Forbidden):
            engine.join_session(live_session, STUDENT_IDS[0])

    def test_violations_after_removal_change_nothing(self, engine, store, teacher, live_session):
        participant_id = engine.join_session(live_session, STUDENT_IDS[0])
        for _ in range(3):
            engine.record_violation(live_session, participant_id, "tab_hidden")
        subscription = engine.subscribe(live_session, teacher)
        drain(subscription)

        outcome = engine.record_violation(live_session, participant_id, "tab_hidden")
        assert not outcome.changed
        assert outcome.violation_count == 3
        assert drain(subscription) == []
        assert len(store.list_violations(live_session)) == 3

    def test_concurrent_reports_remove_exactly_once(self, engine, store, teacher, live_session):
        participant_id = engine.join_session(live_session, STUDENT_IDS[0])
        subscription = engine.subscribe(live_session, teacher)
        drain(subscription)
        workers = 6
        barrier = Barrier(workers)

        def report(_):
            barrier.wait(timeout=5)
            return engine.record_violation(live_session, participant_id, "tab_hidden")

        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(pool.map(report, range(workers)))

        assert sum(outcome.changed for outcome in outcomes) == 3
        assert sum(outcome.removed and outcome.changed and outcome.violation_count == 3 for outcome in outcomes) == 1
        assert store.get_participant(participant_id).violation_count == 3
        assert len(store.list_violations(live_session)) == 3
        types = [event.type for event in drain(subscription)]
        assert types.count(EventType.PARTICIPANT_REMOVED) == 1

    def test_participant_of_other_session(self, engine, teacher, live_session):
        other_session = engine.start_session(list_id=1, class_id=1, teacher=teacher)
        participant_id = engine.join_session(other_session, STUDENT_IDS[0])
        with pytest.raises(NotFound):
            engine.record_violation(live_session, participant_id, "tab_hidden")

    def test_removed_student_loses_stream_access(self, engine, live_session):
        participant_id = engine.join_session(live_session, STUDENT_IDS[0])
        for _ in range(3):
            engine.record_violation(live_session, participant_id, "tab_hidden")
        with pytest.raises(Forbidden):
            engine.subscribe(live_session, Principal(STUDENT_IDS[0], Role.STUDENT))


class TestViolationTracker:
    def test_threshold_must_be_positive(self):
        with pytest.raises(ValueError):
            ViolationTracker(0)

    def test_threshold_of_one_removes_immediately(self, store, engine, session_id, clock):
        participant_id = engine.join_session(session_id, STUDENT_IDS[0])
        participant = store.get_participant(participant_id)
        result = ViolationTracker(1).record(participant, "  ", clock())
        assert result.event_type is EventType.PARTICIPANT_REMOVED
        assert result.audit.kind == "unspecified"
        assert participant.removed
