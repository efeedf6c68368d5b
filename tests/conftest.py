"""Shared fixtures: a seeded in-memory store, a manual clock and a manual scheduler."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Hashable

import pytest

from live_quiz.core.errors import SubscriptionClosed
from live_quiz.core.models import Principal, Question, QuestionKind, Role
from live_quiz.core.services.deadline_scheduler import Scheduler
from live_quiz.core.services.session_store import InMemorySessionStore
from live_quiz.core.session_engine import SessionEngine
from live_quiz.core.settings import EngineSettings

TEACHER_ID = 1
OTHER_TEACHER_ID = 2
STUDENT_IDS = (10, 11, 12)
OUTSIDER_ID = 99


class ManualClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class ManualScheduler(Scheduler):
    """Records timers; tests fire them explicitly."""

    def __init__(self, clock: ManualClock) -> None:
        self._clock = clock
        self.pending: dict[Hashable, tuple[datetime, Callable[[], None]]] = {}

    def schedule(self, key, delay_seconds, callback) -> None:
        self.pending[key] = (self._clock() + timedelta(seconds=delay_seconds), callback)

    def cancel(self, key) -> bool:
        return self.pending.pop(key, None) is not None

    def cancel_all(self) -> None:
        self.pending.clear()

    def fire(self, key) -> None:
        _, callback = self.pending.pop(key)
        callback()

    def run_due(self) -> int:
        due = [key for key, (when, _) in self.pending.items() if when <= self._clock()]
        for key in due:
            if key in self.pending:
                self.fire(key)
        return len(due)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def scheduler(clock: ManualClock) -> ManualScheduler:
    return ManualScheduler(clock)


@pytest.fixture
def store() -> InMemorySessionStore:
    store = InMemorySessionStore()
    store.add_class(TEACHER_ID, "5B", set(STUDENT_IDS))
    store.add_class(OTHER_TEACHER_ID, "6A", {OUTSIDER_ID})
    store.add_question_list(
        1,
        "Fractions",
        [
            Question(id=0, text="What is $1/2 + 1/4$?", options=["1/4", "3/4", "1", "2/6"], correct_option_index=1),
            Question(
                id=0,
                text="Write $0.5$ as a fraction.",
                kind=QuestionKind.SHORT_ANSWER,
                correct_answer="1/2",
                points=2,
                time_limit_seconds=60,
            ),
            Question(id=0, text="Explain why $2/4 = 1/2$.", kind=QuestionKind.OPEN),
        ],
    )
    return store


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(question_seconds=30, violation_threshold=3, subscriber_queue_size=5)


@pytest.fixture
def engine(store, settings, scheduler, clock) -> SessionEngine:
    return SessionEngine(store, settings, scheduler=scheduler, clock=clock)


@pytest.fixture
def teacher() -> Principal:
    return Principal(TEACHER_ID, Role.TEACHER)


@pytest.fixture
def other_teacher() -> Principal:
    return Principal(OTHER_TEACHER_ID, Role.TEACHER)


@pytest.fixture
def session_id(engine: SessionEngine, teacher: Principal) -> int:
    return engine.start_session(list_id=1, class_id=1, teacher=teacher)


def drain(subscription) -> list:
    """Read every event currently queued without blocking, stopping at the end of the stream."""
    events = []
    while True:
        try:
            event = subscription.get(timeout=0)
        except SubscriptionClosed:
            return events
        if event is None:
            return events
        events.append(event)
