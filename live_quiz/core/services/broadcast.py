"""Fan-out of session events to subscribed listeners.

Every listener owns a bounded queue. Publishing never blocks: a listener
whose queue is full is dropped and must resubscribe, which hands it a fresh
snapshot instead of a backlog.
"""

from __future__ import annotations

from datetime import datetime
from itertools import count
import logging
from queue import Empty, Queue
from threading import Lock
from typing import Callable, Iterator

from live_quiz.core.errors import SubscriptionClosed
from live_quiz.core.models import BroadcastEvent, EventType, Principal

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """One listener's view of a session's event stream."""

    def __init__(self, subscription_id: int, session_id: int, principal: Principal, capacity: int) -> None:
        self.id = subscription_id
        self.session_id = session_id
        self.principal = principal
        self.participant_id: int | None = None
        self._capacity = capacity
        # Unbounded underneath so the close marker always fits; capacity is enforced in offer().
        self._queue: Queue = Queue()
        self._pending = 0
        self._lock = Lock()
        self._closed = False
        self._dropped = False
        self._notify: Callable[[], None] | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dropped(self) -> bool:
        return self._dropped

    def set_notifier(self, notify: Callable[[], None] | None) -> None:
        """Register a callback run, from the publishing thread, whenever an item is queued.

        Lets an async consumer wait for the next item without holding a thread.
        """
        with self._lock:
            self._notify = notify
        if notify is not None and not self._queue.empty():
            notify()

    def offer(self, event: BroadcastEvent) -> bool:
        """Queue an event. Returns False when the queue is full."""
        with self._lock:
            if self._closed:
                return True
            if self._pending >= self._capacity:
                return False
            self._pending += 1
            self._queue.put_nowait(event)
        self._wake()
        return True

    def close(self) -> None:
        """Stop after the events already queued have been read."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put_nowait(_CLOSED)
        self._wake()

    def drop(self) -> None:
        """Close immediately, discarding anything not yet read."""
        with self._lock:
            self._dropped = True
            self._closed = True
            while True:
                try:
                    self._queue.get_nowait()
                except Empty:
                    break
            self._pending = 0
            self._queue.put_nowait(_CLOSED)
        self._wake()

    def get(self, timeout: float | None = None) -> BroadcastEvent | None:
        """Return the next event, or None if nothing arrived within ``timeout``.

        Raises ``SubscriptionClosed`` once the stream has ended.
        """
        try:
            item = self._queue.get(timeout=timeout)
        except Empty:
            return None
        if item is _CLOSED:
            # Keep the marker so later reads also see the end of the stream.
            self._queue.put_nowait(_CLOSED)
            raise SubscriptionClosed(
                f"Subscription {self.id} to session {self.session_id} "
                + ("was dropped; resubscribe for a snapshot." if self._dropped else "is closed.")
            )
        with self._lock:
            self._pending -= 1
        return item

    def _wake(self) -> None:
        notify = self._notify
        if notify is not None:
            notify()

    def __iter__(self) -> Iterator[BroadcastEvent]:
        while True:
            try:
                event = self.get(timeout=None)
            except SubscriptionClosed:
                return
            if event is not None:
                yield event


class BroadcastChannel:
    """Per-session registry of subscriptions plus the session's event sequence."""

    def __init__(self, queue_size: int, clock: Callable[[], datetime]) -> None:
        if queue_size < 1:
            raise ValueError("Queue size must be at least 1.")
        self._queue_size = queue_size
        self._clock = clock
        self._lock = Lock()
        self._ids = count(1)
        self._subscribers: dict[int, dict[int, Subscription]] = {}
        self._sequences: dict[int, int] = {}

    def last_sequence(self, session_id: int) -> int:
        with self._lock:
            return self._sequences.get(session_id, 0)

    def subscribe(
        self,
        session_id: int,
        principal: Principal,
        snapshot: dict[str, object],
        final: bool = False,
    ) -> Subscription:
        """Register a listener whose first item is a snapshot of current state.

        The caller holds the session lock, so no event can be published
        between building ``snapshot`` and registering the listener. With
        ``final`` the listener is never registered: it gets the snapshot and
        then the end of the stream.
        """
        subscription = Subscription(next(self._ids), session_id, principal, self._queue_size)
        with self._lock:
            sequence = self._sequences.get(session_id, 0)
            if not final:
                self._subscribers.setdefault(session_id, {})[subscription.id] = subscription
        subscription.offer(
            BroadcastEvent(
                session_id=session_id,
                sequence=sequence,
                type=EventType.SNAPSHOT,
                data=snapshot,
                emitted_at=self._clock(),
            )
        )
        if final:
            subscription.close()
        logger.debug("Subscription %s opened on session %s", subscription.id, session_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Remove a listener. Returns False if it was no longer registered."""
        with self._lock:
            listeners = self._subscribers.get(subscription.session_id, {})
            removed = listeners.pop(subscription.id, None) is not None
        subscription.close()
        return removed

    def publish(self, session_id: int, event_type: EventType, data: dict[str, object]) -> BroadcastEvent:
        with self._lock:
            sequence = self._sequences.get(session_id, 0) + 1
            self._sequences[session_id] = sequence
            listeners = list(self._subscribers.get(session_id, {}).values())
        event = BroadcastEvent(
            session_id=session_id,
            sequence=sequence,
            type=event_type,
            data=data,
            emitted_at=self._clock(),
        )
        overflowed = [s for s in listeners if not s.offer(event)]
        for subscription in overflowed:
            logger.warning(
                "Dropping subscription %s on session %s: queue full at sequence %s",
                subscription.id,
                session_id,
                sequence,
            )
            with self._lock:
                self._subscribers.get(session_id, {}).pop(subscription.id, None)
            subscription.drop()
        return event

    def close_session(self, session_id: int) -> list[Subscription]:
        """Close every listener of the session after its queued events."""
        with self._lock:
            listeners = list(self._subscribers.pop(session_id, {}).values())
        for subscription in listeners:
            subscription.close()
        return listeners

    def listeners(self, session_id: int) -> list[Subscription]:
        with self._lock:
            return list(self._subscribers.get(session_id, {}).values())

    def close_all(self) -> None:
        with self._lock:
            everything = [s for listeners in self._subscribers.values() for s in listeners.values()]
            self._subscribers.clear()
        for subscription in everything:
            subscription.close()
