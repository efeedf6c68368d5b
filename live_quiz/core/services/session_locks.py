"""Per-session locks giving each session a single writer at a time."""

from __future__ import annotations

from contextlib import contextmanager
from threading import Lock, RLock
from typing import Iterator


class SessionLocks:
    """Hands out one re-entrant lock per session id.

    Operations on different sessions never share a lock, so they proceed in
    parallel. The registry lock only guards the dictionary itself.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[int, RLock] = {}

    @contextmanager
    def hold(self, session_id: int) -> Iterator[None]:
        lock = self._lock_for(session_id)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()

    def _lock_for(self, session_id: int) -> RLock:
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = RLock()
                self._locks[session_id] = lock
            return lock
