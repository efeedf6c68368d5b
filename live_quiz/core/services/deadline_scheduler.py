"""Timers that drive deadline expiry and the maximum session duration."""

from __future__ import annotations

from abc import ABC, abstractmethod
import logging
from threading import Lock, Timer, current_thread
from typing import Callable, Hashable

logger = logging.getLogger(__name__)


class Scheduler(ABC):
    """Keeps at most one pending callback per key.

    Scheduling a key replaces (and cancels) whatever was pending for it.
    """

    @abstractmethod
    def schedule(self, key: Hashable, delay_seconds: float, callback: Callable[[], None]) -> None: ...

    @abstractmethod
    def cancel(self, key: Hashable) -> bool: ...

    @abstractmethod
    def cancel_all(self) -> None: ...


class ThreadingScheduler(Scheduler):
    """Runs each callback once on a daemon ``threading.Timer``."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._timers: dict[Hashable, Timer] = {}

    def schedule(self, key: Hashable, delay_seconds: float, callback: Callable[[], None]) -> None:
        timer = Timer(max(0.0, delay_seconds), self._fire, args=(key, callback))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(key, None)
            self._timers[key] = timer
        if previous is not None:
            previous.cancel()
        timer.start()
        logger.debug("Timer %s armed for %.3fs", key, delay_seconds)

    def cancel(self, key: Hashable) -> bool:
        with self._lock:
            timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.cancel()
        logger.debug("Timer %s cancelled", key)
        return True

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def pending_keys(self) -> list[Hashable]:
        with self._lock:
            return list(self._timers)

    def _fire(self, key: Hashable, callback: Callable[[], None]) -> None:
        with self._lock:
            # Leave a replacement armed after this timer expired untouched.
            if self._timers.get(key) is current_thread():
                self._timers.pop(key, None)
        try:
            callback()
        except Exception:
            logger.exception("Timer callback for %s failed", key)
