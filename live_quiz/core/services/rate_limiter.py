"""Bounded sliding-window counters keyed by client."""

from __future__ import annotations

from collections import OrderedDict, deque
import logging
from threading import Lock
import time
from typing import Callable

logger = logging.getLogger(__name__)


class SlidingWindowCounter:
    """Counts hits per key inside a sliding time window.

    Memory stays bounded: each key keeps at most ``max_hits`` timestamps, at
    most ``max_keys`` keys are tracked (least recently used go first), and a
    periodic compaction drops keys whose hits have all left the window.
    """

    def __init__(
        self,
        max_hits: int,
        window_seconds: float,
        max_keys: int = 10_000,
        compact_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_hits < 1 or window_seconds <= 0 or max_keys < 1:
            raise ValueError("max_hits, window_seconds and max_keys must be positive.")
        self._max_hits = max_hits
        self._window = window_seconds
        self._max_keys = max_keys
        self._compact_interval = compact_interval_seconds
        self._clock = clock
        self._lock = Lock()
        self._hits: OrderedDict[str, deque[float]] = OrderedDict()
        self._last_compaction = clock()

    @property
    def max_hits(self) -> int:
        return self._max_hits

    @property
    def window_seconds(self) -> float:
        return self._window

    def hit(self, key: str) -> tuple[bool, int]:
        """Record one hit for ``key``.

        Returns ``(allowed, remaining)``. A rejected hit is not recorded.
        """
        now = self._clock()
        with self._lock:
            self._maybe_compact(now)
            hits = self._hits.get(key)
            if hits is None:
                hits = deque(maxlen=self._max_hits)
                self._hits[key] = hits
                while len(self._hits) > self._max_keys:
                    self._hits.popitem(last=False)
            else:
                self._hits.move_to_end(key)
            self._expire(hits, now)
            if len(hits) >= self._max_hits:
                return False, 0
            hits.append(now)
            return True, self._max_hits - len(hits)

    def retry_after(self, key: str) -> float:
        """Seconds until the oldest hit for ``key`` leaves the window."""
        now = self._clock()
        with self._lock:
            hits = self._hits.get(key)
            if not hits:
                return 0.0
            return max(0.0, hits[0] + self._window - now)

    def reset(self, key: str) -> None:
        with self._lock:
            self._hits.pop(key, None)

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def compact(self) -> int:
        """Drop expired timestamps and empty keys. Returns the number of keys dropped."""
        with self._lock:
            return self._compact(self._clock())

    def _maybe_compact(self, now: float) -> None:
        if now - self._last_compaction >= self._compact_interval:
            dropped = self._compact(now)
            if dropped:
                logger.debug("Rate limiter compaction dropped %s idle keys", dropped)

    def _compact(self, now: float) -> int:
        idle = []
        for key, hits in self._hits.items():
            self._expire(hits, now)
            if not hits:
                idle.append(key)
        for key in idle:
            del self._hits[key]
        self._last_compaction = now
        return len(idle)

    def _expire(self, hits: deque[float], now: float) -> None:
        cutoff = now - self._window
        while hits and hits[0] <= cutoff:
            hits.popleft()
