import time
from collections import deque
from typing import Callable, Deque, Dict, Hashable


class SlidingWindowRateLimiter:
    """Allows at most ``max_events`` hits per key within ``window_seconds``.

    Stale keys are evicted by a full sweep at most once per window, so memory
    stays proportional to the number of recently active keys.
    """

    def __init__(self, max_events: int, window_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        if max_events < 1:
            raise ValueError("max_events must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[Hashable, Deque[float]] = {}
        self._last_sweep = clock()

    def hit(self, key: Hashable) -> bool:
        now = self._clock()
        if now - self._last_sweep >= self.window_seconds:
            self.sweep(now)
        hits = self._hits.get(key)
        if hits is None:
            hits = self._hits[key] = deque()
        self._trim(hits, now)
        if len(hits) >= self.max_events:
            return False
        hits.append(now)
        return True

    def retry_after(self, key: Hashable) -> float:
        hits = self._hits.get(key)
        if not hits or len(hits) < self.max_events:
            return 0.0
        return max(0.0, hits[0] + self.window_seconds - self._clock())

    def sweep(self, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        evicted = 0
        for key in list(self._hits):
            hits = self._hits[key]
            self._trim(hits, now)
            if not hits:
                del self._hits[key]
                evicted += 1
        self._last_sweep = now
        return evicted

    def _trim(self, hits: Deque[float], now: float) -> None:
        window_start = now - self.window_seconds
        while hits and hits[0] <= window_start:
            hits.popleft()

    def __len__(self) -> int:
        return len(self._hits)
