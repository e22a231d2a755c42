"""
Per-key sliding-window limiter for POST /token and POST /login (keyed by client IP).
State lives in process memory; a multi-process deployment needs a shared limiter in front of the service.
"""
import math
import threading
import time
from collections import deque


class SlidingWindowLimiter:
    def __init__(self, window_seconds: int = 60, clock=time.monotonic) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def _sweep(self, cutoff: float) -> None:
        # Drop keys whose newest hit has left the window
        for key in [k for k, hits in self._hits.items() if not hits or hits[-1] <= cutoff]:
            del self._hits[key]

    def hit(self, key: str, limit: int) -> tuple[bool, int | None]:
        """
        Count one request against key. Returns (allowed, retry_after_seconds); a rejected request is
        not counted. limit <= 0 means unlimited.
        """
        if limit <= 0:
            return True, None
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= limit:
                return False, max(1, math.ceil(self.window_seconds - (now - hits[0])))
            hits.append(now)
            return True, None

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def clear(self) -> None:
        with self._lock:
            self._hits.clear()


_limiter = SlidingWindowLimiter()


def check_and_consume(key: str, limit: int) -> tuple[bool, int | None]:
    return _limiter.hit(key, limit)


def reset() -> None:
    _limiter.clear()
