"""In-process fixed-window rate limiting keyed by arbitrary strings."""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after_seconds: int


class RateLimiter:
    """Count hits per key inside fixed windows.

    State is per process; endpoints running in the threadpool share it, hence
    the lock.
    """

    _PRUNE_THRESHOLD = 10_000

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str, *, limit: int, window_seconds: float) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            started, hits = self._windows.get(key, (now, 0))
            if now - started >= window_seconds:
                started, hits = now, 0
            retry_after = max(1, math.ceil(started + window_seconds - now))
            if hits >= limit:
                return RateLimitResult(False, 0, retry_after)
            hits += 1
            self._windows[key] = (started, hits)
            if len(self._windows) > self._PRUNE_THRESHOLD:
                self._prune(now, window_seconds)
            return RateLimitResult(True, limit - hits, retry_after)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def _prune(self, now: float, window_seconds: float) -> None:
        expired = [key for key, (started, _) in self._windows.items() if now - started >= window_seconds]
        for key in expired:
            del self._windows[key]


default_rate_limiter = RateLimiter()
