from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque, Optional

from .errors import RateLimitError


# Longest single sleep while waiting; keeps a waiting worker responsive to its deadline.
MAX_SLEEP_SLICE = 1.0


class SlidingWindowRateLimiter:
    """
    Throttle for one host, shared by every account worker that talks to it.

    Grants at most `max_calls` slots in any trailing `per_seconds` window, so
    the platform sees the combined request rate of the process. `acquire`
    waits for a slot but gives up with RateLimitError once `timeout` would be
    overrun; `timeout=0` never waits. Process-local, not a distributed limiter.
    """

    def __init__(
        self,
        max_calls: int,
        per_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_calls <= 0:
            raise ValueError("max_calls must be > 0")
        if per_seconds <= 0:
            raise ValueError("per_seconds must be > 0")
        self.max_calls = max_calls
        self.per_seconds = float(per_seconds)
        self._granted: Deque[float] = deque()
        self._mutex = threading.Lock()
        self._clock = clock
        self._sleep = sleep

    def _expire(self, now: float) -> None:
        horizon = now - self.per_seconds
        while self._granted and self._granted[0] <= horizon:
            self._granted.popleft()

    def _try_grant(self) -> tuple[float, float]:
        """Grant a slot if one is free. Returns `(now, wait)`; wait == 0 means granted."""
        with self._mutex:
            now = self._clock()
            self._expire(now)
            if len(self._granted) < self.max_calls:
                self._granted.append(now)
                return now, 0.0
            return now, max(0.0, self._granted[0] + self.per_seconds - now)

    def acquire(self, *, timeout: Optional[float] = 30.0) -> None:
        """Take one slot. `timeout=None` waits indefinitely (fake-clock tests only)."""
        deadline: Optional[float] = None
        while True:
            now, wait = self._try_grant()
            if wait == 0.0:
                return
            if deadline is None and timeout is not None:
                deadline = now + timeout
            if deadline is not None and now + wait > deadline:
                raise RateLimitError(f"no request slot within {timeout}s ({self.max_calls}/{self.per_seconds:g}s)")
            self._sleep(min(wait, MAX_SLEEP_SLICE))

    def in_window(self) -> int:
        """Slots currently held inside the trailing window."""
        with self._mutex:
            self._expire(self._clock())
            return len(self._granted)
