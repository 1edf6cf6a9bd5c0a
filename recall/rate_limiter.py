"""
Rolling-window rate limiter for provider calls.

Every embedding and summarization call acquires a slot first. The limiter
admits at most `max_calls` calls in any `window_seconds` window; callers
beyond that block until the oldest call in the window ages out.

A process-wide limiter is available from `get_rate_limiter()`; it lives
for the life of the process.
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_CALLS = 3000
DEFAULT_WINDOW_SECONDS = 60.0


class RateLimiter:
    """
    Thread-safe rolling-window admission gate.

    Args:
        max_calls: Calls admitted per window
        window_seconds: Length of the rolling window
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        max_calls: int = DEFAULT_MAX_CALLS,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._clock = clock
        self._calls: deque[float] = deque()
        self._cond = threading.Condition()

    def _prune(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self._calls and self._calls[0] <= horizon:
            self._calls.popleft()

    def try_acquire(self) -> bool:
        """Take a slot if one is free right now."""
        with self._cond:
            now = self._clock()
            self._prune(now)
            if len(self._calls) < self.max_calls:
                self._calls.append(now)
                return True
            return False

    def wait_for_slot(self, timeout: float | None = None) -> bool:
        """
        Block until a slot is available and take it.

        Returns False only if `timeout` elapses first.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                now = self._clock()
                self._prune(now)
                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    return True
                wait = self._calls[0] + self.window_seconds - now
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return False
                    wait = min(wait, remaining)
                logger.debug("Rate limit reached, waiting %.2fs", wait)
                self._cond.wait(max(wait, 0.001))

    def available(self) -> int:
        """Slots free in the current window."""
        with self._cond:
            self._prune(self._clock())
            return self.max_calls - len(self._calls)

    def reconfigure(self, max_calls: int, window_seconds: float) -> None:
        with self._cond:
            self.max_calls = max_calls
            self.window_seconds = window_seconds
            self._cond.notify_all()


_limiter: Optional[RateLimiter] = None
_limiter_lock = threading.Lock()


def get_rate_limiter() -> RateLimiter:
    """Get the process-wide rate limiter."""
    global _limiter
    with _limiter_lock:
        if _limiter is None:
            _limiter = RateLimiter()
        return _limiter
