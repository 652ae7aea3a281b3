# core/rate_limiter.py
"""
Sliding-window rate limiter for outbound provider calls

One limiter is shared by every handler thread in a worker process, so the
configured ceiling holds for the process as a whole rather than per thread.
"""

import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    At most ``max_calls`` acquisitions in any ``window_ms`` window

    Args:
        max_calls: ceiling per window
        window_ms: window length in milliseconds
        clock: monotonic seconds; injectable for tests
        sleep: blocking wait used by ``acquire``; injectable for tests
    """

    def __init__(self, max_calls: int = 100, window_ms: int = 60000,
                 clock: Optional[Callable[[], float]] = None,
                 sleep: Optional[Callable[[float], None]] = None):
        if max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")

        self.max_calls = max_calls
        self.window_seconds = window_ms / 1000.0
        self.clock = clock or time.monotonic
        self.sleep = sleep or time.sleep
        self._calls = deque()
        self._lock = threading.Lock()

    def try_acquire(self) -> Tuple[bool, Dict[str, Any]]:
        """
        Take a slot if one is free

        Returns:
            Tuple of (allowed, limit_info)
        """
        with self._lock:
            now = self.clock()
            self._evict(now)
            current = len(self._calls)

            if current >= self.max_calls:
                reset_in = self._calls[0] + self.window_seconds - now
                return False, {
                    'limit': self.max_calls,
                    'current': current,
                    'reset_in': max(reset_in, 0.0),
                    'window': self.window_seconds,
                }

            self._calls.append(now)
            return True, {
                'limit': self.max_calls,
                'current': current + 1,
                'remaining': self.max_calls - current - 1,
                'window': self.window_seconds,
            }

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """
        Block until a slot is free

        Returns False only when ``timeout`` seconds pass without a slot.
        """
        deadline = None if timeout is None else self.clock() + timeout

        while True:
            allowed, info = self.try_acquire()
            if allowed:
                return True

            wait = info['reset_in']
            if deadline is not None:
                remaining = deadline - self.clock()
                if remaining <= 0:
                    return False
                wait = min(wait, remaining)

            logger.debug(f"Rate limit reached ({info['current']}/{info['limit']}), waiting {wait:.3f}s")
            self.sleep(max(wait, 0.001))

    def _evict(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self._calls and self._calls[0] <= horizon:
            self._calls.popleft()
