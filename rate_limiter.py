"""
rate_limiter.py — Minimum spacing and per-minute ceiling for calls to a
rate-limited external API, plus exponential backoff delays for retries.
"""

import threading
import time
from collections import deque
from typing import Callable, Optional

from monitoring import get_logger

logger = get_logger("rate_limiter")

WINDOW_SECONDS = 60.0


class RateLimiter:
    """
    Blocks callers so that consecutive calls are at least `min_delay` seconds
    apart and, when `max_per_minute` is set, no more than that many calls start
    within any sliding 60-second window.
    """

    def __init__(
        self,
        min_delay: float = 1.0,
        max_per_minute: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if min_delay < 0:
            raise ValueError("min_delay must be >= 0")
        if max_per_minute is not None and max_per_minute <= 0:
            raise ValueError("max_per_minute must be positive")
        self.min_delay = min_delay
        self.max_per_minute = max_per_minute
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_call: Optional[float] = None
        self._recent: deque[float] = deque()

    def wait(self) -> float:
        """Block until a call is allowed, then record it. Returns seconds waited."""
        with self._lock:
            waited = 0.0
            while True:
                delay = self._required_delay(self._clock())
                if delay <= 0:
                    break
                self._sleep(delay)
                waited += delay

            now = self._clock()
            self._last_call = now
            if self.max_per_minute:
                self._recent.append(now)
            if waited:
                logger.debug(f"Rate limiter waited {waited:.2f}s")
            return waited

    def _required_delay(self, now: float) -> float:
        delay = 0.0
        if self._last_call is not None:
            delay = max(delay, self._last_call + self.min_delay - now)

        if self.max_per_minute:
            while self._recent and self._recent[0] <= now - WINDOW_SECONDS:
                self._recent.popleft()
            if len(self._recent) >= self.max_per_minute:
                delay = max(delay, self._recent[0] + WINDOW_SECONDS - now)
        return delay


def backoff_delays(retries: int, base: float = 1.0) -> list[float]:
    """Exponential backoff schedule: base, 2*base, 4*base, ..."""
    return [base * (2 ** i) for i in range(max(0, retries))]
