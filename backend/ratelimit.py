# backend/ratelimit.py
import time
from collections import deque
from typing import Callable, Deque, Tuple

from .model import RateLimits


class RateLimiter:
    """
    Per-provider request budget: sliding per-minute and per-hour windows
    plus a cap on in-flight calls.

    Runs on the event loop thread only; check-and-take happens without an
    await in between, so acquire is atomic with respect to other tasks.
    """

    def __init__(
        self,
        limits: RateLimits,
        minute_window: float = 60.0,
        hour_window: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limits = limits
        self.minute_window = minute_window
        self.hour_window = hour_window
        self._clock = clock
        self._calls: Deque[float] = deque()
        self.in_flight = 0

    def _trim(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.hour_window:
            self._calls.popleft()

    def _window_counts(self, now: float) -> Tuple[int, int]:
        self._trim(now)
        minute = sum(1 for t in self._calls if now - t < self.minute_window)
        return minute, len(self._calls)

    def has_capacity(self) -> bool:
        now = self._clock()
        minute, hour = self._window_counts(now)
        return (
            minute < self.limits.requests_per_minute
            and hour < self.limits.requests_per_hour
            and self.in_flight < self.limits.concurrent_requests
        )

    def try_acquire(self) -> bool:
        if not self.has_capacity():
            return False
        self._calls.append(self._clock())
        self.in_flight += 1
        return True

    def release(self) -> None:
        if self.in_flight > 0:
            self.in_flight -= 1

    def retry_after(self) -> float:
        """Seconds until the oldest call blocking a window falls out of it."""
        now = self._clock()
        minute, hour = self._window_counts(now)
        waits = []
        if hour >= self.limits.requests_per_hour and self._calls:
            waits.append(self.hour_window - (now - self._calls[0]))
        if minute >= self.limits.requests_per_minute:
            in_minute = [t for t in self._calls if now - t < self.minute_window]
            if in_minute:
                waits.append(self.minute_window - (now - in_minute[0]))
        if not waits:
            # only the concurrency cap is exhausted
            return 1.0
        return max(0.0, max(waits))
