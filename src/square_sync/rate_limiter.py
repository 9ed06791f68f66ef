"""
Client-side rate limiter for outbound Square calls.

Keeps a sliding window of call timestamps and enforces two independent
ceilings: calls per second and calls per minute. Square's own limiter is
authoritative; this one exists so we rarely see a 429 in the first place.
"""

import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator

MINUTE = 60.0
SECOND = 1.0


class RateLimitWaitTimeout(Exception):
    """Raised when no slot frees up before the caller's timeout."""
    pass


@dataclass(frozen=True)
class RateLimitStatus:
    """Snapshot of the limiter window."""
    allowed: bool
    requests_in_last_second: int
    requests_in_last_minute: int


@dataclass
class RateLimiterStats:
    """Statistics for monitoring rate limiter behavior."""
    requests_made: int = 0
    requests_throttled: int = 0
    total_wait_time: float = 0.0


class SlidingWindowRateLimiter:
    """
    Thread-safe sliding window rate limiter.

    Both ceilings must be satisfied for a call to proceed. The check and
    the timestamp append happen under one lock, so two threads can never
    both see "allowed" for the last free slot.

    Example:
        limiter = SlidingWindowRateLimiter(requests_per_second=10, requests_per_minute=500)

        with limiter:  # Blocks until a slot is free
            make_api_request()
    """

    def __init__(
        self,
        requests_per_second: int = 10,
        requests_per_minute: int = 500,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize rate limiter.

        Args:
            requests_per_second: Max calls in any trailing 1 second window
            requests_per_minute: Max calls in any trailing 60 second window
            clock: Monotonic time source (injectable for tests)
            sleep: Sleep function used while waiting for a slot
        """
        if requests_per_second <= 0 or requests_per_minute <= 0:
            raise ValueError("Rate limit ceilings must be greater than zero")

        self.requests_per_second = requests_per_second
        self.requests_per_minute = requests_per_minute

        self._clock = clock
        self._sleep = sleep
        self._calls: deque[float] = deque()
        self._lock = threading.Lock()
        self._local = threading.local()

        self.stats = RateLimiterStats()

    def _prune(self, now: float) -> None:
        """Drop timestamps older than the minute window. Must hold lock."""
        while self._calls and now - self._calls[0] >= MINUTE:
            self._calls.popleft()

    def _status(self, now: float) -> RateLimitStatus:
        """Count calls in both windows. Must hold lock."""
        self._prune(now)
        in_minute = len(self._calls)
        in_second = 0
        for ts in reversed(self._calls):
            if now - ts >= SECOND:
                break
            in_second += 1
        return RateLimitStatus(
            allowed=in_second < self.requests_per_second and in_minute < self.requests_per_minute,
            requests_in_last_second=in_second,
            requests_in_last_minute=in_minute,
        )

    def _wait_time(self, now: float, status: RateLimitStatus) -> float:
        """Seconds until the blocking window has room again. Must hold lock."""
        waits = []
        if status.requests_in_last_minute >= self.requests_per_minute:
            oldest = self._calls[-self.requests_per_minute]
            waits.append(oldest + MINUTE - now)
        if status.requests_in_last_second >= self.requests_per_second:
            oldest = self._calls[-self.requests_per_second]
            waits.append(oldest + SECOND - now)
        return max(max(waits, default=0.0), 0.001)

    def can_proceed(self) -> RateLimitStatus:
        """Report whether a call made right now would stay under both ceilings."""
        with self._lock:
            return self._status(self._clock())

    def record_call(self) -> None:
        """Record an outbound call at the current time."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._calls.append(now)
            self.stats.requests_made += 1

    def acquire(self, timeout: float | None = None) -> bool:
        """
        Wait for a free slot and record the call.

        A slot already paid for by slot() on this thread is consumed instead.

        Args:
            timeout: Max seconds to wait (None = wait forever)

        Returns:
            True if a slot was taken, False on timeout
        """
        if getattr(self._local, "prepaid", False):
            self._local.prepaid = False
            return True

        deadline = None if timeout is None else self._clock() + timeout

        while True:
            with self._lock:
                now = self._clock()
                status = self._status(now)

                if status.allowed:
                    self._calls.append(now)
                    self.stats.requests_made += 1
                    return True

                wait_time = self._wait_time(now, status)

                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return False
                    wait_time = min(wait_time, remaining)

            # Wait outside the lock
            self.stats.requests_throttled += 1
            self.stats.total_wait_time += wait_time
            self._sleep(wait_time)

    @contextmanager
    def slot(self, timeout: float | None = None) -> Iterator[None]:
        """
        Take one slot up front for the block that follows.

        The first acquire() on this thread inside the block is free, so an
        operation that makes a single Square call is counted exactly once.
        """
        if not self.acquire(timeout):
            raise RateLimitWaitTimeout(f"No rate limit slot within {timeout}s")
        self._local.prepaid = True
        try:
            yield
        finally:
            self._local.prepaid = False

    def __enter__(self) -> "SlidingWindowRateLimiter":
        self.acquire()
        return self

    def __exit__(self, *args) -> None:
        pass

    def get_stats(self) -> dict:
        """Get rate limiter statistics for monitoring."""
        status = self.can_proceed()
        return {
            "requests_made": self.stats.requests_made,
            "requests_throttled": self.stats.requests_throttled,
            "total_wait_time_seconds": round(self.stats.total_wait_time, 2),
            "requests_in_last_second": status.requests_in_last_second,
            "requests_in_last_minute": status.requests_in_last_minute,
            "requests_per_second": self.requests_per_second,
            "requests_per_minute": self.requests_per_minute,
        }
