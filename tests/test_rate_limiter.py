"""
Tests for the sliding window rate limiter.
"""

import threading

import pytest

from square_sync.rate_limiter import RateLimitWaitTimeout, SlidingWindowRateLimiter


def make_limiter(clock, rps=10, rpm=500):
    return SlidingWindowRateLimiter(
        requests_per_second=rps,
        requests_per_minute=rpm,
        clock=clock,
        sleep=clock.sleep,
    )


class TestConstruction:
    @pytest.mark.parametrize("rps,rpm", [(0, 500), (10, 0), (-1, 500)])
    def test_rejects_non_positive_ceilings(self, rps, rpm):
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(requests_per_second=rps, requests_per_minute=rpm)


class TestCanProceed:
    def test_empty_window_allows(self, fake_clock):
        limiter = make_limiter(fake_clock)
        status = limiter.can_proceed()

        assert status.allowed is True
        assert status.requests_in_last_second == 0
        assert status.requests_in_last_minute == 0

    def test_ten_calls_in_one_second_block_the_eleventh(self, fake_clock):
        """Scenario: 10 calls within 1s with a 10/s ceiling."""
        limiter = make_limiter(fake_clock)
        for _ in range(10):
            limiter.record_call()
            fake_clock.advance(0.05)

        status = limiter.can_proceed()
        assert status.allowed is False
        assert status.requests_in_last_second == 10

    def test_second_window_clears_after_one_second(self, fake_clock):
        limiter = make_limiter(fake_clock)
        for _ in range(10):
            limiter.record_call()

        fake_clock.advance(1.0)
        status = limiter.can_proceed()

        assert status.allowed is True
        assert status.requests_in_last_second == 0
        assert status.requests_in_last_minute == 10

    def test_minute_ceiling_independent_of_second_ceiling(self, fake_clock):
        limiter = make_limiter(fake_clock, rps=100, rpm=5)
        for _ in range(5):
            limiter.record_call()
            fake_clock.advance(2.0)

        status = limiter.can_proceed()
        assert status.requests_in_last_second == 0
        assert status.allowed is False

    def test_entries_older_than_a_minute_are_pruned(self, fake_clock):
        limiter = make_limiter(fake_clock, rps=100, rpm=5)
        for _ in range(5):
            limiter.record_call()

        fake_clock.advance(60.0)
        status = limiter.can_proceed()

        assert status.allowed is True
        assert status.requests_in_last_minute == 0


class TestAcquire:
    def test_acquire_records_call(self, fake_clock):
        limiter = make_limiter(fake_clock)
        assert limiter.acquire() is True
        assert limiter.can_proceed().requests_in_last_second == 1

    def test_acquire_waits_for_oldest_call_to_leave_window(self, fake_clock):
        limiter = make_limiter(fake_clock, rps=2)
        limiter.acquire()
        fake_clock.advance(0.25)
        limiter.acquire()

        start = fake_clock.now
        assert limiter.acquire() is True

        # First call was at start - 0.25, so it leaves the window 0.75s later
        assert fake_clock.now - start == pytest.approx(0.75)
        assert limiter.stats.requests_throttled == 1

    def test_acquire_timeout_returns_false(self, fake_clock):
        limiter = make_limiter(fake_clock, rps=1)
        limiter.acquire()

        assert limiter.acquire(timeout=0.5) is False
        assert limiter.can_proceed().requests_in_last_minute == 1

    def test_never_exceeds_second_ceiling(self, fake_clock):
        """Any trailing 1s window holds at most rps recorded calls."""
        limiter = make_limiter(fake_clock, rps=3, rpm=500)
        times = []
        for _ in range(20):
            limiter.acquire()
            times.append(fake_clock.now)
            fake_clock.advance(0.25)

        for t in times:
            in_window = [x for x in times if t <= x < t + 1.0]
            assert len(in_window) <= 3

    def test_concurrent_acquire_is_atomic(self):
        """Real threads never over-admit within the minute ceiling."""
        limiter = SlidingWindowRateLimiter(requests_per_second=1000, requests_per_minute=50)
        admitted = []
        lock = threading.Lock()

        def worker():
            for _ in range(10):
                if limiter.acquire(timeout=0):
                    with lock:
                        admitted.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(admitted) == 50


class TestSlot:
    def test_slot_prepays_first_acquire_on_same_thread(self, fake_clock):
        limiter = make_limiter(fake_clock)

        with limiter.slot():
            limiter.acquire()

        assert limiter.stats.requests_made == 1

    def test_second_acquire_inside_slot_is_counted(self, fake_clock):
        limiter = make_limiter(fake_clock)

        with limiter.slot():
            limiter.acquire()
            limiter.acquire()

        assert limiter.stats.requests_made == 2

    def test_unused_prepaid_slot_does_not_leak(self, fake_clock):
        limiter = make_limiter(fake_clock)

        with limiter.slot():
            pass
        limiter.acquire()

        assert limiter.stats.requests_made == 2

    def test_slot_timeout_raises(self, fake_clock):
        limiter = make_limiter(fake_clock, rps=1)
        limiter.acquire()

        with pytest.raises(RateLimitWaitTimeout):
            with limiter.slot(timeout=0.1):
                pass


class TestStats:
    def test_get_stats(self, fake_clock):
        limiter = make_limiter(fake_clock)
        limiter.acquire()
        limiter.acquire()

        stats = limiter.get_stats()
        assert stats["requests_made"] == 2
        assert stats["requests_throttled"] == 0
