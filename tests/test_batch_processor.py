"""
Tests for rate-limited batch processing.
"""

import threading
import time

import pytest

from square_sync.batch_processor import BatchCancelledError, BatchProcessor
from square_sync.client import SquareServerError, SquareValidationError
from square_sync.rate_limiter import SlidingWindowRateLimiter


def make_processor(**kwargs):
    kwargs.setdefault("rate_limiter", SlidingWindowRateLimiter(requests_per_second=1000, requests_per_minute=100_000))
    kwargs.setdefault("backoff_initial", 0)
    return BatchProcessor(**kwargs)


class TestAccounting:
    def test_doubles_25_items_in_order(self):
        """Scenario: batch processing at scale."""
        processor = make_processor()
        result = processor.process(list(range(25)), lambda x: x * 2)

        assert result.total_processed == 25
        assert result.total_succeeded == 25
        assert result.total_failed == 0
        assert result.results == [x * 2 for x in range(25)]
        assert result.all_succeeded is True

    def test_one_failure_does_not_abort_batch(self):
        """Scenario: partial failure."""
        def operation(x):
            if x == 5:
                raise ValueError("Test error")
            return x

        processor = make_processor()
        result = processor.process(list(range(10)), operation)

        assert result.total_processed == 10
        assert result.total_succeeded == 9
        assert result.total_failed == 1
        assert result.errors[0].item == 5
        assert result.errors[0].message == "Test error"
        assert result.results == [0, 1, 2, 3, 4, 6, 7, 8, 9]

    @pytest.mark.parametrize("size", [0, 1, 7, 30])
    def test_invariant_holds_for_any_size(self, size):
        processor = make_processor()
        result = processor.process(list(range(size)), lambda x: 1 / (x % 3))

        assert result.total_processed == result.total_succeeded + result.total_failed == size

    def test_all_failed(self):
        processor = make_processor()
        result = processor.process([1, 2], lambda x: 1 / 0)
        assert result.all_failed is True


class TestRetry:
    def test_retryable_error_retried_until_success(self):
        calls = {"count": 0}

        def flaky(x):
            calls["count"] += 1
            if calls["count"] < 3:
                raise SquareServerError("Server error 503", status_code=503)
            return x

        processor = make_processor(max_attempts=3)
        result = processor.process(["a"], flaky)

        assert result.total_succeeded == 1
        assert calls["count"] == 3

    def test_retries_exhausted_becomes_item_failure(self):
        processor = make_processor(max_attempts=2)

        def always_down(x):
            raise SquareServerError("Server error 500", status_code=500)

        result = processor.process(["a"], always_down)

        assert result.total_failed == 1
        assert result.errors[0].attempts == 2
        assert isinstance(result.errors[0].error, SquareServerError)

    def test_non_retryable_fails_on_first_attempt(self):
        calls = {"count": 0}

        def invalid(x):
            calls["count"] += 1
            raise SquareValidationError("API error: bad sku", status_code=400)

        processor = make_processor(max_attempts=5)
        result = processor.process(["a"], invalid)

        assert calls["count"] == 1
        assert result.errors[0].attempts == 1

    def test_each_attempt_takes_a_limiter_slot(self, fake_clock):
        limiter = SlidingWindowRateLimiter(10, 500, clock=fake_clock, sleep=fake_clock.sleep)
        calls = {"count": 0}

        def flaky(x):
            calls["count"] += 1
            if calls["count"] == 1:
                raise SquareServerError("Server error 502", status_code=502)
            return x

        processor = make_processor(rate_limiter=limiter)
        processor.process(["a", "b"], flaky)

        assert limiter.stats.requests_made == 3


class TestRateLimit:
    def test_twenty_items_at_ten_per_second_need_a_second_window(self, fake_clock):
        limiter = SlidingWindowRateLimiter(10, 500, clock=fake_clock, sleep=fake_clock.sleep)
        processor = make_processor(rate_limiter=limiter)

        start = fake_clock.now
        result = processor.process(list(range(20)), lambda x: x)

        assert result.total_succeeded == 20
        assert fake_clock.now - start >= 1.0
        assert limiter.stats.requests_throttled >= 1

    def test_get_rate_limit_status(self, fake_clock):
        limiter = SlidingWindowRateLimiter(10, 500, clock=fake_clock, sleep=fake_clock.sleep)
        processor = make_processor(rate_limiter=limiter)
        processor.process([1, 2, 3], lambda x: x)

        status = processor.get_rate_limit_status()
        assert status.requests_in_last_second == 3
        assert status.allowed is True


class TestConcurrency:
    def test_parallel_results_keep_input_order(self):
        def slow_for_small(x):
            time.sleep(0.01 * (5 - x % 5))
            return x * 10

        processor = make_processor(concurrency=4)
        result = processor.process(list(range(12)), slow_for_small)

        assert result.results == [x * 10 for x in range(12)]

    def test_parallel_respects_minute_ceiling(self):
        limiter = SlidingWindowRateLimiter(requests_per_second=1000, requests_per_minute=20)
        processor = make_processor(rate_limiter=limiter, concurrency=4)

        deadline = time.monotonic() + 0.5
        result = processor.process(list(range(30)), lambda x: x, deadline=deadline)

        assert result.total_succeeded <= 20
        assert result.total_processed == 30
        assert result.timed_out is True

    def test_rejects_invalid_settings(self):
        with pytest.raises(ValueError):
            BatchProcessor(concurrency=0)
        with pytest.raises(ValueError):
            BatchProcessor(max_attempts=0)


class TestCancellation:
    def test_cancel_between_items(self):
        cancel = threading.Event()

        def operation(x):
            if x == 2:
                cancel.set()
            return x

        processor = make_processor()
        result = processor.process(list(range(6)), operation, cancel_event=cancel)

        assert result.cancelled is True
        assert result.results == [0, 1, 2]
        assert result.total_failed == 3
        assert all(isinstance(e.error, BatchCancelledError) for e in result.errors)
        assert result.total_processed == 6

    def test_expired_deadline_skips_everything(self):
        processor = make_processor()
        result = processor.process([1, 2], lambda x: x, deadline=time.monotonic() - 1)

        assert result.timed_out is True
        assert result.total_succeeded == 0
        assert result.total_failed == 2


class TestFatalErrors:
    def test_fatal_error_stops_remaining_items(self):
        attempted = []

        def operation(x):
            attempted.append(x)
            if x == 1:
                raise PermissionError("credentials revoked")
            return x

        processor = make_processor(is_fatal=lambda e: isinstance(e, PermissionError))
        result = processor.process(list(range(5)), operation)

        assert attempted == [0, 1]
        assert isinstance(result.aborted_by, PermissionError)
        assert result.cancelled is False
        assert result.total_processed == 5
        assert result.total_succeeded == 1
        assert result.total_failed == 4
        assert result.errors[0].item == 1
        assert all(isinstance(e.error, BatchCancelledError) for e in result.errors[1:])
        assert "aborted" in result.errors[1].message

    def test_non_fatal_errors_do_not_stop(self):
        processor = make_processor(is_fatal=lambda e: isinstance(e, PermissionError))
        result = processor.process([1, 0, 2], lambda x: 1 / x)

        assert result.aborted_by is None
        assert result.total_succeeded == 2


class TestProgress:
    def test_reports_after_each_item(self):
        updates = []

        def operation(x):
            if x == 1:
                raise ValueError("bad")
            return x

        processor = make_processor()
        processor.process([0, 1, 2], operation, progress_callback=updates.append)

        assert [(u.processed, u.succeeded, u.failed) for u in updates] == [(1, 1, 0), (2, 1, 1), (3, 2, 1)]
        assert [u.current_item for u in updates] == [0, 1, 2]
        assert all(u.total == 3 for u in updates)

    def test_failing_callback_does_not_break_batch(self):
        def callback(progress):
            raise RuntimeError("display gone")

        processor = make_processor()
        result = processor.process([1, 2], lambda x: x, progress_callback=callback)

        assert result.total_succeeded == 2
