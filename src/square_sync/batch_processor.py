"""
Batch processing under the shared Square rate limit.

Drives a list of work items through an operation, one limiter slot per
attempt, with bounded thread parallelism, per-item retry for transient
errors, and partial-failure accounting.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Sequence, TypeVar

import structlog
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from square_sync.client import is_retryable_error
from square_sync.rate_limiter import RateLimitStatus, SlidingWindowRateLimiter

logger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class BatchCancelledError(Exception):
    """Recorded for items never attempted because the batch was stopped."""
    pass


@dataclass
class BatchItemError(Generic[T]):
    """A failed item and the error that finally failed it."""
    item: T
    error: BaseException
    attempts: int = 0

    @property
    def message(self) -> str:
        return str(self.error) or type(self.error).__name__


@dataclass
class BatchResult(Generic[T, R]):
    """Outcome of one process() call."""
    total_processed: int = 0
    total_succeeded: int = 0
    total_failed: int = 0
    duration_ms: int = 0
    results: list[R] = field(default_factory=list)
    errors: list[BatchItemError[T]] = field(default_factory=list)
    cancelled: bool = False
    timed_out: bool = False
    aborted_by: BaseException | None = None

    @property
    def all_succeeded(self) -> bool:
        return self.total_failed == 0

    @property
    def all_failed(self) -> bool:
        return self.total_processed > 0 and self.total_succeeded == 0


@dataclass
class BatchProgress(Generic[T]):
    """Running totals reported after each attempted item."""
    total: int
    processed: int
    succeeded: int
    failed: int
    current_item: T | None = None


ProgressCallback = Callable[[BatchProgress], None]


@dataclass
class _Outcome:
    ok: bool
    value: object = None
    error: BaseException | None = None
    attempts: int = 0


class BatchProcessor(Generic[T, R]):
    """
    Run an operation over many items without exceeding the rate limit.

    One item failing never stops the batch. Results keep input order even
    when items run in parallel; the limiter is the only shared arbiter of
    the outbound call rate.

    Example:
        processor = BatchProcessor(rate_limiter=limiter, concurrency=4)
        result = processor.process(items, export_product)
        print(result.total_succeeded, result.total_failed)
    """

    def __init__(
        self,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        concurrency: int = 1,
        max_attempts: int = 3,
        backoff_initial: float = 0.5,
        backoff_max: float = 10.0,
        is_retryable: Callable[[BaseException], bool] = is_retryable_error,
        is_fatal: Callable[[BaseException], bool] | None = None,
    ):
        """
        Args:
            rate_limiter: Shared limiter (defaults to a private 10/s, 500/min one)
            concurrency: Worker threads; 1 = sequential
            max_attempts: Attempts per item for retryable errors
            backoff_initial: First backoff in seconds (doubles each retry, plus jitter)
            backoff_max: Cap on a single backoff
            is_retryable: Classifies an item error as transient
            is_fatal: Classifies an item error that makes every remaining item
                pointless (e.g. revoked credentials); the batch stops after it
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.is_retryable = is_retryable
        self.is_fatal = is_fatal

    def get_rate_limit_status(self) -> RateLimitStatus:
        return self.rate_limiter.can_proceed()

    def _run_item(
        self,
        item: T,
        operation: Callable[[T], R],
        deadline: float | None,
    ) -> _Outcome:
        attempts = 0
        try:
            for attempt in Retrying(
                retry=retry_if_exception(self.is_retryable),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential_jitter(
                    initial=self.backoff_initial,
                    max=self.backoff_max,
                    jitter=self.backoff_initial,
                ),
                reraise=True,
            ):
                with attempt:
                    attempts += 1
                    timeout = None if deadline is None else max(deadline - time.monotonic(), 0.0)
                    with self.rate_limiter.slot(timeout=timeout):
                        value = operation(item)
            return _Outcome(ok=True, value=value, attempts=attempts)
        except Exception as e:
            return _Outcome(ok=False, error=e, attempts=attempts)

    def process(
        self,
        items: Sequence[T],
        operation: Callable[[T], R],
        cancel_event: threading.Event | None = None,
        deadline: float | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> BatchResult[T, R]:
        """
        Process every item.

        Args:
            items: Work items
            operation: Called once per attempt with one item
            cancel_event: When set, items not yet started are skipped
            deadline: time.monotonic() value after which items not yet started are skipped
            progress_callback: Called after each attempted item with a BatchProgress

        Returns:
            BatchResult where total_processed == len(items)
        """
        start = time.monotonic()
        items = list(items)
        outcomes: list[_Outcome | None] = [None] * len(items)
        state: dict[str, Any] = {
            "cancelled": False,
            "timed_out": False,
            "aborted_by": None,
            "processed": 0,
            "succeeded": 0,
        }
        state_lock = threading.Lock()

        def should_stop() -> bool:
            with state_lock:
                if state["aborted_by"] is not None:
                    return True
                if cancel_event is not None and cancel_event.is_set():
                    state["cancelled"] = True
                if deadline is not None and time.monotonic() >= deadline:
                    state["timed_out"] = True
                return state["cancelled"] or state["timed_out"]

        def work(index: int) -> None:
            if should_stop():
                return
            outcome = self._run_item(items[index], operation, deadline)
            outcomes[index] = outcome

            with state_lock:
                if not outcome.ok and self.is_fatal is not None and self.is_fatal(outcome.error):
                    if state["aborted_by"] is None:
                        state["aborted_by"] = outcome.error
                        logger.warning("Batch stopped by fatal error", error=str(outcome.error))
                state["processed"] += 1
                state["succeeded"] += 1 if outcome.ok else 0
                progress = BatchProgress(
                    total=len(items),
                    processed=state["processed"],
                    succeeded=state["succeeded"],
                    failed=state["processed"] - state["succeeded"],
                    current_item=items[index],
                )

            if progress_callback is not None:
                try:
                    progress_callback(progress)
                except Exception:
                    logger.warning("Progress callback failed", exc_info=True)

        if self.concurrency == 1 or len(items) <= 1:
            for index in range(len(items)):
                work(index)
        else:
            with ThreadPoolExecutor(
                max_workers=min(self.concurrency, len(items)),
                thread_name_prefix="square-batch",
            ) as pool:
                list(pool.map(work, range(len(items))))

        result: BatchResult[T, R] = BatchResult(
            cancelled=state["cancelled"],
            timed_out=state["timed_out"],
            aborted_by=state["aborted_by"],
        )

        if result.aborted_by is not None:
            reason = "aborted"
        elif result.timed_out:
            reason = "timed out"
        else:
            reason = "cancelled"

        for item, outcome in zip(items, outcomes):
            result.total_processed += 1
            if outcome is None:
                result.total_failed += 1
                result.errors.append(BatchItemError(item=item, error=BatchCancelledError(f"Not attempted: batch {reason}")))
            elif outcome.ok:
                result.total_succeeded += 1
                result.results.append(outcome.value)
            else:
                result.total_failed += 1
                result.errors.append(BatchItemError(item=item, error=outcome.error, attempts=outcome.attempts))

        result.duration_ms = round((time.monotonic() - start) * 1000)

        logger.info(
            "Batch processed",
            total=result.total_processed,
            succeeded=result.total_succeeded,
            failed=result.total_failed,
            cancelled=result.cancelled,
            timed_out=result.timed_out,
            aborted=result.aborted_by is not None,
            duration_ms=result.duration_ms,
        )
        return result
