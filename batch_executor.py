"""Rate-limited batch executor for remote POS operations."""
import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, Tuple, Type, TypeVar

from exceptions import (
    AuthError, ExecutorConfigurationError, RateLimitError,
    error_code_for, is_retryable
)
from rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

T = TypeVar('T')
R = TypeVar('R')


@dataclass
class BatchConfig:
    """Configuration for batch execution."""
    batch_size: int = 100
    max_concurrent: int = 5
    retry_attempts: int = 3  # Total attempts per item, including the first
    retry_delay: float = 1.0  # Seconds, multiplied by the attempt number
    requests_per_minute: Optional[int] = 100
    requests_per_second: Optional[int] = 10
    max_rate_limit_retries: int = 5
    abort_on: Tuple[Type[BaseException], ...] = (AuthError,)

    def validate(self) -> None:
        if not isinstance(self.batch_size, int) or self.batch_size <= 0:
            raise ExecutorConfigurationError(f"batch_size must be a positive integer, got {self.batch_size!r}")
        if not isinstance(self.max_concurrent, int) or self.max_concurrent <= 0:
            raise ExecutorConfigurationError(f"max_concurrent must be a positive integer, got {self.max_concurrent!r}")
        if not isinstance(self.retry_attempts, int) or self.retry_attempts < 1:
            raise ExecutorConfigurationError(f"retry_attempts must be at least 1, got {self.retry_attempts!r}")
        if self.retry_delay < 0:
            raise ExecutorConfigurationError(f"retry_delay must not be negative, got {self.retry_delay!r}")
        if self.max_rate_limit_retries < 0:
            raise ExecutorConfigurationError("max_rate_limit_retries must not be negative")


@dataclass
class BatchProgress:
    """Progress snapshot emitted after every batch."""
    total_items: int
    processed_items: int = 0
    successful_items: int = 0
    failed_items: int = 0
    current_batch: int = 0
    total_batches: int = 0
    elapsed_seconds: float = 0.0
    estimated_time_remaining: Optional[float] = None

    @property
    def progress_percentage(self) -> float:
        if self.total_items == 0:
            return 0.0
        return (self.processed_items / self.total_items) * 100

    def update_estimate(self) -> None:
        """Extrapolate elapsed time per processed item to the remaining items."""
        if self.processed_items > 0:
            per_item = self.elapsed_seconds / self.processed_items
            self.estimated_time_remaining = per_item * (self.total_items - self.processed_items)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total_items,
            'processed': self.processed_items,
            'succeeded': self.successful_items,
            'failed': self.failed_items,
            'current_batch': self.current_batch,
            'total_batches': self.total_batches,
            'percentage': self.progress_percentage,
            'estimated_time_remaining': self.estimated_time_remaining
        }


@dataclass
class ItemSuccess(Generic[T, R]):
    item: T
    result: R
    attempts: int = 1


@dataclass
class ItemFailure(Generic[T]):
    item: T
    error: BaseException
    attempts: int = 1

    @property
    def error_code(self) -> str:
        return error_code_for(self.error)

    @property
    def message(self) -> str:
        return str(self.error) or self.error.__class__.__name__


@dataclass
class BatchResult(Generic[T, R]):
    """Outcome of one executor run."""
    succeeded: List[ItemSuccess] = field(default_factory=list)
    failed: List[ItemFailure] = field(default_factory=list)
    total_processed: int = 0
    duration: float = 0.0
    cancelled: bool = False
    aborted_error: Optional[BaseException] = None

    @property
    def aborted(self) -> bool:
        return self.aborted_error is not None


ProgressCallback = Callable[[BatchProgress], Any]
BatchCallback = Callable[[BatchResult], Any]


class BatchExecutor(Generic[T, R]):
    """Runs an async operation over many items under concurrency and rate caps.

    Items are split into batches of ``batch_size``; each batch is split into
    chunks of ``max_concurrent`` that run in parallel, chunk after chunk. Every
    single operation first takes a slot from the sliding-window limiter.
    """

    def __init__(self, config: Optional[BatchConfig] = None,
                 rate_limiter: Optional[SlidingWindowRateLimiter] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.config = config or BatchConfig()
        self.config.validate()
        self._clock = clock
        self._sleep = sleep
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            requests_per_minute=self.config.requests_per_minute,
            requests_per_second=self.config.requests_per_second,
            clock=clock,
            sleep=sleep
        )
        self._cancelled = False

    def cancel(self) -> None:
        """Stop before the next batch. The running chunk finishes first."""
        self._cancelled = True

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def get_rate_limit_status(self) -> Dict[str, Any]:
        return self.rate_limiter.get_status()

    def _split(self, items: Sequence[T], size: int) -> List[Sequence[T]]:
        return [items[i:i + size] for i in range(0, len(items), size)]

    async def process(self, items: Sequence[T], operation: Callable[[T], Awaitable[R]],
                      on_progress: Optional[ProgressCallback] = None,
                      on_batch_complete: Optional[BatchCallback] = None) -> BatchResult:
        """Execute ``operation`` for every item and collect per-item outcomes.

        Item failures never stop the run. An error type listed in
        ``config.abort_on`` stops the run once the current chunk completes.
        ``on_batch_complete`` sees the running result after every batch; unlike
        progress callbacks, its errors propagate.
        """
        if not isinstance(items, (list, tuple)):
            raise ExecutorConfigurationError(f"items must be a list or tuple, got {type(items).__name__}")
        if not callable(operation):
            raise ExecutorConfigurationError("operation must be callable")

        started = self._clock()
        result = BatchResult()
        batches = self._split(items, self.config.batch_size)
        progress = BatchProgress(total_items=len(items), total_batches=len(batches))

        logger.info(f"Processing {len(items)} items in {len(batches)} batches "
                    f"(batch_size={self.config.batch_size}, max_concurrent={self.config.max_concurrent})")

        for batch_index, batch in enumerate(batches, start=1):
            if self._cancelled:
                logger.info(f"Batch run cancelled before batch {batch_index}/{len(batches)}")
                result.cancelled = True
                break

            if batch_index > 1:
                await self.rate_limiter.wait_for_slot()

            for chunk in self._split(batch, self.config.max_concurrent):
                outcomes = await asyncio.gather(*(self._run_item(item, operation) for item in chunk))

                for outcome in outcomes:
                    if isinstance(outcome, ItemSuccess):
                        result.succeeded.append(outcome)
                    else:
                        result.failed.append(outcome)
                        if isinstance(outcome.error, self.config.abort_on) and result.aborted_error is None:
                            result.aborted_error = outcome.error
                result.total_processed += len(outcomes)

                if result.aborted:
                    break

            if on_batch_complete is not None:
                outcome = on_batch_complete(result)
                if inspect.isawaitable(outcome):
                    await outcome

            progress.current_batch = batch_index
            progress.processed_items = result.total_processed
            progress.successful_items = len(result.succeeded)
            progress.failed_items = len(result.failed)
            progress.elapsed_seconds = self._clock() - started
            progress.update_estimate()
            await self._emit_progress(on_progress, progress)

            if result.aborted:
                logger.error(f"Batch run aborted after batch {batch_index}: {result.aborted_error}")
                break

        result.duration = self._clock() - started
        logger.info(f"Batch run finished: {len(result.succeeded)} succeeded, {len(result.failed)} failed, "
                    f"{result.total_processed}/{len(items)} processed in {result.duration:.2f}s")
        return result

    async def execute(self, item: T, operation: Callable[[T], Awaitable[R]]):
        """Run one operation under the same limiter and retry policy.

        Returns an ItemSuccess or ItemFailure; never raises for item errors.
        """
        return await self._run_item(item, operation)

    async def _run_item(self, item: T, operation: Callable[[T], Awaitable[R]]):
        attempt = 0
        rate_limited = 0

        while True:
            attempt += 1
            await self.rate_limiter.acquire()
            try:
                value = await operation(item)
                return ItemSuccess(item=item, result=value, attempts=attempt)

            except RateLimitError as e:
                # Throttling does not use up a retry attempt
                attempt -= 1
                rate_limited += 1
                if rate_limited > self.config.max_rate_limit_retries:
                    logger.error(f"Giving up after {rate_limited} rate-limited attempts: {e}")
                    return ItemFailure(item=item, error=e, attempts=attempt + rate_limited)
                delay = max(e.retry_after or 0.0, self.config.retry_delay * rate_limited)
                logger.warning(f"Remote rate limit hit, retrying in {delay:.2f}s")
                await self._sleep(delay)

            except Exception as e:
                if isinstance(e, self.config.abort_on) or not is_retryable(e) or attempt >= self.config.retry_attempts:
                    return ItemFailure(item=item, error=e, attempts=attempt)
                delay = self.config.retry_delay * attempt
                logger.warning(f"Attempt {attempt}/{self.config.retry_attempts} failed ({e}), "
                               f"retrying in {delay:.2f}s")
                await self._sleep(delay)

    async def _emit_progress(self, on_progress: Optional[ProgressCallback], progress: BatchProgress) -> None:
        if on_progress is None:
            return
        try:
            outcome = on_progress(progress)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")
