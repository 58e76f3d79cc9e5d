"""Sliding-window rate limiter for remote POS API calls."""
import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Dict, Any, Optional

from exceptions import ExecutorConfigurationError

logger = logging.getLogger(__name__)

# Absorbs float error when a sleep lands exactly on the window edge
_EPSILON = 1e-9


class SlidingWindowRateLimiter:
    """Caps operations per rolling minute and per rolling second.

    A timestamp is recorded for every admitted operation. When a window is full
    the caller sleeps exactly until its oldest timestamp leaves the window.
    One instance belongs to one executor run and is not shared across runs.
    """

    def __init__(self, requests_per_minute: Optional[int] = 100,
                 requests_per_second: Optional[int] = 10,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        for name, value in (('requests_per_minute', requests_per_minute),
                            ('requests_per_second', requests_per_second)):
            if value is not None and value <= 0:
                raise ExecutorConfigurationError(f"{name} must be positive, got {value}")

        self.requests_per_minute = requests_per_minute
        self.requests_per_second = requests_per_second
        self._clock = clock
        self._sleep = sleep
        self._windows = []
        if requests_per_minute:
            self._windows.append((60.0, requests_per_minute, deque()))
        if requests_per_second:
            self._windows.append((1.0, requests_per_second, deque()))
        self.total_wait_time = 0.0

    def _prune(self, now: float) -> None:
        for window, _, history in self._windows:
            cutoff = now - window + _EPSILON
            while history and history[0] <= cutoff:
                history.popleft()

    def _required_wait(self, now: float) -> float:
        wait = 0.0
        for window, cap, history in self._windows:
            if len(history) >= cap:
                wait = max(wait, history[0] + window - now)
        return wait

    def can_make_request(self) -> bool:
        now = self._clock()
        self._prune(now)
        return self._required_wait(now) <= 0

    async def wait_for_slot(self) -> float:
        """Sleep until every window has room. Returns seconds waited."""
        waited = 0.0
        while True:
            now = self._clock()
            self._prune(now)
            wait = self._required_wait(now)
            if wait <= 0:
                break
            logger.debug(f"Rate limit reached, waiting {wait:.3f}s")
            await self._sleep(wait)
            waited += wait

        self.total_wait_time += waited
        return waited

    def record_request(self) -> None:
        now = self._clock()
        for _, _, history in self._windows:
            history.append(now)

    async def acquire(self) -> float:
        """Wait for a slot and claim it."""
        # No await between the final check and the append, so concurrent
        # coroutines on the same loop cannot overshoot the cap.
        waited = await self.wait_for_slot()
        self.record_request()
        return waited

    def _count_within(self, window: float, now: float) -> int:
        for w, _, history in self._windows:
            if w == window:
                return sum(1 for ts in history if ts > now - window + _EPSILON)
        return 0

    def get_status(self) -> Dict[str, Any]:
        now = self._clock()
        self._prune(now)
        return {
            'can_make_request': self._required_wait(now) <= 0,
            'requests_in_last_minute': self._count_within(60.0, now),
            'requests_in_last_second': self._count_within(1.0, now),
            'requests_per_minute': self.requests_per_minute,
            'requests_per_second': self.requests_per_second,
            'reset_in_seconds': max(0.0, self._required_wait(now)),
            'total_wait_time': self.total_wait_time
        }

    def reset(self) -> None:
        for _, _, history in self._windows:
            history.clear()
