"""
Retry, rate limiting and circuit breaking for calls to external providers
(embedding APIs, code-extraction LLMs).
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 0.5
    max_delay_s: float = 8.0
    jitter: bool = True

    def delay_for(self, attempt: int) -> float:
        """Exponential backoff for a 1-based attempt number."""
        delay = self.base_delay_s * (2 ** (max(1, attempt) - 1))
        if self.jitter:
            delay *= 0.5 + random.random()
        return min(delay, self.max_delay_s)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    give_up_on: Tuple[Type[BaseException], ...] = (),
    description: str = "call",
) -> T:
    """
    Await `fn()` up to `policy.max_attempts` times, sleeping with backoff in between.
    Exceptions in `give_up_on` (or outside `retry_on`) are re-raised immediately.
    """
    attempts = max(1, int(policy.max_attempts))
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except give_up_on:
            raise
        except retry_on as e:
            if attempt >= attempts:
                logger.warning(f"{description}: giving up after {attempts} attempts: {e}")
                raise
            delay = policy.delay_for(attempt)
            logger.info(f"{description}: retry {attempt}/{attempts - 1} in {delay:.2f}s ({e})")
            await asyncio.sleep(delay)
    raise RuntimeError("unreachable")  # pragma: no cover


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Opens after `failure_threshold` consecutive failures; after `recovery_time_s`
    a single trial call is let through (half-open). Success closes it again.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_time_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = max(1, int(failure_threshold))
        self.recovery_time_s = float(recovery_time_s)
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.recovery_time_s:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def before_call(self) -> None:
        if self.state == CircuitState.OPEN:
            raise CircuitOpenError(f"circuit open after {self._failures} failures", provider=self.name)

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info(f"Circuit '{self.name}' closed")
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failures += 1
        if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            if self._state != CircuitState.OPEN:
                logger.warning(f"Circuit '{self.name}' opened after {self._failures} failures")
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()


class AsyncRateLimiter:
    """Spaces calls at least 1/rate_per_s apart. rate_per_s <= 0 disables limiting."""

    def __init__(self, rate_per_s: float = 0.0):
        self.rate_per_s = float(rate_per_s or 0.0)
        self._lock = asyncio.Lock()
        self._next_slot = 0.0

    async def acquire(self) -> None:
        if self.rate_per_s <= 0:
            return
        interval = 1.0 / self.rate_per_s
        async with self._lock:
            now = time.monotonic()
            wait = self._next_slot - now
            self._next_slot = max(now, self._next_slot) + interval
        if wait > 0:
            await asyncio.sleep(wait)
