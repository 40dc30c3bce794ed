"""
Tests for retry, circuit breaker and rate limiting.
"""

import pytest

from errors import CircuitOpenError
from resilience import AsyncRateLimiter, CircuitBreaker, CircuitState, RetryPolicy, call_with_retry


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_exponential_without_jitter(self):
        """Test delays double per attempt up to the cap."""
        policy = RetryPolicy(max_attempts=5, base_delay_s=0.5, max_delay_s=3.0, jitter=False)
        assert [policy.delay_for(a) for a in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 3.0]

    def test_jitter_stays_under_cap(self):
        """Test jittered delays never exceed the maximum."""
        policy = RetryPolicy(base_delay_s=1.0, max_delay_s=2.0, jitter=True)
        assert all(policy.delay_for(a) <= 2.0 for a in range(1, 10))


class TestCallWithRetry:
    """Tests for call_with_retry."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        """Test a call that fails twice then succeeds is retried."""
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("transient")
            return "ok"

        policy = RetryPolicy(max_attempts=3, base_delay_s=0.0, jitter=False)
        assert await call_with_retry(flaky, policy=policy) == "ok"
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        """Test the last error propagates once attempts run out."""

        async def broken():
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            await call_with_retry(broken, policy=RetryPolicy(max_attempts=2, base_delay_s=0.0, jitter=False))

    @pytest.mark.asyncio
    async def test_give_up_on_is_not_retried(self):
        """Test exceptions in give_up_on propagate on the first attempt."""
        attempts = []

        async def open_circuit():
            attempts.append(1)
            raise CircuitOpenError("open", provider="p")

        with pytest.raises(CircuitOpenError):
            await call_with_retry(
                open_circuit,
                policy=RetryPolicy(max_attempts=5, base_delay_s=0.0, jitter=False),
                give_up_on=(CircuitOpenError,),
            )
        assert len(attempts) == 1


class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    def test_opens_after_threshold(self):
        """Test consecutive failures open the circuit and block calls."""
        breaker = CircuitBreaker("p", failure_threshold=3, recovery_time_s=10, clock=FakeClock())
        for _ in range(3):
            breaker.before_call()
            breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

    def test_half_open_after_recovery(self):
        """Test the circuit lets a trial call through after the recovery time."""
        clock = FakeClock()
        breaker = CircuitBreaker("p", failure_threshold=1, recovery_time_s=10, clock=clock)
        breaker.record_failure()
        clock.now = 10.0
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.before_call()
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_failure_while_half_open_reopens(self):
        """Test a failed trial call opens the circuit again."""
        clock = FakeClock()
        breaker = CircuitBreaker("p", failure_threshold=5, recovery_time_s=1, clock=clock)
        for _ in range(5):
            breaker.record_failure()
        clock.now = 2.0
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

    def test_success_resets_failure_count(self):
        """Test a success in between keeps the circuit closed."""
        breaker = CircuitBreaker("p", failure_threshold=2, clock=FakeClock())
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED


class TestAsyncRateLimiter:
    """Tests for AsyncRateLimiter."""

    @pytest.mark.asyncio
    async def test_disabled_limiter_never_waits(self):
        """Test a zero rate means no limiting."""
        limiter = AsyncRateLimiter(0)
        for _ in range(100):
            await limiter.acquire()

    @pytest.mark.asyncio
    async def test_spaces_calls(self):
        """Test calls are spaced by the configured interval."""
        import time

        limiter = AsyncRateLimiter(50.0)
        t0 = time.monotonic()
        for _ in range(4):
            await limiter.acquire()
        assert time.monotonic() - t0 >= 0.04
