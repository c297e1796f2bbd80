import asyncio

import pytest

from qobuz_queue.utils.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerError,
    CircuitState,
)


async def _fail(breaker):
    with pytest.raises(RuntimeError):
        async with breaker:
            raise RuntimeError("fetch failed")


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, clock):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=10, clock=clock)
        await _fail(breaker)
        assert breaker.state is CircuitState.CLOSED
        await _fail(breaker)

        assert breaker.state is CircuitState.OPEN
        assert not await breaker.allows_requests()
        assert breaker.retry_after() == pytest.approx(10)
        with pytest.raises(CircuitBreakerError):
            async with breaker:
                pass

    @pytest.mark.asyncio
    async def test_recovers_through_half_open(self, clock):
        breaker = CircuitBreaker(
            failure_threshold=1, recovery_timeout=10, success_threshold=2, clock=clock
        )
        await _fail(breaker)
        clock.advance(10)

        assert await breaker.allows_requests()
        assert breaker.state is CircuitState.HALF_OPEN
        async with breaker:
            pass
        assert breaker.state is CircuitState.HALF_OPEN
        async with breaker:
            pass
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_failed_recovery_reopens(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=5, clock=clock)
        await _fail(breaker)
        clock.advance(5)
        await breaker.allows_requests()

        await _fail(breaker)
        assert breaker.state is CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_cancellation_is_not_a_failure(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, clock=clock)
        with pytest.raises(asyncio.CancelledError):
            async with breaker:
                raise asyncio.CancelledError()

        assert breaker.state is CircuitState.CLOSED
