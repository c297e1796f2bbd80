"""
Circuit breaker that stops the driver loop from hammering a failing catalog.

Every fetch attempt runs inside the breaker. After `failure_threshold`
consecutive failed attempts the circuit opens and the driver stops claiming
jobs; once `recovery_timeout` has passed a few probe attempts are let
through, and `success_threshold` consecutive successes close it again.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from enum import Enum

log = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"  # attempts pass through
    OPEN = "open"  # attempts refused
    HALF_OPEN = "half_open"  # probing


class CircuitBreakerError(Exception):
    """Raised when an attempt is made while the circuit is open."""


class CircuitBreaker:
    """Consecutive-failure breaker shared by every job the driver runs."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            failure_threshold: Consecutive failed attempts that open the circuit.
            recovery_timeout: Seconds the circuit stays open before probing.
            success_threshold: Consecutive probe successes that close it again.
            clock: Monotonic time source in seconds.
        """
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._probe_successes = 0
        self._opened_at: float | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    def retry_after(self) -> float:
        """Seconds until an open circuit starts probing, 0 otherwise."""
        if self._state is not CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))

    def _refresh_state(self) -> None:
        if self._state is not CircuitState.OPEN or self._opened_at is None:
            return
        waited = self._clock() - self._opened_at
        if waited >= self.recovery_timeout:
            log.info(
                f"[yellow]Circuit half-open after {waited:.0f}s; probing with the "
                f"next jobs.[/yellow]"
            )
            self._state = CircuitState.HALF_OPEN
            self._probe_successes = 0

    async def allows_requests(self) -> bool:
        """False while the circuit is open and still cooling down."""
        async with self._lock:
            self._refresh_state()
            return self._state is not CircuitState.OPEN

    async def record_success(self) -> None:
        async with self._lock:
            self._consecutive_failures = 0
            if self._state is not CircuitState.HALF_OPEN:
                return
            self._probe_successes += 1
            if self._probe_successes >= self.success_threshold:
                log.info("[green]✓ Downloads are succeeding again; circuit closed.[/green]")
                self._state = CircuitState.CLOSED
                self._probe_successes = 0

    async def record_failure(self) -> None:
        async with self._lock:
            self._consecutive_failures += 1
            now = self._clock()

            if self._state is CircuitState.HALF_OPEN:
                log.warning("[yellow]Probe attempt failed; circuit open again.[/yellow]")
                self._open(now)
            elif (
                self._state is CircuitState.CLOSED
                and self._consecutive_failures >= self.failure_threshold
            ):
                log.error(
                    f"[red]✗ {self._consecutive_failures} downloads failed in a row; "
                    f"holding new jobs for {self.recovery_timeout}s.[/red]"
                )
                self._open(now)

    def _open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._consecutive_failures = 0
        self._probe_successes = 0

    async def __aenter__(self):
        async with self._lock:
            self._refresh_state()
            if self._state is CircuitState.OPEN:
                raise CircuitBreakerError(
                    f"Circuit is open; retrying in {self.retry_after():.0f}s."
                )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            await self.record_success()
        elif not issubclass(exc_type, asyncio.CancelledError):
            await self.record_failure()
