"""
Provides a per-identity admission limiter that bounds how fast a single
requester (a chat user, a CLI session, a playlist watcher) may enqueue work.

The limiter counts requests in a fixed window per identity. Bursts that
straddle a window boundary can therefore admit up to twice the quota in a
short span; this approximation is accepted in exchange for O(1) state per
identity. Exceeding the quota earns a warning and a temporary block whose
duration grows with the number of warnings, capped at five times the base.
"""

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass

from pydantic import BaseModel, Field

log = logging.getLogger(__name__)

MAX_BLOCK_MULTIPLIER = 5


class LimiterConfig(BaseModel):
    """Admission limiter settings. Durations are in seconds."""

    max_requests: int = Field(default=30, ge=1)
    window: float = Field(default=60.0, gt=0)
    block_duration: float = Field(default=300.0, gt=0)
    sweep_interval: float = Field(default=300.0, gt=0)
    enable_logging: bool = True


@dataclass
class LimiterEntry:
    """Counting window and block state for one identity."""

    count: int
    window_start: float
    warnings: int = 0
    blocked: bool = False
    blocked_until: float | None = None


class AdmissionLimiter:
    """
    Fixed-window rate limiter with escalating temporary blocks.
    """

    def __init__(
        self,
        config: LimiterConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initializes the limiter.

        Args:
            config: Limiter settings (defaults if None).
            clock: Monotonic time source in seconds.
        """
        self.config = config or LimiterConfig()
        self._clock = clock
        self._entries: dict[str, LimiterEntry] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()
        self._sweep_task: asyncio.Task | None = None

    def is_allowed(self, identity: str) -> bool:
        """
        Records an admission request and reports whether it may proceed.

        A False result is a normal control-flow signal, not an error: the
        caller should defer or reject the request.
        """
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.config.sweep_interval:
                self._sweep_locked(now)

            entry = self._entries.get(identity)

            if entry is not None and entry.blocked:
                if entry.blocked_until is not None and now >= entry.blocked_until:
                    entry.blocked = False
                    entry.blocked_until = None
                else:
                    if self.config.enable_logging:
                        log.debug(f"Admission limiter: '{identity}' is blocked")
                    return False

            if entry is None or now - entry.window_start >= self.config.window:
                self._entries[identity] = LimiterEntry(
                    count=1,
                    window_start=now,
                    warnings=entry.warnings if entry is not None else 0,
                )
                return True

            entry.count += 1
            if entry.count > self.config.max_requests:
                entry.warnings += 1
                multiplier = min(entry.warnings, MAX_BLOCK_MULTIPLIER)
                block_duration = self.config.block_duration * multiplier
                entry.blocked = True
                entry.blocked_until = now + block_duration
                if self.config.enable_logging:
                    log.warning(
                        f"[yellow]Admission limiter: '{identity}' blocked for "
                        f"{block_duration:.0f}s (warning {entry.warnings})[/yellow]"
                    )
                return False

            return True

    def get_remaining(self, identity: str) -> int:
        """Requests left in the current window (0 while blocked)."""
        with self._lock:
            entry = self._entries.get(identity)
            if entry is None:
                return self.config.max_requests
            if entry.blocked:
                return 0
            if self._clock() - entry.window_start >= self.config.window:
                return self.config.max_requests
            return max(0, self.config.max_requests - entry.count)

    def get_reset_time(self, identity: str) -> float:
        """Seconds until the identity's block or current window clears."""
        with self._lock:
            entry = self._entries.get(identity)
            if entry is None:
                return 0.0
            now = self._clock()
            if entry.blocked and entry.blocked_until is not None:
                return max(0.0, entry.blocked_until - now)
            return max(0.0, entry.window_start + self.config.window - now)

    def get_entry(self, identity: str) -> LimiterEntry | None:
        """Returns a copy of the identity's state, for inspection."""
        with self._lock:
            entry = self._entries.get(identity)
            return LimiterEntry(**vars(entry)) if entry is not None else None

    def block_user(self, identity: str, duration: float) -> None:
        """Manually blocks an identity, independent of its counters."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(identity) or LimiterEntry(
                count=0, window_start=now
            )
            entry.blocked = True
            entry.blocked_until = now + duration
            self._entries[identity] = entry
        if self.config.enable_logging:
            log.warning(
                f"Admission limiter: '{identity}' manually blocked for {duration:.0f}s"
            )

    def unblock_user(self, identity: str) -> None:
        """Lifts a block and forgives the identity's warnings."""
        with self._lock:
            entry = self._entries.get(identity)
            if entry is None:
                return
            entry.blocked = False
            entry.blocked_until = None
            entry.warnings = 0
        if self.config.enable_logging:
            log.info(f"Admission limiter: '{identity}' unblocked")

    def reset(self, identity: str) -> None:
        """Drops all history for an identity."""
        with self._lock:
            self._entries.pop(identity, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            blocked = sum(1 for entry in self._entries.values() if entry.blocked)
            return {"total_users": len(self._entries), "blocked_users": blocked}

    # ------------------------------------------------------------------ sweep

    def sweep(self) -> int:
        """
        Evicts idle identities and clears expired blocks.

        Returns:
            The number of identities evicted.
        """
        with self._lock:
            return self._sweep_locked(self._clock())

    def _sweep_locked(self, now: float) -> int:
        self._last_sweep = now
        expire_after = self.config.window * 2
        evicted = 0
        for identity, entry in list(self._entries.items()):
            if entry.blocked:
                if entry.blocked_until is not None and now >= entry.blocked_until:
                    entry.blocked = False
                    entry.blocked_until = None
                continue
            if now - entry.window_start > expire_after:
                del self._entries[identity]
                evicted += 1
        if evicted:
            log.debug(f"Admission limiter sweep: evicted {evicted} idle identities.")
        return evicted

    async def start_background_sweep(self) -> None:
        """Starts the periodic background sweep task."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            log.debug("Started admission limiter sweep task.")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            self.sweep()

    async def stop_background_sweep(self) -> None:
        """Stops the background sweep task gracefully."""
        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._sweep_task
            log.debug("Stopped admission limiter sweep task.")
        self._sweep_task = None
