"""
The driver loop: claims eligible jobs from the engine, runs them through a
fetch executor and reports each outcome back.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from contextlib import suppress
from functools import partial

from qobuz_queue.exceptions import FetchError
from qobuz_queue.models.config import QueueConfig
from qobuz_queue.models.job import Job, JobStatus
from qobuz_queue.utils.circuit_breaker import CircuitBreaker

from .collaborators import CatalogResolver, FetchExecutor
from .events import EventKind, QueueEvent
from .queue_engine import QueueEngine
from .retry_policy import categorize_error, is_retryable, retry_delay

log = logging.getLogger(__name__)

_FINISHED_EVENTS = frozenset({EventKind.COMPLETED, EventKind.FAILED, EventKind.REMOVED})


class QueueDriver:
    """
    Runs one asyncio task per in-flight job, up to the engine's budget.

    Cancelling a job in the engine only updates bookkeeping; the driver
    watches for those cancellations and cancels the task running the
    transfer. Failed jobs that will be retried are held back from dispatch
    until their backoff expires.
    """

    def __init__(
        self,
        engine: QueueEngine,
        executor: FetchExecutor,
        resolver: CatalogResolver | None = None,
        breaker: CircuitBreaker | None = None,
        retry_base_delay: float = 1.0,
        poll_interval: float = 1.0,
        hydration_interval: float = 5.0,
        hydration_pause: float = 0.2,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.executor = executor
        self.resolver = resolver
        self.breaker = breaker or CircuitBreaker()
        self.retry_base_delay = retry_base_delay
        self.poll_interval = poll_interval
        self.hydration_interval = hydration_interval
        self.hydration_pause = hydration_pause
        self._clock = clock

        self._tasks: dict[str, asyncio.Task] = {}
        self._held_until: dict[str, float] = {}
        self._hydrated: set[str] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wakeup: asyncio.Event | None = None
        self._stopping = False

    @classmethod
    def from_config(
        cls,
        engine: QueueEngine,
        executor: FetchExecutor,
        config: QueueConfig,
        resolver: CatalogResolver | None = None,
    ) -> "QueueDriver":
        return cls(
            engine,
            executor,
            resolver=resolver,
            breaker=CircuitBreaker(
                failure_threshold=config.breaker_failure_threshold,
                recovery_timeout=config.breaker_recovery_timeout,
            ),
            retry_base_delay=config.retry_delay,
            poll_interval=config.poll_interval,
        )

    @property
    def active_job_ids(self) -> set[str]:
        return set(self._tasks)

    # -------------------------------------------------------------- main loop

    async def run(self, exit_when_empty: bool = False) -> None:
        """
        Dispatches work until `stop()` is called, or until nothing is left to
        do when `exit_when_empty` is set. Tasks still running on exit are
        cancelled and their jobs are left in flight for a later restore.
        """
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._stopping = False
        unsubscribe = self.engine.subscribe(self._on_event)
        hydration_task = (
            asyncio.create_task(self._hydration_loop()) if self.resolver else None
        )
        log.info("Queue driver started.")

        try:
            while not self._stopping:
                self._wakeup.clear()
                await self._dispatch_available()

                if exit_when_empty and not self._tasks and not self.engine.has_pending():
                    break

                with suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._wakeup.wait(), self._next_timeout())
        finally:
            unsubscribe()
            if hydration_task:
                hydration_task.cancel()
                with suppress(asyncio.CancelledError):
                    await hydration_task
            await self._cancel_running()
            log.info("Queue driver stopped.")

    def stop(self) -> None:
        """Asks the loop to exit at its next wake-up."""
        self._stopping = True
        self._wake()

    async def _cancel_running(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def _wake(self) -> None:
        if self._loop is not None and self._wakeup is not None:
            self._loop.call_soon_threadsafe(self._wakeup.set)

    def _held_ids(self) -> set[str]:
        now = self._clock()
        for job_id, until in list(self._held_until.items()):
            if until <= now:
                del self._held_until[job_id]
        return set(self._held_until)

    def _next_timeout(self) -> float:
        timeout = self.poll_interval
        now = self._clock()
        if self._held_until:
            timeout = min(timeout, min(self._held_until.values()) - now)
        if breaker_wait := self.breaker.retry_after():
            timeout = min(timeout, breaker_wait)
        return max(0.01, timeout)

    async def _dispatch_available(self) -> None:
        while not self._stopping:
            if not await self.breaker.allows_requests():
                return
            job = self.engine.claim_next(exclude=self._held_ids())
            if job is None:
                return
            log.info(
                f"Processing job: {job.display_name} ({job.content_type.value})"
            )
            self._tasks[job.id] = asyncio.create_task(
                self._run_job(job), name=f"job-{job.id}"
            )

    # ------------------------------------------------------------ job running

    def _report(self, job_id: str, percent: float, status: JobStatus | None = None):
        return self.engine.update_progress(job_id, percent, status)

    async def _run_job(self, job: Job) -> None:
        try:
            async with self.breaker:
                outcome = await self.executor.run(job, partial(self._report, job.id))
                if not (outcome.success or outcome.skipped):
                    raise FetchError(outcome.error or "Unknown download error")
        except asyncio.CancelledError:
            log.debug(f"Task for job {job.id} cancelled.")
            raise
        except Exception as e:
            self._handle_failure(job, e)
        else:
            if outcome.quality:
                self.engine.update_quality(job.id, outcome.quality)
            if outcome.files:
                self.engine.update_metadata(
                    job.id, metadata={"batch_files": outcome.files}
                )
            if outcome.skipped:
                log.info(f"Skipped (file exists): {job.display_name}")
            self.engine.complete(job.id, outcome.file_path)
        finally:
            self._tasks.pop(job.id, None)
            self._wake()

    def _handle_failure(self, job: Job, error: Exception) -> None:
        current = self.engine.get(job.id)
        if current is None:
            return

        category = categorize_error(error)
        message = str(error) or type(error).__name__
        log.error(f"Job error [{category.value.upper()}] {job.display_name}: {message}")

        if not is_retryable(category):
            self.engine.fail(job.id, f"{message} (non-retryable)", retryable=False)
            return

        if current.retry_count < current.max_retries:
            delay = retry_delay(current.retry_count, category, self.retry_base_delay)
            self._held_until[job.id] = self._clock() + delay
            log.warning(
                f"[yellow]Retry scheduled in {delay:.0f}s (attempt "
                f"{current.retry_count + 1}/{current.max_retries})[/yellow]"
            )
        self.engine.fail(job.id, message)

    # ---------------------------------------------------------------- events

    def _on_event(self, event: QueueEvent) -> None:
        if event.kind is EventKind.PROGRESS:
            return
        if event.kind in _FINISHED_EVENTS and event.job is not None:
            self._hydrated.discard(event.job.id)
        if event.is_cancellation and event.job is not None:
            self._held_until.pop(event.job.id, None)
            task = self._tasks.get(event.job.id)
            if task is not None and self._loop is not None:
                log.info(f"Cancelling transfer for job {event.job.id}")
                self._loop.call_soon_threadsafe(task.cancel)
        self._wake()

    # ------------------------------------------------------------- hydration

    async def _hydration_loop(self) -> None:
        log.debug("Starting background metadata hydration.")
        while True:
            try:
                await self.hydrate_pending()
            except Exception as e:
                log.error(f"Metadata hydration error: {e}")
            await asyncio.sleep(self.hydration_interval)

    async def hydrate_pending(self) -> int:
        """
        Resolves descriptive metadata for pending jobs that have no title.
        Resolver failures leave the job untouched.

        Returns:
            The number of jobs enriched.
        """
        if self.resolver is None:
            return 0
        hydrated = 0
        for job in self.engine.get_by_status(JobStatus.PENDING):
            if job.title or job.id in self._hydrated:
                continue
            self._hydrated.add(job.id)
            try:
                info = await self.resolver.resolve(job.content_type, job.content_id)
            except Exception as e:
                log.debug(f"Failed to hydrate metadata for {job.content_id}: {e}")
                continue

            extra = {"track_count": info["track_count"]} if "track_count" in info else None
            if self.engine.update_metadata(
                job.id,
                title=info.get("title"),
                artist=info.get("artist"),
                album=info.get("album"),
                metadata=extra,
            ):
                hydrated += 1
                log.debug(
                    f"Hydrated metadata for {job.content_type.value} "
                    f"{job.content_id}: {info.get('title')}"
                )
            if self.hydration_pause:
                await asyncio.sleep(self.hydration_pause)
        return hydrated
