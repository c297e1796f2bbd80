"""
The authoritative in-memory scheduler for download jobs.

The engine owns every `Job` record. Producers enqueue work, a driver loop
claims the next eligible job and reports its outcome, and observers receive
a `QueueEvent` after each transition.

Misuse is never an error here: an unknown ID or a job in the wrong state is
answered with `False`/`None` so that a driver and external cancellations can
race freely. Only exhausted retries surface as a terminal failure.
"""

import logging
import threading
from collections.abc import Callable, Collection, Iterable
from typing import Any

from qobuz_queue.models.job import (
    ACTIVE_STATUSES,
    ContentType,
    Job,
    JobPriority,
    JobStatus,
    utcnow,
)
from qobuz_queue.models.stats import QueueStats

from .events import EventBus, EventKind, Observer, QueueEvent

log = logging.getLogger(__name__)


class QueueEngine:
    """
    Priority/FIFO job queue with a global concurrency budget.

    All operations are synchronous and guarded by a re-entrant lock, so
    `claim_next()` is atomic with respect to other schedulers and observers
    may call back into the engine while handling an event.
    """

    def __init__(
        self,
        max_concurrent: int = 2,
        default_max_retries: int = 3,
        events: EventBus | None = None,
    ):
        """
        Initializes an empty engine.

        Args:
            max_concurrent: Size of the in-flight budget (minimum 1).
            default_max_retries: Retry budget for jobs enqueued without one.
            events: Event bus to publish on. A private bus is created if None.
        """
        self._jobs: dict[str, Job] = {}
        self._in_flight: set[str] = set()
        self._max_concurrent = max(1, max_concurrent)
        self._default_max_retries = default_max_retries
        self._paused = False
        self._lock = threading.RLock()
        self.events = events or EventBus()

    # ---------------------------------------------------------------- observers

    def subscribe(
        self, observer: Observer, kinds: Iterable[EventKind] | None = None
    ) -> Callable[[], None]:
        """Registers an observer on the engine's event bus."""
        return self.events.subscribe(observer, kinds)

    def _emit(
        self, kind: EventKind, job: Job | None = None, error: str | None = None
    ) -> None:
        self.events.publish(
            QueueEvent(kind, job.snapshot() if job is not None else None, error)
        )

    # ---------------------------------------------------------------- admission

    def enqueue(
        self,
        content_type: ContentType | str,
        content_id: str | int,
        quality: int,
        priority: JobPriority | str = JobPriority.NORMAL,
        max_retries: int | None = None,
        title: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Job:
        """
        Adds a new pending job. Always succeeds; duplicates are not filtered
        (see `has_content`).
        """
        job = Job(
            content_type=ContentType(content_type),
            content_id=str(content_id),
            quality=quality,
            priority=JobPriority(priority),
            max_retries=(
                self._default_max_retries if max_retries is None else max_retries
            ),
            title=title,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._jobs[job.id] = job
            log.debug(
                f"Queue: Added {job.content_type.value} {job.content_id} ({job.id})"
            )
            self._emit(EventKind.ADDED, job)
            return job.snapshot()

    def enqueue_unique(
        self,
        content_type: ContentType | str,
        content_id: str | int,
        quality: int,
        **kwargs: Any,
    ) -> Job | None:
        """
        Like `enqueue`, but returns None instead of adding a second live job
        for the same content. The check and the insert share one lock hold.
        """
        with self._lock:
            if self.has_content(content_type, content_id):
                return None
            return self.enqueue(content_type, content_id, quality, **kwargs)

    def restore(self, job: Job) -> bool:
        """
        Re-admits a persisted job as pending, keeping its ID, position and
        retry count. Any previous attempt is discarded.

        Returns:
            False if the job is terminal or its ID is already known.
        """
        if job.status.is_terminal:
            return False
        with self._lock:
            if job.id in self._jobs:
                return False
            restored = job.snapshot()
            restored.status = JobStatus.PENDING
            restored.progress = 0
            restored.started_at = None
            restored.completed_at = None
            self._jobs[restored.id] = restored
            log.debug(f"Queue: Restored {restored.id} as pending")
            self._emit(EventKind.ADDED, restored)
            return True

    # --------------------------------------------------------------- scheduling

    def _pending_in_order(self, exclude: Collection[str] = ()) -> list[Job]:
        # sorted() is stable, so equal keys keep insertion order.
        return sorted(
            (
                job
                for job in self._jobs.values()
                if job.status is JobStatus.PENDING and job.id not in exclude
            ),
            key=Job.sort_key,
        )

    def _has_free_slot(self) -> bool:
        return len(self._in_flight) < self._max_concurrent

    def next_eligible(self, exclude: Collection[str] = ()) -> Job | None:
        """
        Returns the pending job that should be dispatched next, without
        claiming it. None while paused or when the budget is exhausted.

        Args:
            exclude: Job IDs to pass over (e.g., jobs held back for backoff).
        """
        with self._lock:
            if self._paused or not self._has_free_slot():
                return None
            pending = self._pending_in_order(exclude)
            return pending[0].snapshot() if pending else None

    def start(self, job_id: str) -> bool:
        """
        Moves a pending job to `downloading` and into the in-flight set.

        Returns:
            False if the job is unknown, not pending, or no slot is free.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.PENDING:
                return False
            if not self._has_free_slot():
                return False
            job.status = JobStatus.DOWNLOADING
            job.started_at = utcnow()
            job.completed_at = None
            self._in_flight.add(job_id)
            log.debug(f"Queue: Started {job_id}")
            self._emit(EventKind.STARTED, job)
            return True

    def claim_next(self, exclude: Collection[str] = ()) -> Job | None:
        """Atomically selects and starts the next eligible job."""
        with self._lock:
            job = self.next_eligible(exclude)
            if job is None or not self.start(job.id):
                return None
            return self._jobs[job.id].snapshot()

    # --------------------------------------------------------------- lifecycle

    def update_progress(
        self, job_id: str, percent: float, status: JobStatus | str | None = None
    ) -> bool:
        """
        Records progress for an active job. Progress is clamped to [0, 100]
        and never moves backwards; `status` may only advance through
        downloading -> processing -> uploading.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.status.is_active:
                return False
            clamped = int(min(100, max(0, percent)))
            job.progress = max(job.progress, clamped)
            if status is not None:
                target = JobStatus(status)
                if target.is_active and ACTIVE_STATUSES.index(
                    target
                ) > ACTIVE_STATUSES.index(job.status):
                    job.status = target
                elif target is not job.status:
                    log.debug(
                        f"Queue: Ignoring status change {job.status.value} -> "
                        f"{target.value} for {job_id}"
                    )
            self._emit(EventKind.PROGRESS, job)
            return True

    def update_metadata(
        self,
        job_id: str,
        title: str | None = None,
        artist: str | None = None,
        album: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Fills in descriptive fields. Has no effect on scheduling."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            if title:
                job.title = title
            if artist:
                job.artist = artist
            if album:
                job.album = album
            if metadata:
                job.metadata.update(metadata)
            self._emit(EventKind.PROGRESS, job)
            return True

    def update_quality(self, job_id: str, quality: int) -> bool:
        """Records the quality actually delivered by the catalog."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            job.quality = quality
            self._emit(EventKind.PROGRESS, job)
            return True

    def complete(self, job_id: str, file_path: str | None = None) -> bool:
        """Marks a non-terminal job as completed and frees its slot."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status.is_terminal:
                return False
            job.status = JobStatus.COMPLETED
            job.progress = 100
            job.completed_at = utcnow()
            job.error = None
            if file_path:
                job.file_path = file_path
            self._in_flight.discard(job_id)
            log.debug(f"Queue: Completed {job_id}")
            self._emit(EventKind.COMPLETED, job)
            self._check_queue_empty()
            return True

    def fail(self, job_id: str, error: str, retryable: bool = True) -> bool:
        """
        Applies the retry policy to a failed attempt.

        With retries left the job returns to pending with its retry count
        incremented and progress reset. Otherwise, or when the failure is
        not retryable, it becomes terminally `failed`. The slot is freed in
        both cases.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status.is_terminal:
                return False
            job.error = error
            self._in_flight.discard(job_id)

            if retryable and job.retry_count < job.max_retries:
                job.retry_count += 1
                job.status = JobStatus.PENDING
                job.progress = 0
                log.debug(
                    f"Queue: Retry {job.retry_count}/{job.max_retries} for {job_id}"
                )
                self._emit(EventKind.RETRYING, job, error)
            else:
                job.status = JobStatus.FAILED
                job.completed_at = utcnow()
                log.error(f"Queue: Failed {job_id}: {error}")
                self._emit(EventKind.FAILED, job, error)

            self._check_queue_empty()
            return True

    def cancel(self, job_id: str) -> bool:
        """
        Removes a job unconditionally, even while in flight. Observers get a
        `failed` event with the reason "cancelled"; stopping the transfer
        itself is up to whoever runs it.
        """
        with self._lock:
            job = self._jobs.pop(job_id, None)
            if job is None:
                return False
            self._in_flight.discard(job_id)
            job.status = JobStatus.CANCELLED
            job.completed_at = utcnow()
            log.debug(f"Queue: Cancelled {job_id}")
            self._emit(EventKind.FAILED, job, "cancelled")
            self._check_queue_empty()
            return True

    def remove(self, job_id: str) -> bool:
        """Deletes a job that is not in flight."""
        with self._lock:
            if job_id not in self._jobs or job_id in self._in_flight:
                return False
            job = self._jobs.pop(job_id)
            self._emit(EventKind.REMOVED, job)
            return True

    def _remove_where(self, predicate: Callable[[Job], bool]) -> int:
        doomed = [
            job
            for job in self._jobs.values()
            if job.id not in self._in_flight and predicate(job)
        ]
        for job in doomed:
            del self._jobs[job.id]
            self._emit(EventKind.REMOVED, job)
        return len(doomed)

    def clear_completed(self) -> int:
        """Removes every terminal job. Returns the number removed."""
        with self._lock:
            return self._remove_where(lambda job: job.status.is_terminal)

    def clear_pending(self) -> int:
        """Removes every pending job. Returns the number removed."""
        with self._lock:
            return self._remove_where(lambda job: job.status is JobStatus.PENDING)

    def clear(self) -> int:
        """Removes everything that is not in flight. Returns the number removed."""
        with self._lock:
            count = self._remove_where(lambda job: not job.status.is_active)
            self._emit(EventKind.QUEUE_EMPTY)
            return count

    def _check_queue_empty(self) -> None:
        if not self._in_flight and not self.has_pending():
            self._emit(EventKind.QUEUE_EMPTY)

    # ------------------------------------------------------------- global gate

    def pause(self) -> None:
        """Stops handing out new work. Jobs in flight are unaffected."""
        with self._lock:
            self._paused = True
            log.debug("Queue: Paused")
            self._emit(EventKind.QUEUE_PAUSED)

    def resume(self) -> None:
        with self._lock:
            self._paused = False
            log.debug("Queue: Resumed")
            self._emit(EventKind.QUEUE_RESUMED)

    @property
    def is_paused(self) -> bool:
        return self._paused

    def set_max_concurrent(self, limit: int) -> None:
        """
        Changes the concurrency budget for future dispatches. Jobs already
        in flight are never preempted, even if the new limit is lower.
        """
        with self._lock:
            self._max_concurrent = max(1, limit)
            log.debug(f"Queue: Max concurrent set to {self._max_concurrent}")

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    # ----------------------------------------------------------------- queries

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.snapshot() if job is not None else None

    def get_all(self) -> list[Job]:
        with self._lock:
            return [job.snapshot() for job in self._jobs.values()]

    def get_by_status(self, status: JobStatus | str) -> list[Job]:
        status = JobStatus(status)
        with self._lock:
            return [
                job.snapshot() for job in self._jobs.values() if job.status is status
            ]

    def get_position(self, job_id: str) -> int:
        """1-based dispatch rank among pending jobs, or -1 if not pending."""
        with self._lock:
            for position, job in enumerate(self._pending_in_order(), 1):
                if job.id == job_id:
                    return position
            return -1

    def has_content(self, content_type: ContentType | str, content_id: str | int) -> bool:
        """True if a non-terminal job already targets this content."""
        content_type = ContentType(content_type)
        content_id = str(content_id)
        with self._lock:
            return any(
                job.content_type is content_type
                and job.content_id == content_id
                and not job.status.is_terminal
                for job in self._jobs.values()
            )

    def has_pending(self) -> bool:
        with self._lock:
            return any(job.status is JobStatus.PENDING for job in self._jobs.values())

    def is_processing(self) -> bool:
        return bool(self._in_flight)

    def stats(self) -> QueueStats:
        with self._lock:
            return QueueStats.from_jobs(
                self._jobs.values(),
                in_flight=len(self._in_flight),
                max_concurrent=self._max_concurrent,
                paused=self._paused,
            )
