"""
Keeps a best-effort durable copy of the queue in the `QueueStore`.

Engine events are folded into a write-behind buffer that holds only the
latest write per job, so a burst of progress updates costs a single row
write. The buffer is flushed in one transaction, either periodically by a
background task or explicitly (e.g., before a short-lived CLI exits). The
database copy is never authoritative while an engine is alive.

Only newly added jobs create rows. Every later change is written as an update
of an existing row, so a job that another process deleted from the database
(a CLI `cancel` or `clear` during a `run`) is not written back.
"""

import asyncio
import logging
import threading
from collections.abc import Callable
from contextlib import suppress
from enum import Enum

from qobuz_queue.core.events import EventKind, QueueEvent
from qobuz_queue.core.queue_engine import QueueEngine
from qobuz_queue.models.job import Job, JobStatus

from .queue_store import QueueStore

log = logging.getLogger(__name__)


class WriteOperation(Enum):
    UPSERT = "upsert"  # whole row, created if missing
    UPDATE = "update"  # only if the row still exists
    DELETE = "delete"


_UPDATE_EVENTS = frozenset({EventKind.STARTED, EventKind.PROGRESS, EventKind.RETRYING})


def _coalesce(
    earlier: tuple[WriteOperation, Job | None] | None,
    later: tuple[WriteOperation, Job | None],
) -> tuple[WriteOperation, Job | None]:
    # An update to a row that was never written still has to create it.
    if (
        earlier is not None
        and earlier[0] is WriteOperation.UPSERT
        and later[0] is WriteOperation.UPDATE
    ):
        return WriteOperation.UPSERT, later[1]
    return later


class PersistenceMirror:
    """Observer that mirrors engine state into a `QueueStore`."""

    def __init__(self, store: QueueStore, flush_interval: float = 2.0):
        self.store = store
        self.flush_interval = flush_interval
        self._buffer: dict[str, tuple[WriteOperation, Job | None]] = {}
        self._lock = threading.Lock()
        self._flush_task: asyncio.Task | None = None
        self._unsubscribe: Callable[[], None] | None = None

    def attach(self, engine: QueueEngine) -> None:
        """Subscribes to an engine's events."""
        self.detach()
        self._unsubscribe = engine.subscribe(self.on_event)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    @property
    def pending_writes(self) -> int:
        with self._lock:
            return len(self._buffer)

    def on_event(self, event: QueueEvent) -> None:
        job = event.job
        if job is None:
            return

        if event.kind is EventKind.ADDED:
            self._buffer_write(job.id, WriteOperation.UPSERT, job)
        elif event.kind in _UPDATE_EVENTS:
            self._buffer_write(job.id, WriteOperation.UPDATE, job)
        elif event.kind is EventKind.COMPLETED:
            self._buffer_write(job.id, WriteOperation.DELETE)
        elif event.kind is EventKind.FAILED:
            if job.status is JobStatus.CANCELLED:
                self._buffer_write(job.id, WriteOperation.DELETE)
            else:
                # Terminal failures stay visible for reporting; restore skips them.
                self._buffer_write(job.id, WriteOperation.UPDATE, job)
        elif event.kind is EventKind.REMOVED:
            self._buffer_write(job.id, WriteOperation.DELETE)

    def _buffer_write(
        self, job_id: str, operation: WriteOperation, job: Job | None = None
    ) -> None:
        with self._lock:
            self._buffer[job_id] = _coalesce(self._buffer.get(job_id), (operation, job))

    def _take_buffer(self) -> dict[str, tuple[WriteOperation, Job | None]]:
        with self._lock:
            taken, self._buffer = self._buffer, {}
            return taken

    def _restore_buffer(self, taken: dict[str, tuple[WriteOperation, Job | None]]):
        with self._lock:
            # Writes buffered during the failed flush are newer.
            for job_id, write in self._buffer.items():
                taken[job_id] = _coalesce(taken.get(job_id), write)
            self._buffer = taken

    def flush(self) -> bool:
        """
        Writes every buffered change in one transaction.

        Returns:
            False if the write failed; the changes are kept for the next flush.
        """
        taken = self._take_buffer()
        if not taken:
            return True
        upserts = [job for op, job in taken.values() if op is WriteOperation.UPSERT]
        updates = [job for op, job in taken.values() if op is WriteOperation.UPDATE]
        deletes = [
            job_id for job_id, (op, _) in taken.items() if op is WriteOperation.DELETE
        ]
        if self.store.apply(upserts, deletes, updates):
            log.debug(
                f"Mirror flushed {len(upserts)} upserts, {len(updates)} updates, "
                f"{len(deletes)} deletes."
            )
            return True
        self._restore_buffer(taken)
        return False

    async def start(self) -> None:
        """Starts the periodic background flush task."""
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._flush_loop())
            log.debug("Started persistence mirror flush task.")

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            try:
                await asyncio.to_thread(self.flush)
            except Exception as e:
                log.warning(f"Error in persistence mirror flush loop: {e}")

    async def stop(self, flush_remaining: bool = True) -> None:
        """Stops the flush task and optionally writes what is left."""
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._flush_task
            log.debug("Stopped persistence mirror flush task.")
        self._flush_task = None
        if flush_remaining:
            await asyncio.to_thread(self.flush)


def restore_engine(engine: QueueEngine, store: QueueStore) -> int:
    """
    Re-admits every unfinished persisted job into a fresh engine as pending.

    Jobs that were in flight when the previous process died restart from
    scratch; at most one attempt per job runs while a process is alive, not
    across restarts.

    Returns:
        The number of jobs restored.
    """
    restored = 0
    for job in store.load_unfinished():
        if engine.restore(job):
            restored += 1
    if restored:
        log.info(f"Restored {restored} unfinished jobs from the queue database.")
    return restored
