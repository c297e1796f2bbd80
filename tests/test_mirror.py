from unittest.mock import MagicMock

import pytest

from qobuz_queue.core.queue_engine import QueueEngine
from qobuz_queue.models.job import ContentType, JobStatus
from qobuz_queue.storage.mirror import PersistenceMirror, restore_engine
from qobuz_queue.storage.queue_store import QueueStore


@pytest.fixture
def store(tmp_path):
    return QueueStore(tmp_path)


@pytest.fixture
def mirrored(store):
    engine = QueueEngine(max_concurrent=2)
    mirror = PersistenceMirror(store, flush_interval=0.01)
    mirror.attach(engine)
    return engine, mirror


class TestPersistenceMirror:
    def test_progress_bursts_coalesce_into_one_write(self, mirrored, store):
        engine, mirror = mirrored
        job = engine.enqueue(ContentType.TRACK, "1", 6)
        engine.start(job.id)
        for percent in range(0, 100, 10):
            engine.update_progress(job.id, percent)

        assert mirror.pending_writes == 1
        assert store.load_all() == []

        assert mirror.flush()
        (row,) = store.load_all()
        assert row.status is JobStatus.DOWNLOADING
        assert row.progress == 90
        assert mirror.pending_writes == 0

    def test_completed_jobs_are_deleted(self, mirrored, store):
        engine, mirror = mirrored
        job = engine.enqueue(ContentType.TRACK, "1", 6)
        mirror.flush()
        engine.start(job.id)
        engine.complete(job.id)
        mirror.flush()

        assert store.load_all() == []

    def test_cancelled_jobs_are_deleted(self, mirrored, store):
        engine, mirror = mirrored
        job = engine.enqueue(ContentType.TRACK, "1", 6)
        mirror.flush()
        engine.cancel(job.id)
        mirror.flush()

        assert store.load_all() == []

    def test_terminal_failures_are_kept_for_reporting(self, mirrored, store):
        engine, mirror = mirrored
        job = engine.enqueue(ContentType.TRACK, "1", 6, max_retries=0)
        engine.start(job.id)
        engine.fail(job.id, "gone")
        mirror.flush()

        (row,) = store.load_all()
        assert row.status is JobStatus.FAILED
        assert row.error == "gone"
        assert store.load_unfinished() == []

    def test_retry_is_persisted_as_pending(self, mirrored, store):
        engine, mirror = mirrored
        job = engine.enqueue(ContentType.TRACK, "1", 6)
        engine.start(job.id)
        engine.fail(job.id, "timeout")
        mirror.flush()

        (row,) = store.load_all()
        assert row.status is JobStatus.PENDING
        assert row.retry_count == 1

    def test_removed_jobs_are_deleted(self, mirrored, store):
        engine, mirror = mirrored
        job = engine.enqueue(ContentType.TRACK, "1", 6)
        mirror.flush()
        engine.remove(job.id)
        mirror.flush()

        assert store.load_all() == []

    def test_failed_flush_keeps_buffer(self, mirrored):
        engine, mirror = mirrored
        engine.enqueue(ContentType.TRACK, "1", 6)
        real_store = mirror.store
        mirror.store = MagicMock()
        mirror.store.apply.return_value = False

        assert not mirror.flush()
        assert mirror.pending_writes == 1

        mirror.store = real_store
        assert mirror.flush()
        assert len(real_store.load_all()) == 1

    def test_detach_stops_mirroring(self, mirrored):
        engine, mirror = mirrored
        mirror.detach()
        engine.enqueue(ContentType.TRACK, "1", 6)
        assert mirror.pending_writes == 0

    @pytest.mark.asyncio
    async def test_stop_flushes_remaining_writes(self, mirrored, store):
        engine, mirror = mirrored
        await mirror.start()
        engine.enqueue(ContentType.TRACK, "1", 6)
        await mirror.stop()

        assert len(store.load_all()) == 1


class TestRestore:
    def test_restore_bootstraps_unfinished_jobs(self, mirrored, store):
        engine, mirror = mirrored
        pending = engine.enqueue(ContentType.TRACK, "pending", 6)
        running = engine.enqueue(ContentType.ALBUM, "running", 27)
        done = engine.enqueue(ContentType.TRACK, "done", 6)
        engine.start(running.id)
        engine.update_progress(running.id, 60)
        engine.start(done.id)
        engine.complete(done.id)
        mirror.flush()

        fresh = QueueEngine(max_concurrent=1)
        assert restore_engine(fresh, store) == 2

        jobs = {job.id: job for job in fresh.get_all()}
        assert set(jobs) == {pending.id, running.id}
        assert jobs[running.id].status is JobStatus.PENDING
        assert jobs[running.id].progress == 0
        assert fresh.claim_next().id == pending.id

    def test_restore_is_idempotent(self, store):
        engine = QueueEngine()
        mirror = PersistenceMirror(store)
        mirror.attach(engine)
        engine.enqueue(ContentType.TRACK, "1", 6)
        mirror.flush()

        fresh = QueueEngine()
        assert restore_engine(fresh, store) == 1
        assert restore_engine(fresh, store) == 0

    def test_update_after_failed_insert_still_creates_row(self, mirrored):
        engine, mirror = mirrored
        job = engine.enqueue(ContentType.TRACK, "1", 6)
        real_store = mirror.store
        mirror.store = MagicMock()
        mirror.store.apply.return_value = False
        assert not mirror.flush()

        engine.start(job.id)
        mirror.store = real_store
        assert mirror.flush()

        (row,) = real_store.load_all()
        assert row.status is JobStatus.DOWNLOADING


class TestSharedStore:
    """Two processes working on one database, simulated with two engines."""

    def _open(self, store):
        engine = QueueEngine(max_concurrent=2)
        restore_engine(engine, store)
        mirror = PersistenceMirror(store)
        mirror.attach(engine)
        return engine, mirror

    def test_cancel_elsewhere_is_not_undone_by_running_engine(self, store):
        runner, runner_mirror = self._open(store)
        job = runner.enqueue(ContentType.ALBUM, "1", 27)
        runner.start(job.id)
        runner_mirror.flush()

        other, other_mirror = self._open(store)
        assert other.cancel(job.id)
        other_mirror.flush()
        assert store.load_unfinished() == []

        runner.update_progress(job.id, 40)
        runner_mirror.flush()
        assert store.load_all() == []

        runner.fail(job.id, "timeout")
        runner_mirror.flush()
        assert store.load_all() == []

        fresh = QueueEngine()
        assert restore_engine(fresh, store) == 0

    def test_clear_elsewhere_is_not_undone_by_running_engine(self, store):
        runner, runner_mirror = self._open(store)
        first = runner.enqueue(ContentType.TRACK, "1", 6)
        runner.enqueue(ContentType.TRACK, "2", 6)
        runner.start(first.id)
        runner_mirror.flush()

        assert store.clear()
        runner.update_progress(first.id, 80)
        runner.complete(first.id)
        runner_mirror.flush()

        assert store.load_all() == []

    def test_jobs_added_elsewhere_reach_the_next_run(self, store):
        runner, runner_mirror = self._open(store)
        runner.enqueue(ContentType.TRACK, "1", 6)
        runner_mirror.flush()

        other, other_mirror = self._open(store)
        added = other.enqueue(ContentType.TRACK, "2", 6)
        other_mirror.flush()

        runner.start(runner.get_all()[0].id)
        runner_mirror.flush()

        restarted = QueueEngine()
        restore_engine(restarted, store)
        assert added.id in {job.id for job in restarted.get_all()}
        assert len(restarted.get_all()) == 2
