from datetime import datetime, timezone

import pytest

from qobuz_queue.models.job import ContentType, Job, JobPriority, JobStatus
from qobuz_queue.storage.queue_store import QueueStore


@pytest.fixture
def store(tmp_path):
    return QueueStore(tmp_path)


def _job(content_id="1", **kwargs):
    return Job(content_type=ContentType.ALBUM, content_id=content_id, quality=27, **kwargs)


class TestQueueStore:
    def test_creates_database_file(self, tmp_path):
        QueueStore(tmp_path / "nested")
        assert (tmp_path / "nested" / "queue.sqlite").is_file()

    def test_round_trip_preserves_fields(self, store):
        job = _job(
            priority=JobPriority.HIGH,
            status=JobStatus.DOWNLOADING,
            progress=40,
            retry_count=2,
            max_retries=5,
            started_at=datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc),
            title="Kind of Blue",
            artist="Miles Davis",
            metadata={"source": "cli", "track_count": 5},
        )

        assert store.upsert_many([job])
        (loaded,) = store.load_all()

        assert loaded.id == job.id
        assert loaded.content_type is ContentType.ALBUM
        assert loaded.priority is JobPriority.HIGH
        assert loaded.status is JobStatus.DOWNLOADING
        assert loaded.progress == 40
        assert loaded.retry_count == 2
        assert loaded.max_retries == 5
        assert loaded.added_at == job.added_at
        assert loaded.started_at == job.started_at
        assert loaded.completed_at is None
        assert loaded.display_name == "Miles Davis - Kind of Blue"
        assert loaded.metadata == {"source": "cli", "track_count": 5}

    def test_upsert_replaces_existing_row(self, store):
        job = _job()
        store.upsert_many([job])
        job.progress = 80
        store.upsert_many([job])

        (loaded,) = store.load_all()
        assert loaded.progress == 80

    def test_apply_writes_and_deletes_together(self, store):
        keep, drop = _job("keep"), _job("drop")
        store.upsert_many([keep, drop])

        assert store.apply([_job("new")], [drop.id])
        ids = {job.content_id for job in store.load_all()}
        assert ids == {"keep", "new"}

    def test_updates_never_create_rows(self, store):
        present, deleted = _job("present"), _job("deleted")
        store.upsert_many([present])
        present.progress = 55
        deleted.progress = 10

        assert store.apply([], [], updates=[present, deleted])
        (loaded,) = store.load_all()
        assert loaded.content_id == "present"
        assert loaded.progress == 55

    def test_load_unfinished_skips_terminal_rows(self, store):
        store.upsert_many(
            [
                _job("pending"),
                _job("running", status=JobStatus.PROCESSING),
                _job("failed", status=JobStatus.FAILED),
                _job("done", status=JobStatus.COMPLETED),
            ]
        )

        unfinished = {job.content_id for job in store.load_unfinished()}
        assert unfinished == {"pending", "running"}
        assert [j.content_id for j in store.load_all(JobStatus.FAILED)] == ["failed"]

    def test_rows_come_back_in_admission_order(self, store):
        first = _job("first", added_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        second = _job("second", added_at=datetime(2024, 1, 2, tzinfo=timezone.utc))
        store.upsert_many([second, first])

        assert [j.content_id for j in store.load_all()] == ["first", "second"]

    def test_stats_clear_and_vacuum(self, store):
        store.upsert_many([_job("a"), _job("b", status=JobStatus.FAILED)])

        assert store.get_stats() == {
            "total": 2,
            "by_status": {"pending": 1, "failed": 1},
        }
        assert store.clear()
        assert store.load_all() == []
        assert store.vacuum()

    @pytest.mark.asyncio
    async def test_async_wrappers(self, store):
        job = _job()
        assert await store.apply_async([job], [])
        loaded = await store.load_unfinished_async()
        assert [j.id for j in loaded] == [job.id]
