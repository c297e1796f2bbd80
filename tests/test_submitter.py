import threading

import pytest

from qobuz_queue.admission.limiter import AdmissionLimiter, LimiterConfig
from qobuz_queue.core.submitter import JobSubmitter, SubmitStatus
from qobuz_queue.models.config import QueueConfig
from qobuz_queue.models.job import ContentType, JobPriority


@pytest.fixture
def limiter(clock):
    return AdmissionLimiter(
        LimiterConfig(max_requests=2, window=60.0, block_duration=60.0), clock=clock
    )


class TestSubmit:
    def test_queues_job_with_position(self, engine):
        submitter = JobSubmitter(engine, default_quality=27)

        first = submitter.submit("user:1", "album", 111, title="Blue Train")
        second = submitter.submit("user:1", ContentType.TRACK, "222")

        assert first.accepted
        assert first.job.quality == 27
        assert first.job.title == "Blue Train"
        assert first.position == 1
        assert second.position == 2

    def test_explicit_quality_and_priority(self, engine):
        submitter = JobSubmitter(engine)
        result = submitter.submit(
            "user:1", "track", "1", quality=5, priority=JobPriority.HIGH, max_retries=0
        )

        assert result.job.quality == 5
        assert result.job.priority is JobPriority.HIGH
        assert result.job.max_retries == 0

    def test_duplicates_are_skipped(self, engine):
        submitter = JobSubmitter(engine)
        submitter.submit("user:1", "album", "1")

        result = submitter.submit("user:2", "album", "1")
        assert result.status is SubmitStatus.DUPLICATE
        assert not result.accepted
        assert len(engine.get_all()) == 1

    def test_duplicates_allowed_when_disabled(self, engine):
        submitter = JobSubmitter(engine, skip_duplicates=False)
        submitter.submit("user:1", "album", "1")

        assert submitter.submit("user:1", "album", "1").accepted
        assert len(engine.get_all()) == 2

    def test_rate_limited_submission(self, engine, limiter, clock):
        submitter = JobSubmitter(engine, limiter)
        assert submitter.submit("user:1", "track", "1").accepted
        assert submitter.submit("user:1", "track", "2").accepted

        denied = submitter.submit("user:1", "track", "3")
        assert denied.status is SubmitStatus.RATE_LIMITED
        assert denied.retry_after == pytest.approx(60.0)
        assert denied.job is None
        assert len(engine.get_all()) == 2

        assert submitter.submit("user:2", "track", "3").accepted

    def test_from_config(self, engine, tmp_path):
        config = QueueConfig(quality=4, config_path=str(tmp_path))
        submitter = JobSubmitter.from_config(engine, config)
        assert submitter.submit("u", "track", "1").job.quality == 27


class TestSubmitMany:
    def test_batch_import(self, engine):
        submitter = JobSubmitter(engine)
        results = submitter.submit_many(
            "user:1",
            [
                "https://play.qobuz.com/album/0060254728697",
                "track:42",
                "not a reference",
                "track:42",
            ],
        )

        statuses = [r.status for r in results]
        assert statuses == [
            SubmitStatus.QUEUED,
            SubmitStatus.QUEUED,
            SubmitStatus.INVALID,
            SubmitStatus.DUPLICATE,
        ]
        batch_ids = {r.job.metadata["batch_id"] for r in results if r.accepted}
        assert len(batch_ids) == 1
        assert results[0].job.metadata["source"] == "batch-import"
        assert results[2].reference == "not a reference"

    def test_bare_ids_use_default_type(self, engine):
        submitter = JobSubmitter(engine)
        (result,) = submitter.submit_many(
            "user:1", ["555"], default_type=ContentType.PLAYLIST, source="watcher"
        )

        assert result.job.content_type is ContentType.PLAYLIST
        assert result.job.metadata["source"] == "watcher"

    def test_batch_counts_as_one_request(self, engine, limiter):
        submitter = JobSubmitter(engine, limiter)
        refs = [f"track:{i}" for i in range(10)]

        assert all(r.accepted for r in submitter.submit_many("user:1", refs[:5]))
        assert all(r.accepted for r in submitter.submit_many("user:1", refs[5:]))

        denied = submitter.submit_many("user:1", ["track:99"])
        assert [r.status for r in denied] == [SubmitStatus.RATE_LIMITED]
        assert len(engine.get_all()) == 10


class TestConcurrentProducers:
    def test_same_content_from_many_threads_is_queued_once(self, engine):
        submitter = JobSubmitter(engine)
        barrier = threading.Barrier(8)
        results = []

        def producer(identity):
            barrier.wait()
            results.append(submitter.submit(identity, "album", "1"))

        threads = [
            threading.Thread(target=producer, args=(f"user:{i}",)) for i in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        statuses = sorted(r.status.value for r in results)
        assert statuses.count(SubmitStatus.QUEUED.value) == 1
        assert statuses.count(SubmitStatus.DUPLICATE.value) == 7
        assert len(engine.get_all()) == 1
