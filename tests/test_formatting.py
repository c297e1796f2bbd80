from datetime import datetime, timedelta, timezone

import pytest
from rich.console import Console

from qobuz_queue.cli.progress_view import QueueProgressView
from qobuz_queue.core.queue_engine import QueueEngine
from qobuz_queue.models.job import ContentType
from qobuz_queue.utils.formatting import format_age, format_duration, truncate


@pytest.mark.parametrize(
    "seconds, expected",
    [(0, "0s"), (59.9, "59s"), (61, "1m 1s"), (3600, "1h"), (9252, "2h 34m 12s")],
)
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


def test_format_age():
    now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert format_age(now - timedelta(minutes=3, seconds=5), now) == "3m 5s ago"
    assert format_age(now + timedelta(seconds=10), now) == "0s ago"
    assert format_age(None) == "-"


def test_truncate():
    assert truncate("short", 10) == "short"
    assert truncate("a long album title", 8) == "a long …"


class TestQueueProgressView:
    @pytest.mark.asyncio
    async def test_counts_session_outcomes(self):
        engine = QueueEngine(max_concurrent=2, default_max_retries=1)
        ok = engine.enqueue(ContentType.TRACK, "1", 6)
        flaky = engine.enqueue(ContentType.TRACK, "2", 6)
        console = Console(file=None, quiet=True)

        async with QueueProgressView(console, engine, quiet=True) as view:
            engine.start(ok.id)
            engine.update_progress(ok.id, 50)
            engine.complete(ok.id)
            engine.start(flaky.id)
            engine.fail(flaky.id, "timeout")
            engine.start(flaky.id)
            engine.fail(flaky.id, "timeout")
            cancelled = engine.enqueue(ContentType.TRACK, "3", 6)
            engine.cancel(cancelled.id)

        stats = view.get_statistics()
        assert stats["total"] == 3
        assert stats["completed"] == 1
        assert stats["failed"] == 1
        assert stats["retried"] == 1
        assert stats["cancelled"] == 1

    @pytest.mark.asyncio
    async def test_live_display_tracks_active_jobs(self):
        engine = QueueEngine(max_concurrent=2)
        job = engine.enqueue(ContentType.ALBUM, "1", 27, title="Blue Train")
        console = Console(quiet=True)

        async with QueueProgressView(console, engine) as view:
            engine.start(job.id)
            engine.update_progress(job.id, 40)
            (task,) = view.progress.tasks
            assert task.completed == 40
            assert view.get_statistics()["peak_concurrent"] == 1

            engine.complete(job.id)
            assert view.progress.tasks == []

        # Events after exit are no longer observed.
        engine.enqueue(ContentType.TRACK, "2", 6)
        assert view.get_statistics()["total"] == 1
