import pytest

from qobuz_queue.core.queue_engine import QueueEngine


class FakeClock:
    """Manually advanced monotonic clock, in seconds."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine():
    return QueueEngine(max_concurrent=2, default_max_retries=3)


@pytest.fixture
def recorded_events(engine):
    """Every event the engine publishes, in order."""
    events = []
    engine.subscribe(events.append)
    return events
