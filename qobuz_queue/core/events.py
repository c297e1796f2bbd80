"""
Typed queue events and a synchronous observer registry.

Observers (UI renderers, the persistence mirror, the driver loop) register a
callback and receive `QueueEvent`s in the exact order the engine performed
the corresponding transitions.
"""

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from qobuz_queue.models.job import Job

log = logging.getLogger(__name__)


class EventKind(str, Enum):
    ADDED = "added"
    STARTED = "started"
    PROGRESS = "progress"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    REMOVED = "removed"
    QUEUE_EMPTY = "queue:empty"
    QUEUE_PAUSED = "queue:paused"
    QUEUE_RESUMED = "queue:resumed"


@dataclass(frozen=True)
class QueueEvent:
    """A notification emitted after a state transition."""

    kind: EventKind
    job: Job | None = None
    error: str | None = None

    @property
    def is_cancellation(self) -> bool:
        return self.kind is EventKind.FAILED and self.error == "cancelled"


Observer = Callable[[QueueEvent], None]


class EventBus:
    """Fan-out of queue events to registered observers."""

    def __init__(self):
        self._observers: list[tuple[Observer, frozenset[EventKind] | None]] = []
        self._lock = threading.Lock()

    def subscribe(
        self, observer: Observer, kinds: Iterable[EventKind] | None = None
    ) -> Callable[[], None]:
        """
        Registers an observer.

        Args:
            observer: Callable invoked with each matching event.
            kinds: Restricts delivery to these event kinds (all kinds if None).

        Returns:
            A callable that unregisters the observer.
        """
        entry = (observer, frozenset(kinds) if kinds is not None else None)
        with self._lock:
            self._observers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._observers:
                    self._observers.remove(entry)

        return unsubscribe

    def publish(self, event: QueueEvent) -> None:
        with self._lock:
            observers = list(self._observers)
        for observer, kinds in observers:
            if kinds is not None and event.kind not in kinds:
                continue
            try:
                observer(event)
            except Exception as e:
                log.error(
                    f"Queue observer {observer!r} failed on '{event.kind.value}': {e}",
                    exc_info=True,
                )
