"""
Interfaces of the external collaborators the driver loop talks to.

The catalog resolver turns a content reference into descriptive metadata;
the fetch executor retrieves and tags the asset. Neither is implemented by
the queue core itself.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol

from qobuz_queue.models.job import ContentType, Job, JobStatus


@dataclass
class FetchOutcome:
    """Result of one fetch attempt."""

    success: bool = True
    file_path: str | None = None
    skipped: bool = False
    error: str | None = None
    quality: int | None = None
    files: list[str] = field(default_factory=list)


class ProgressReporter(Protocol):
    def __call__(self, percent: float, status: JobStatus | None = None) -> bool: ...


class CatalogResolver(Protocol):
    async def resolve(
        self, content_type: ContentType, content_id: str
    ) -> dict[str, Any]:
        """
        Returns descriptive metadata with any of the keys `title`, `artist`,
        `album` and `track_count`.
        """
        ...


class FetchExecutor(Protocol):
    async def run(self, job: Job, report: ProgressReporter) -> FetchOutcome:
        """
        Fetches and tags the content of `job`.

        Raises on failure; the driver categorizes the exception to decide
        whether the job is retried.
        """
        ...
