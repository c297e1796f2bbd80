"""
Dataclasses for queue statistics reported to dashboards and the CLI.
"""

from collections import Counter
from collections.abc import Iterable
from dataclasses import asdict, dataclass

from .job import Job, JobStatus


@dataclass
class QueueStats:
    """Counts of jobs by status, plus scheduler state."""

    total: int = 0
    pending: int = 0
    downloading: int = 0
    processing: int = 0
    uploading: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    in_flight: int = 0
    max_concurrent: int = 0
    paused: bool = False

    @property
    def active(self) -> int:
        """Jobs currently in any active status."""
        return self.downloading + self.processing + self.uploading

    @classmethod
    def from_jobs(
        cls,
        jobs: Iterable[Job],
        in_flight: int = 0,
        max_concurrent: int = 0,
        paused: bool = False,
    ) -> "QueueStats":
        counts = Counter(job.status for job in jobs)
        return cls(
            total=sum(counts.values()),
            pending=counts[JobStatus.PENDING],
            downloading=counts[JobStatus.DOWNLOADING],
            processing=counts[JobStatus.PROCESSING],
            uploading=counts[JobStatus.UPLOADING],
            completed=counts[JobStatus.COMPLETED],
            failed=counts[JobStatus.FAILED],
            cancelled=counts[JobStatus.CANCELLED],
            in_flight=in_flight,
            max_concurrent=max_concurrent,
            paused=paused,
        )

    def to_dict(self) -> dict[str, int | bool]:
        return asdict(self)
