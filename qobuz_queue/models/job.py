"""
Data model for a single queued download job.

Descriptive fields (`title`, `artist`, `album`, `metadata`) may be filled in
after enqueue and never influence scheduling. `metadata` is an open mapping;
the keys used across the application are:

    source       Producer that created the job ("cli" or "batch-import", or
                 whatever `JobSubmitter.submit_many` callers pass).
    batch_id     Identifier shared by every job of one batch import.
    playlist_id  Reserved for a playlist watcher; nothing sets it yet.
    url          Direct asset URL consumed by the HTTP fetch executor.
    track_count  Number of tracks reported by the catalog (album/playlist).
    batch_files  File paths written by an album/playlist/artist job.
"""

import copy
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ContentType(str, Enum):
    """Kinds of catalog content a job can target."""

    TRACK = "track"
    ALBUM = "album"
    PLAYLIST = "playlist"
    ARTIST = "artist"


class JobStatus(str, Enum):
    """Lifecycle states of a job."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    PROCESSING = "processing"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        """True for statuses that occupy a concurrency slot."""
        return self in ACTIVE_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)

# Active statuses in the only order they may be traversed.
ACTIVE_STATUSES = (JobStatus.DOWNLOADING, JobStatus.PROCESSING, JobStatus.UPLOADING)


class JobPriority(str, Enum):
    """Scheduling tie-break. Never preempts a job already in flight."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        """Lower rank is dispatched first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {JobPriority.HIGH: 0, JobPriority.NORMAL: 1, JobPriority.LOW: 2}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_job_id() -> str:
    """Returns a fresh job ID. IDs embed a millisecond timestamp and are never reused."""
    return f"q_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


@dataclass
class Job:
    """A requested download and its lifecycle state."""

    content_type: ContentType
    content_id: str
    quality: int
    id: str = field(default_factory=generate_job_id)
    status: JobStatus = JobStatus.PENDING
    priority: JobPriority = JobPriority.NORMAL
    progress: int = 0
    retry_count: int = 0
    max_retries: int = 3
    added_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    file_path: str | None = None
    title: str | None = None
    artist: str | None = None
    album: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        """A human-readable label for logs and UI."""
        if self.title:
            return f"{self.artist} - {self.title}" if self.artist else self.title
        return f"{self.content_type.value} #{self.content_id}"

    @property
    def retries_left(self) -> int:
        return max(0, self.max_retries - self.retry_count)

    def sort_key(self) -> tuple[int, datetime]:
        """Dispatch order: priority band first, then FIFO within the band."""
        return self.priority.rank, self.added_at

    def snapshot(self) -> "Job":
        """Returns a detached copy safe to hand to observers."""
        return copy.deepcopy(self)
