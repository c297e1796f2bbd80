"""
Manages the SQLite database that mirrors queue state for crash recovery.
"""

import asyncio
import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

from qobuz_queue.models.job import (
    TERMINAL_STATUSES,
    ContentType,
    Job,
    JobPriority,
    JobStatus,
)

log = logging.getLogger(__name__)

COLUMNS = (
    "id",
    "type",
    "content_id",
    "quality",
    "status",
    "priority",
    "progress",
    "title",
    "artist",
    "album",
    "error",
    "file_path",
    "added_at",
    "started_at",
    "completed_at",
    "retry_count",
    "max_retries",
    "metadata",
)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def job_to_row(job: Job) -> tuple[Any, ...]:
    """Serializes a job into a `queue_items` row in COLUMNS order."""
    return (
        job.id,
        job.content_type.value,
        job.content_id,
        job.quality,
        job.status.value,
        job.priority.value,
        job.progress,
        job.title,
        job.artist,
        job.album,
        job.error,
        job.file_path,
        _to_iso(job.added_at),
        _to_iso(job.started_at),
        _to_iso(job.completed_at),
        job.retry_count,
        job.max_retries,
        json.dumps(job.metadata) if job.metadata else None,
    )


def row_to_job(row: sqlite3.Row) -> Job:
    """Deserializes a `queue_items` row."""
    return Job(
        id=row["id"],
        content_type=ContentType(row["type"]),
        content_id=row["content_id"],
        quality=row["quality"],
        status=JobStatus(row["status"]),
        priority=JobPriority(row["priority"]),
        progress=int(row["progress"] or 0),
        title=row["title"],
        artist=row["artist"],
        album=row["album"],
        error=row["error"],
        file_path=row["file_path"],
        added_at=_from_iso(row["added_at"]),
        started_at=_from_iso(row["started_at"]),
        completed_at=_from_iso(row["completed_at"]),
        retry_count=row["retry_count"] or 0,
        max_retries=row["max_retries"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
    )


class QueueStore:
    """
    A thread-safe SQLite store holding one row per queued job.

    The store is a sink: it is never consulted while an engine is running,
    only when bootstrapping a new one or for offline reporting. Database
    errors are logged and reported through return values.
    """

    def __init__(self, config_dir_path: Path, pool_size: int = 5):
        self.db_path = config_dir_path / "queue.sqlite"
        self._connection_semaphore = asyncio.Semaphore(pool_size)
        config_dir_path.mkdir(parents=True, exist_ok=True)
        self._initialize_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Gets a new database connection with optimized PRAGMA settings."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA temp_store=MEMORY;")
            return conn
        except sqlite3.Error as e:
            log.error(f"Failed to connect to queue database: {e}")
            raise

    def _initialize_db(self) -> None:
        """Creates the queue table and its indexes if they don't exist."""
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS queue_items (
                        id TEXT PRIMARY KEY NOT NULL,
                        type TEXT NOT NULL,
                        content_id TEXT NOT NULL,
                        quality INTEGER NOT NULL,
                        status TEXT NOT NULL,
                        priority TEXT NOT NULL,
                        progress INTEGER DEFAULT 0,
                        title TEXT,
                        artist TEXT,
                        album TEXT,
                        error TEXT,
                        file_path TEXT,
                        added_at TEXT,
                        started_at TEXT,
                        completed_at TEXT,
                        retry_count INTEGER DEFAULT 0,
                        max_retries INTEGER DEFAULT 3,
                        metadata TEXT
                    );
                    """
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_queue_status ON queue_items(status);"
                )
                conn.commit()
        except sqlite3.Error as e:
            log.error(f"Failed to initialize queue database at '{self.db_path}': {e}")

    async def _run_in_executor(self, func, *args):
        """Runs a synchronous database function within the connection pool semaphore."""
        async with self._connection_semaphore:
            return await asyncio.to_thread(func, *args)

    # ------------------------------------------------------------------ writes

    def apply(
        self,
        upserts: list[Job],
        deletes: list[str],
        updates: list[Job] | None = None,
    ) -> bool:
        """
        Writes a batch of changes in one transaction.

        Upserts insert or replace whole rows. Updates only touch rows that
        still exist, so a job deleted by another process is not written back.
        """
        updates = updates or []
        if not upserts and not deletes and not updates:
            return True
        placeholders = ", ".join("?" * len(COLUMNS))
        assignments = ", ".join(f"{column} = ?" for column in COLUMNS[1:])
        try:
            with self._get_connection() as conn:
                if upserts:
                    conn.executemany(
                        f"INSERT OR REPLACE INTO queue_items ({', '.join(COLUMNS)}) "  # noqa: S608
                        f"VALUES ({placeholders})",
                        [job_to_row(job) for job in upserts],
                    )
                if updates:
                    conn.executemany(
                        f"UPDATE queue_items SET {assignments} WHERE id = ?",  # noqa: S608
                        [job_to_row(job)[1:] + (job.id,) for job in updates],
                    )
                if deletes:
                    conn.executemany(
                        "DELETE FROM queue_items WHERE id = ?",
                        [(job_id,) for job_id in deletes],
                    )
                conn.commit()
            return True
        except sqlite3.Error as e:
            log.error(
                f"Queue database write failed ({len(upserts)} upserts, "
                f"{len(updates)} updates, {len(deletes)} deletes): {e}"
            )
            return False

    def upsert_many(self, jobs: list[Job]) -> bool:
        return self.apply(jobs, [])

    def delete_many(self, job_ids: list[str]) -> bool:
        return self.apply([], job_ids)

    async def apply_async(
        self,
        upserts: list[Job],
        deletes: list[str],
        updates: list[Job] | None = None,
    ) -> bool:
        return await self._run_in_executor(self.apply, upserts, deletes, updates)

    # ------------------------------------------------------------------- reads

    def _load_sync(self, where: str = "", params: tuple = ()) -> list[Job]:
        query = f"SELECT * FROM queue_items {where} ORDER BY added_at ASC"  # noqa: S608
        try:
            with self._get_connection() as conn:
                rows = conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            log.error(f"Failed to read queue database: {e}")
            return []

        jobs = []
        for row in rows:
            try:
                jobs.append(row_to_job(row))
            except (ValueError, TypeError, KeyError) as e:
                log.warning(f"Skipping unreadable queue row '{row['id']}': {e}")
        return jobs

    def load_all(self, status: JobStatus | None = None) -> list[Job]:
        """Returns every stored job, optionally filtered by status."""
        if status is None:
            return self._load_sync()
        return self._load_sync("WHERE status = ?", (JobStatus(status).value,))

    def load_unfinished(self) -> list[Job]:
        """Returns the jobs a restarted process must resume."""
        terminal = tuple(status.value for status in TERMINAL_STATUSES)
        placeholders = ", ".join("?" * len(terminal))
        return self._load_sync(f"WHERE status NOT IN ({placeholders})", terminal)

    async def load_unfinished_async(self) -> list[Job]:
        return await self._run_in_executor(self.load_unfinished)

    def get_stats(self) -> dict[str, Any] | None:
        """Counts stored jobs by status."""
        try:
            with self._get_connection() as conn:
                rows = conn.execute(
                    "SELECT status, COUNT(*) FROM queue_items GROUP BY status"
                ).fetchall()
        except sqlite3.Error as e:
            log.error(f"Failed to get queue stats: {e}")
            return None
        by_status = {row[0]: row[1] for row in rows}
        return {"total": sum(by_status.values()), "by_status": by_status}

    # ------------------------------------------------------------- maintenance

    def clear(self) -> bool:
        """Deletes every stored job."""
        try:
            with self._get_connection() as conn:
                conn.execute("DELETE FROM queue_items")
                conn.commit()
            return True
        except sqlite3.Error as e:
            log.error(f"Failed to clear queue database: {e}")
            return False

    def vacuum(self) -> bool:
        """Optimizes the database file by rebuilding it."""
        try:
            with self._get_connection() as conn:
                conn.execute("VACUUM;")
                conn.execute("ANALYZE;")
                conn.commit()
            log.info("Queue database optimized successfully.")
            return True
        except sqlite3.Error as e:
            log.error(f"Database vacuum failed: {e}")
            return False
