"""
Reference fetch executor: streams a job's asset URL to disk over HTTP.

Catalog-backed executors (resolving a content ID to a signed stream URL,
tagging the result) plug into the driver through the same interface; this
one only needs `job.metadata["url"]`.
"""

import asyncio
import logging
import os
from pathlib import Path

import aiofiles
import aiohttp
from pathvalidate import sanitize_filename

from qobuz_queue.core.collaborators import FetchOutcome, ProgressReporter
from qobuz_queue.exceptions import FetchError, NotStreamableError
from qobuz_queue.models.config import get_quality_info
from qobuz_queue.models.job import Job, JobStatus

log = logging.getLogger(__name__)


class HttpFetchExecutor:
    """Downloads assets with a shared aiohttp session."""

    CHUNK_SIZE = 262144  # 256 KB

    def __init__(self, output_dir: Path, max_connections: int = 8):
        self.output_dir = output_dir
        self.max_connections = max_connections
        self._session: aiohttp.ClientSession | None = None
        self._session_lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._session_lock:
            if self._session and not self._session.closed:
                return self._session
            connector = aiohttp.TCPConnector(
                limit=self.max_connections * 2,
                limit_per_host=self.max_connections,
                ttl_dns_cache=600,
                keepalive_timeout=30,
                enable_cleanup_closed=True,
            )
            timeout = aiohttp.ClientTimeout(total=None, sock_connect=15, sock_read=90)
            self._session = aiohttp.ClientSession(connector=connector, timeout=timeout)
            log.debug(f"Created fetch session with limit_per_host={self.max_connections}")
            return self._session

    async def close(self) -> None:
        """Closes the shared session."""
        async with self._session_lock:
            if self._session and not self._session.closed:
                await self._session.close()
                log.debug("Fetch session closed.")
            self._session = None

    def destination_for(self, job: Job) -> Path:
        """The file a job's asset is written to."""
        stem = job.display_name if job.title else f"{job.content_type.value}_{job.content_id}"
        ext = get_quality_info(job.quality)["ext"]
        return self.output_dir / f"{sanitize_filename(stem)}.{ext}"

    async def run(self, job: Job, report: ProgressReporter) -> FetchOutcome:
        url = job.metadata.get("url")
        if not url:
            raise NotStreamableError(f"No asset URL known for {job.display_name}")

        destination = self.destination_for(job)
        if await asyncio.to_thread(destination.is_file):
            return FetchOutcome(skipped=True, file_path=str(destination))

        await asyncio.to_thread(self.output_dir.mkdir, parents=True, exist_ok=True)
        partial_path = destination.with_name(destination.name + ".part")
        try:
            await self._download(url, partial_path, report)
            report(100, JobStatus.PROCESSING)
            await asyncio.to_thread(os.replace, partial_path, destination)
        except BaseException:
            await asyncio.to_thread(partial_path.unlink, missing_ok=True)
            raise

        return FetchOutcome(file_path=str(destination), quality=job.quality)

    async def _download(
        self, url: str, destination: Path, report: ProgressReporter
    ) -> None:
        session = await self._get_session()
        async with session.get(url, allow_redirects=True) as response:
            if response.status >= 400:
                raise FetchError(
                    f"Asset request failed with HTTP {response.status}",
                    status_code=response.status,
                )
            total = int(response.headers.get("Content-Length", 0) or 0)
            received = 0
            async with aiofiles.open(destination, "wb") as f:
                async for chunk in response.content.iter_chunked(self.CHUNK_SIZE):
                    await f.write(chunk)
                    received += len(chunk)
                    if total:
                        report(received * 100 / total)
