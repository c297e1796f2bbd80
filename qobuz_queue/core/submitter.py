"""
Front door for producers: admission control, duplicate detection and enqueue.

Every producer (CLI, chat bot command, batch import, playlist watcher) goes
through `JobSubmitter` so requests are gated per identity before they reach
the engine. Denials are ordinary results, not exceptions.
"""

import logging
import secrets
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from qobuz_queue.admission.limiter import AdmissionLimiter
from qobuz_queue.exceptions import InvalidReferenceError
from qobuz_queue.models.config import QueueConfig
from qobuz_queue.models.job import ContentType, Job, JobPriority
from qobuz_queue.utils.references import parse_reference

from .queue_engine import QueueEngine

log = logging.getLogger(__name__)


class SubmitStatus(str, Enum):
    QUEUED = "queued"
    DUPLICATE = "duplicate"
    RATE_LIMITED = "rate_limited"
    INVALID = "invalid"


@dataclass
class SubmitResult:
    """Outcome of one submission."""

    status: SubmitStatus
    reference: str | None = None
    job: Job | None = None
    position: int = -1
    retry_after: float = 0.0
    error: str | None = None

    @property
    def accepted(self) -> bool:
        return self.status is SubmitStatus.QUEUED


class JobSubmitter:
    """Gates and enqueues download requests on behalf of producers."""

    def __init__(
        self,
        engine: QueueEngine,
        limiter: AdmissionLimiter | None = None,
        default_quality: int = 6,
        skip_duplicates: bool = True,
    ):
        self.engine = engine
        self.limiter = limiter
        self.default_quality = default_quality
        self.skip_duplicates = skip_duplicates

    @classmethod
    def from_config(
        cls,
        engine: QueueEngine,
        config: QueueConfig,
        limiter: AdmissionLimiter | None = None,
    ) -> "JobSubmitter":
        return cls(engine, limiter, default_quality=config.quality)

    def _admit(self, identity: str) -> float | None:
        """Returns None if admitted, otherwise the seconds until retry."""
        if self.limiter is None or self.limiter.is_allowed(identity):
            return None
        return self.limiter.get_reset_time(identity)

    def _enqueue(
        self,
        content_type: ContentType,
        content_id: str,
        quality: int | None,
        priority: JobPriority | str,
        title: str | None,
        metadata: dict[str, Any] | None,
        max_retries: int | None,
        reference: str | None = None,
    ) -> SubmitResult:
        add = self.engine.enqueue_unique if self.skip_duplicates else self.engine.enqueue
        job = add(
            content_type,
            content_id,
            quality if quality is not None else self.default_quality,
            priority=priority,
            max_retries=max_retries,
            title=title,
            metadata=metadata,
        )
        if job is None:
            log.debug(f"Skipping duplicate {content_type.value} {content_id}")
            return SubmitResult(
                SubmitStatus.DUPLICATE,
                reference=reference,
                error="This item is already in the queue",
            )
        return SubmitResult(
            SubmitStatus.QUEUED,
            reference=reference,
            job=job,
            position=self.engine.get_position(job.id),
        )

    def submit(
        self,
        identity: str,
        content_type: ContentType | str,
        content_id: str | int,
        quality: int | None = None,
        priority: JobPriority | str = JobPriority.NORMAL,
        title: str | None = None,
        metadata: dict[str, Any] | None = None,
        max_retries: int | None = None,
    ) -> SubmitResult:
        """
        Submits a single request on behalf of `identity`.

        Returns:
            A `SubmitResult`; `rate_limited` results carry `retry_after`.
        """
        if (retry_after := self._admit(identity)) is not None:
            return SubmitResult(
                SubmitStatus.RATE_LIMITED,
                retry_after=retry_after,
                error="Too many requests",
            )
        return self._enqueue(
            ContentType(content_type),
            str(content_id),
            quality,
            priority,
            title,
            metadata,
            max_retries,
        )

    def submit_many(
        self,
        identity: str,
        references: Iterable[str],
        default_type: ContentType | None = None,
        quality: int | None = None,
        priority: JobPriority | str = JobPriority.NORMAL,
        source: str = "batch-import",
        max_retries: int | None = None,
    ) -> list[SubmitResult]:
        """
        Imports a batch of references (URLs, `type:id` pairs or bare IDs with
        `default_type`). The whole batch counts as one admission request.
        """
        references = list(references)
        if (retry_after := self._admit(identity)) is not None:
            return [
                SubmitResult(
                    SubmitStatus.RATE_LIMITED,
                    reference=ref,
                    retry_after=retry_after,
                    error="Too many requests",
                )
                for ref in references
            ]

        batch_id = f"batch_{secrets.token_hex(6)}"
        results = []
        for ref in references:
            try:
                content_type, content_id = parse_reference(ref, default_type)
            except InvalidReferenceError as e:
                results.append(
                    SubmitResult(SubmitStatus.INVALID, reference=ref, error=str(e))
                )
                continue
            results.append(
                self._enqueue(
                    content_type,
                    content_id,
                    quality,
                    priority,
                    None,
                    {"source": source, "batch_id": batch_id},
                    max_retries,
                    reference=ref,
                )
            )

        queued = sum(1 for r in results if r.accepted)
        log.info(f"Batch {batch_id}: queued {queued} of {len(results)} references.")
        return results
