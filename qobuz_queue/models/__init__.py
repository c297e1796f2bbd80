"""
Data Models Layer.

This package contains the job record, the Pydantic configuration model,
and the statistics structures used throughout the application.
"""

from .config import QueueConfig
from .job import ContentType, Job, JobPriority, JobStatus
from .stats import QueueStats

__all__ = ["ContentType", "Job", "JobPriority", "JobStatus", "QueueConfig", "QueueStats"]
