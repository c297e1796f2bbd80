"""
Admission Control Layer.

This package gates how fast any single requester may submit new work,
independently of the queue's concurrency budget.
"""

from .limiter import AdmissionLimiter, LimiterConfig, LimiterEntry

__all__ = ["AdmissionLimiter", "LimiterConfig", "LimiterEntry"]
