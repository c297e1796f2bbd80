"""
Media Fetching Layer.

This package holds fetch executors the driver loop hands jobs to.
"""

from .fetcher import HttpFetchExecutor

__all__ = ["HttpFetchExecutor"]
