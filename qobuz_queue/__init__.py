"""
qobuz-queue: a concurrent download job queue with admission control.
"""

__version__ = "0.1.0"
