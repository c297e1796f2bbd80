"""
Core scheduling engine.

This package contains the primary logic. The `QueueEngine` is the single
authority over job records, the `JobSubmitter` gates producers in front of
it, and the `QueueDriver` claims eligible jobs and reports their outcomes.
"""
