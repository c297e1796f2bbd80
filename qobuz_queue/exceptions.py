"""
Defines custom exceptions for the application to allow for more specific error handling.

The queue engine and the admission limiter never raise for soft conflicts
(unknown ids, jobs in the wrong state, denied admissions); these exceptions
cover configuration problems and failures raised by fetch collaborators.
"""


class QobuzQueueError(Exception):
    """Base exception for all application-specific errors."""


class ConfigurationError(QobuzQueueError):
    """Raised for issues related to configuration loading or validation."""


class InvalidReferenceError(QobuzQueueError):
    """Raised when a content reference cannot be parsed into a type and ID."""


class FetchError(QobuzQueueError):
    """
    Raised by fetch executors when an asset cannot be retrieved.

    Carries the HTTP status code when one is known so the driver loop can
    categorize the failure.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NotStreamableError(FetchError):
    """
    Raised when attempting to download an item that is not available for streaming.
    """

    def __init__(self, message: str):
        super().__init__(message, status_code=404)
