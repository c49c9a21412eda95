"""
Queue errors.

Enqueue callers only ever see StorageError and PayloadValidationError.
Everything a handler raises is recorded on the job row; JobFailedError
subclasses carry a `retryable` flag the backend consults before scheduling
another attempt.
"""
from __future__ import annotations


class QueueError(Exception):
    """Base exception for all queue operations."""


class StorageError(QueueError):
    """The job store could not be reached or the write failed."""


class PayloadValidationError(QueueError, ValueError):
    """Payload rejected at the enqueue boundary."""

    def __init__(self, queue_name: str, message: str):
        self.queue_name = queue_name
        super().__init__(f"Invalid payload for queue {queue_name}: {message}")


class JobFailedError(QueueError):
    """Raised by handlers; retried with backoff unless retryable is False."""

    retryable = True


class NonRetryableJobError(JobFailedError):
    """Fails the job on the current attempt regardless of max_attempts."""

    retryable = False


class JobTimeoutError(JobFailedError):
    """Handler exceeded the per-job execution deadline."""


def is_retryable(exc: BaseException) -> bool:
    return getattr(exc, "retryable", True)
