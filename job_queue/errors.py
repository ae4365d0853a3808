"""Error taxonomy for the job queue."""
from __future__ import annotations


class JobQueueError(Exception):
    """Base exception for all job queue operations."""


class ValidationError(JobQueueError):
    """Malformed job request. Raised before any job exists."""


class StorageError(JobQueueError):
    """Persistence fault. The dispatcher retries on the next poll."""


class HandlerError(JobQueueError):
    """Raised by a job handler. Non-retryable errors fail the job immediately."""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class NotFoundError(JobQueueError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class JobStateError(JobQueueError):
    """The requested transition is not legal from the job's current status."""

    def __init__(self, job_id: str, status: str, action: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Cannot {action} job {job_id} in status {status}")


class AlreadyTerminalError(JobStateError):
    def __init__(self, job_id: str, status: str, action: str = "modify"):
        super().__init__(job_id, status, action)
