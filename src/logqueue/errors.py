"""Exception hierarchy for logqueue."""
from __future__ import annotations


class LogQueueError(Exception):
    """Base class for errors raised by logqueue."""


class QueueClosedError(LogQueueError):
    """Raised when a job is submitted to a queue that has been stopped."""


class StatsRecordNotFound(LogQueueError):
    """Raised when updating a stats record that was never created."""

    def __init__(self, job_id: str) -> None:
        super().__init__(job_id)
        self.job_id = job_id

    def __str__(self) -> str:
        return f"no stats record for job {self.job_id!r}"


class FileSourceError(LogQueueError):
    """Raised when a log file cannot be opened or read."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"cannot read {path}: {reason}")
        self.path = path
        self.reason = reason
