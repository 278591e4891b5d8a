"""Job data model for queued log-file processing."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

_MIB = 1024 * 1024


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def priority_for_size(file_size: int) -> int:
    """Priority tier for a file: 1 under 1 MiB, 2 under 10 MiB, 3 otherwise.

    Lower tiers are served first.
    """
    if file_size < _MIB:
        return 1
    if file_size < 10 * _MIB:
        return 2
    return 3


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class JobPayload(BaseModel):
    """What the uploader hands over: where the file is and who owns it."""
    file_path: str
    file_name: str
    file_size: int = Field(ge=0)
    user_id: str


class Job(BaseModel):
    """Tracks the lifecycle of one queued file across all of its attempts."""
    id: str
    payload: JobPayload
    priority: int
    max_attempts: int = Field(ge=1)
    attempts_made: int = 0
    state: JobState = JobState.WAITING
    progress: int = 0
    sequence: int = 0
    failed_reason: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def attempt(self) -> int:
        """1-based number of the attempt currently running (or about to run)."""
        return self.attempts_made + 1

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts

    @property
    def exhausted(self) -> bool:
        return self.state is JobState.FAILED and self.attempts_made >= self.max_attempts


class JobHandle(BaseModel):
    """Read-only view of a job returned to submitters."""
    id: str
    priority: int
    state: JobState
    attempts_made: int
    max_attempts: int
    progress: int = 0
    failed_reason: Optional[str] = None

    @property
    def exhausted(self) -> bool:
        return self.state is JobState.FAILED and self.attempts_made >= self.max_attempts

    @classmethod
    def of(cls, job: Job) -> "JobHandle":
        return cls(
            id=job.id,
            priority=job.priority,
            state=job.state,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            progress=job.progress,
            failed_reason=job.failed_reason,
        )


class QueueStatus(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0
