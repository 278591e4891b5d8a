"""Durable job storage backing the queue.

The queue writes every job state change through a JobStore and reloads the
store on start, so waiting jobs (and jobs that were active when the process
died) survive a restart.

Key schema (Redis)::

    logqueue:jobs    hash of job id -> Job JSON
"""
from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

from .models import Job

logger = logging.getLogger(__name__)

JOBS_KEY = "logqueue:jobs"


@runtime_checkable
class JobStore(Protocol):
    async def save(self, job: Job) -> None: ...

    async def delete(self, job_id: str) -> None: ...

    async def load_all(self) -> list[Job]: ...


class MemoryJobStore:
    """Process-local job store. Survives queue restarts, not process restarts."""

    def __init__(self) -> None:
        self._jobs: dict[str, str] = {}

    async def save(self, job: Job) -> None:
        self._jobs[job.id] = job.model_dump_json()

    async def delete(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    async def load_all(self) -> list[Job]:
        return [Job.model_validate_json(raw) for raw in self._jobs.values()]

    def __len__(self) -> int:
        return len(self._jobs)


class RedisJobStore:
    """Job store on a Redis hash.

    Args:
        client:  A ``redis.asyncio.Redis`` client created with
                 ``decode_responses=True``.
        key:     Hash key holding the jobs.
    """

    def __init__(self, client: Any, key: str = JOBS_KEY) -> None:
        self._client = client
        self._key = key

    async def save(self, job: Job) -> None:
        await self._client.hset(self._key, job.id, job.model_dump_json())

    async def delete(self, job_id: str) -> None:
        await self._client.hdel(self._key, job_id)

    async def load_all(self) -> list[Job]:
        raw_jobs = await self._client.hgetall(self._key)
        jobs: list[Job] = []
        for job_id, raw in raw_jobs.items():
            try:
                jobs.append(Job.model_validate_json(raw))
            except ValueError as exc:
                logger.warning("Skipping unreadable persisted job %r: %s", job_id, exc)
        return jobs
