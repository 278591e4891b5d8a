"""Priority job queue with bounded concurrency, retries and durable state.

Scheduling rules:
  1. Lower priority tier first (tiers come from the declared file size).
  2. Within a tier, admission order. A retried job is re-admitted at the back
     of its tier.
  3. At most ``concurrency`` jobs run at once, and a job id is never held by
     more than one worker.

A handler exception fails the attempt. The job goes back to waiting until it
has used ``max_attempts`` attempts, then it is terminal ``failed``.

Usage::

    async def handler(job: Job) -> dict:
        ...

    queue = JobQueue(handler, concurrency=4, max_attempts=3)
    await queue.start()
    handle = await queue.enqueue(payload, job_id=file_id)
    await queue.drain()
    print(queue.status())
    await queue.stop()
"""
from __future__ import annotations

import asyncio
import heapq
import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from ..errors import QueueClosedError
from .models import Job, JobHandle, JobPayload, JobState, QueueStatus, priority_for_size
from .persistence import JobStore, MemoryJobStore

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[dict[str, Any] | None]]


class JobQueue:
    """In-process asyncio job queue for log-file processing.

    Args:
        handler:         Coroutine function run once per attempt. Raising
                         fails the attempt; the return value is stored as the
                         job result.
        concurrency:     Number of worker tasks.
        max_attempts:    Attempt ceiling per job, first attempt included.
        store:           Where job state is persisted (default: in memory).
        retry_delay:     Seconds a failed job waits before it is re-queued.
        keep_completed:  Completed jobs retained for status queries.
        keep_failed:     Failed jobs retained for status queries.
    """

    def __init__(
        self,
        handler: JobHandler,
        *,
        concurrency: int = 4,
        max_attempts: int = 3,
        store: JobStore | None = None,
        retry_delay: float = 0.0,
        keep_completed: int = 100,
        keep_failed: int = 100,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._handler = handler
        self._concurrency = concurrency
        self._max_attempts = max_attempts
        self._store: JobStore = store if store is not None else MemoryJobStore()
        self._retry_delay = retry_delay
        self._keep_completed = keep_completed
        self._keep_failed = keep_failed

        self._jobs: dict[str, Job] = {}
        self._heap: list[tuple[int, int, str]] = []
        self._active: set[str] = set()
        self._completed: deque[str] = deque()
        self._failed: deque[str] = deque()
        self._delayed: dict[str, asyncio.TimerHandle] = {}
        self._sequence = 0

        self._ready = asyncio.Event()
        self._settled = asyncio.Event()
        self._settled.set()
        self._workers: list[asyncio.Task[None]] = []
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Restore persisted jobs and spawn the worker tasks."""
        if self._workers:
            return
        self._closed = False
        await self._restore()
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"logqueue-worker-{i}")
            for i in range(self._concurrency)
        ]
        logger.info("Job queue started with %d worker(s)", self._concurrency)

    async def stop(self) -> None:
        """Stop accepting jobs and cancel the workers.

        Jobs interrupted mid-attempt stay ``active`` in the store and are
        re-queued by the next :meth:`start`.
        """
        self._closed = True
        for timer in self._delayed.values():
            timer.cancel()
        self._delayed.clear()
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        logger.info("Job queue stopped")

    async def __aenter__(self) -> "JobQueue":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def enqueue(self, payload: JobPayload, job_id: str | None = None) -> JobHandle:
        """Admit a job. The job id is an idempotency key.

        A job id that is already waiting or active returns the existing
        handle and schedules nothing. A retained finished job with the same
        id is replaced by a fresh admission.

        The job is saved to the store before it is scheduled; a failed save
        propagates and the job is not admitted.
        """
        if self._closed:
            raise QueueClosedError("job queue is stopped")
        job_id = job_id or str(uuid.uuid4())

        existing = self._jobs.get(job_id)
        if existing is not None:
            if existing.state in (JobState.WAITING, JobState.ACTIVE):
                logger.info("Job %s is already %s, admission ignored", job_id, existing.state.value)
                return JobHandle.of(existing)
            self._forget(existing)

        job = Job(
            id=job_id,
            payload=payload,
            priority=priority_for_size(payload.file_size),
            max_attempts=self._max_attempts,
            sequence=self._next_sequence(),
        )
        # Registered before the save so a concurrent duplicate sees it; only
        # scheduled once the save succeeded.
        self._jobs[job_id] = job
        try:
            await self._store.save(job)
        except Exception:
            self._jobs.pop(job_id, None)
            self._update_settled()
            logger.error("Could not persist job %s, admission refused", job_id)
            raise
        self._push(job)
        logger.info(
            "Queued job %s for %s (%d bytes, priority %d)",
            job_id, payload.file_name, payload.file_size, job.priority,
        )
        return JobHandle.of(job)

    def status(self) -> QueueStatus:
        """Counts per state, taken in one pass so they are mutually consistent."""
        counts = {state: 0 for state in JobState}
        for job in self._jobs.values():
            counts[job.state] += 1
        return QueueStatus(
            waiting=counts[JobState.WAITING],
            active=counts[JobState.ACTIVE],
            completed=counts[JobState.COMPLETED],
            failed=counts[JobState.FAILED],
            total=sum(counts.values()),
        )

    def get(self, job_id: str) -> JobHandle | None:
        job = self._jobs.get(job_id)
        return JobHandle.of(job) if job is not None else None

    def waiting_jobs(self) -> list[dict[str, Any]]:
        """Waiting jobs in the order they will be served."""
        waiting = sorted(
            (job for job in self._jobs.values() if job.state is JobState.WAITING),
            key=lambda job: (job.priority, job.sequence),
        )
        return [
            {
                "id": job.id,
                "file_name": job.payload.file_name,
                "priority": job.priority,
                "attempts_made": job.attempts_made,
                "created_at": job.created_at,
            }
            for job in waiting
        ]

    async def update_progress(self, job_id: str, progress: int) -> None:
        job = self._jobs.get(job_id)
        if job is None or job.state is not JobState.ACTIVE:
            return
        job.progress = max(0, min(100, progress))
        await self._persist(job)

    async def drain(self) -> None:
        """Wait until no job is waiting, delayed or active."""
        while not self._is_settled():
            self._settled.clear()
            await self._settled.wait()

    # ------------------------------------------------------------------
    # Scheduling internals
    # ------------------------------------------------------------------

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def _push(self, job: Job) -> None:
        heapq.heappush(self._heap, (job.priority, job.sequence, job.id))
        self._ready.set()
        self._update_settled()

    def _claim(self) -> Job | None:
        while self._heap:
            _, sequence, job_id = heapq.heappop(self._heap)
            job = self._jobs.get(job_id)
            # Stale heap entries: replaced, re-queued or no longer waiting.
            if job is None or job.state is not JobState.WAITING or job.sequence != sequence:
                continue
            job.state = JobState.ACTIVE
            job.started_at = datetime.now(timezone.utc)
            self._active.add(job_id)
            return job
        return None

    async def _worker_loop(self, index: int) -> None:
        while True:
            job = self._claim()
            if job is None:
                self._ready.clear()
                await self._ready.wait()
                continue
            logger.info(
                "Worker %d processing job %s (attempt %d/%d)",
                index, job.id, job.attempt, job.max_attempts,
            )
            await self._run(job)

    async def _run(self, job: Job) -> None:
        await self._persist(job)
        try:
            result = await self._handler(job)
        except asyncio.CancelledError:
            self._active.discard(job.id)
            raise
        except Exception as exc:
            self._active.discard(job.id)
            await self._attempt_failed(job, exc)
        else:
            self._active.discard(job.id)
            job.attempts_made += 1
            job.state = JobState.COMPLETED
            job.progress = 100
            job.result = result
            job.failed_reason = None
            job.finished_at = datetime.now(timezone.utc)
            logger.info("Job %s completed", job.id)
            await self._retain(job, self._completed, self._keep_completed)
        finally:
            self._update_settled()

    async def _attempt_failed(self, job: Job, exc: Exception) -> None:
        job.attempts_made += 1
        job.failed_reason = f"{type(exc).__name__}: {exc}"
        if job.attempts_made < job.max_attempts:
            job.state = JobState.WAITING
            job.progress = 0
            job.sequence = self._next_sequence()
            logger.warning(
                "Job %s failed attempt %d/%d, retrying: %s",
                job.id, job.attempts_made, job.max_attempts, job.failed_reason,
            )
            await self._persist(job)
            self._schedule_retry(job)
            return

        job.state = JobState.FAILED
        job.finished_at = datetime.now(timezone.utc)
        logger.error(
            "Job %s failed permanently after %d attempt(s): %s",
            job.id, job.attempts_made, job.failed_reason,
        )
        await self._retain(job, self._failed, self._keep_failed)

    def _schedule_retry(self, job: Job) -> None:
        if self._retry_delay <= 0:
            self._push(job)
            return
        loop = asyncio.get_running_loop()
        self._delayed[job.id] = loop.call_later(self._retry_delay, self._release_delayed, job.id)

    def _release_delayed(self, job_id: str) -> None:
        self._delayed.pop(job_id, None)
        job = self._jobs.get(job_id)
        if job is not None and job.state is JobState.WAITING:
            self._push(job)
        else:
            self._update_settled()

    async def _retain(self, job: Job, bucket: deque[str], keep: int) -> None:
        bucket.append(job.id)
        await self._persist(job)
        while len(bucket) > keep:
            expired = self._jobs.pop(bucket.popleft(), None)
            if expired is not None:
                await self._unpersist(expired.id)

    def _forget(self, job: Job) -> None:
        self._jobs.pop(job.id, None)
        for bucket in (self._completed, self._failed):
            try:
                bucket.remove(job.id)
            except ValueError:
                pass

    def _is_settled(self) -> bool:
        return not self._active and not self._delayed and not any(
            job.state is JobState.WAITING for job in self._jobs.values()
        )

    def _update_settled(self) -> None:
        if self._is_settled():
            self._settled.set()
        else:
            self._settled.clear()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _persist(self, job: Job) -> None:
        try:
            await self._store.save(job)
        except Exception as exc:
            logger.warning("Could not persist job %s: %s", job.id, exc)

    async def _unpersist(self, job_id: str) -> None:
        try:
            await self._store.delete(job_id)
        except Exception as exc:
            logger.warning("Could not remove job %s from the store: %s", job_id, exc)

    async def _restore(self) -> None:
        """Rebuild in-memory state from the store.

        Waiting jobs and jobs caught mid-attempt by a shutdown go back to
        waiting with their attempt counts intact.
        """
        self._jobs.clear()
        self._heap.clear()
        self._active.clear()
        self._completed.clear()
        self._failed.clear()

        jobs = await self._store.load_all()
        self._sequence = max((job.sequence for job in jobs), default=self._sequence)
        finished = []
        requeued = 0
        for job in sorted(jobs, key=lambda j: j.sequence):
            self._jobs[job.id] = job
            if job.state in (JobState.WAITING, JobState.ACTIVE):
                if job.state is JobState.ACTIVE:
                    logger.warning("Job %s was interrupted mid-attempt, re-queueing", job.id)
                job.state = JobState.WAITING
                job.progress = 0
                self._push(job)
                requeued += 1
            else:
                finished.append(job)

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        for job in sorted(finished, key=lambda j: j.finished_at or epoch):
            bucket = self._completed if job.state is JobState.COMPLETED else self._failed
            bucket.append(job.id)
        if jobs:
            logger.info("Restored %d job(s), %d re-queued", len(jobs), requeued)
        self._update_settled()
