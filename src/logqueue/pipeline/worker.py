"""Per-attempt processing of one uploaded log file.

Pipeline for one attempt::

    create stats record (processing, zeroed)
      -> stream lines -> parse_line -> StatsAccumulator
           every N lines: progress -> job, stats record, event channel
      -> completed: final record, delete file, "completed" event
      -> error:     record marked failed, "failed" event, error re-raised

The queue decides whether a re-raised error is retried.
"""
from __future__ import annotations

import logging
from contextlib import aclosing
from typing import Any, Awaitable, Callable, Iterable

from ..aggregators.stats import RunStats, StatsAccumulator
from ..events.channel import EventChannel
from ..jobs.models import Job
from ..parsers.bracket import parse_line
from ..store.stats_store import StatsRecord, StatsStatus, StatsStore
from .source import LineSource, open_line_stream, remove_file

logger = logging.getLogger(__name__)

ProgressHook = Callable[[str, int], Awaitable[None]]


def estimate_progress(lines: int, file_size: int, bytes_per_line: int = 100) -> int:
    """Coarse percentage from lines read vs. lines expected for ``file_size``.

    Capped at 99: only completion reports 100.
    """
    expected_lines = max(1.0, file_size / bytes_per_line)
    return max(0, min(99, int(lines * 100 // expected_lines)))


def _counters(stats: RunStats) -> dict[str, Any]:
    return {
        "total_lines": stats.total_lines,
        "error_count": stats.error_count,
        "warning_count": stats.warning_count,
        "keyword_matches": dict(stats.keyword_matches),
        "ip_addresses": dict(stats.ip_addresses),
    }


class LogFileProcessor:
    """Queue handler: run one attempt of a log-processing job.

    Args:
        stats_store:          Where the job's stats record lives.
        events:               Channel for progress/terminal events.
        keywords:             Keywords matched against entry levels.
        progress_every:       Lines between progress reports.
        bytes_per_line:       Average line size used for the progress estimate.
        delete_failed_files:  Also delete the source file after the final
                              failed attempt (it is always kept for retries).
        source:               Opens a path as an async line stream.
        on_progress:          Optional ``(job_id, percent)`` hook, typically
                              ``JobQueue.update_progress``.
    """

    def __init__(
        self,
        stats_store: StatsStore,
        events: EventChannel,
        keywords: Iterable[str],
        *,
        progress_every: int = 1000,
        bytes_per_line: int = 100,
        delete_failed_files: bool = False,
        source: LineSource = open_line_stream,
        on_progress: ProgressHook | None = None,
    ) -> None:
        if progress_every < 1:
            raise ValueError("progress_every must be at least 1")
        self._store = stats_store
        self._events = events
        self._keywords = tuple(keywords)
        self._progress_every = progress_every
        self._bytes_per_line = bytes_per_line
        self._delete_failed_files = delete_failed_files
        self._source = source
        self.on_progress = on_progress

    async def __call__(self, job: Job) -> dict[str, Any]:
        return await self.process(job)

    async def process(self, job: Job) -> dict[str, Any]:
        payload = job.payload
        logger.info(
            "Processing job %s: %s (%d bytes, user %s, attempt %d/%d)",
            job.id, payload.file_name, payload.file_size, payload.user_id,
            job.attempt, job.max_attempts,
        )
        accumulator = StatsAccumulator(self._keywords)
        record_created = False
        try:
            # Created before the file is opened so a failed attempt still has a record.
            await self._store.create(
                StatsRecord(
                    id=job.id,
                    job_id=job.id,
                    file_id=job.id,
                    file_name=payload.file_name,
                    file_size=payload.file_size,
                    user_id=payload.user_id,
                    status=StatsStatus.PROCESSING,
                    keyword_matches=dict.fromkeys(accumulator.keywords, 0),
                    attempt=job.attempt,
                )
            )
            record_created = True

            async with aclosing(self._source(payload.file_path)) as lines:
                async for line in lines:
                    accumulator.observe(parse_line(line))
                    if accumulator.total_lines % self._progress_every == 0:
                        await self._report_progress(job, accumulator)

            final = accumulator.snapshot()
            await self._store.update(
                job.id,
                {
                    **_counters(final),
                    "status": StatsStatus.COMPLETED,
                    "processing_time": final.processing_time_ms,
                    "progress": 100,
                    "error": None,
                },
            )
        except Exception as exc:
            await self._fail(job, accumulator, exc, record_created)
            raise

        logger.info(
            "Job %s completed in %dms: %d lines, %d errors, %d warnings",
            job.id, final.processing_time_ms, final.total_lines,
            final.error_count, final.warning_count,
        )
        try:
            if not remove_file(payload.file_path):
                logger.warning("Source file %s was already gone", payload.file_path)
        except OSError as exc:
            logger.warning("Could not delete processed file %s: %s", payload.file_path, exc)

        await self._events.publish(
            job,
            "completed",
            {"fileId": job.id, "fileName": payload.file_name, "stats": final.to_dict()},
        )
        return {"statsId": job.id, **final.to_dict()}

    async def _report_progress(self, job: Job, accumulator: StatsAccumulator) -> None:
        snapshot = accumulator.snapshot()
        progress = estimate_progress(snapshot.total_lines, job.payload.file_size, self._bytes_per_line)
        job.progress = progress
        logger.debug("Job %s progress: %d%% (%d lines)", job.id, progress, snapshot.total_lines)
        if self.on_progress is not None:
            await self.on_progress(job.id, progress)
        await self._store.update(job.id, {**_counters(snapshot), "progress": progress})
        await self._events.publish(job, "progress", {"progress": progress, "stats": snapshot.to_dict()})

    async def _fail(
        self, job: Job, accumulator: StatsAccumulator, exc: Exception, record_created: bool
    ) -> None:
        message = str(exc) or type(exc).__name__
        final = job.is_final_attempt
        logger.error(
            "Job %s attempt %d/%d failed: %s",
            job.id, job.attempt, job.max_attempts, message,
        )
        if record_created:
            try:
                await self._store.update(
                    job.id,
                    {
                        "status": StatsStatus.FAILED,
                        "error": message,
                        "processing_time": accumulator.elapsed_ms(),
                    },
                )
            except Exception as store_exc:
                # The original error is what the queue needs to see.
                logger.warning("Could not mark stats record %s as failed: %s", job.id, store_exc)

        if final:
            self._apply_failed_file_policy(job)

        await self._events.publish(
            job,
            "failed",
            {
                "fileId": job.id,
                "fileName": job.payload.file_name,
                "error": message,
                "attempt": job.attempt,
                "final": final,
            },
        )

    def _apply_failed_file_policy(self, job: Job) -> None:
        path = job.payload.file_path
        if self._delete_failed_files:
            try:
                if remove_file(path):
                    logger.info("Deleted %s after final failed attempt", path)
            except OSError as exc:
                logger.warning("Could not delete %s after final failed attempt: %s", path, exc)
            return
        logger.warning("Job %s exhausted its attempts; keeping %s for inspection", job.id, path)
