"""Service wiring: construct, start and stop the processing core explicitly.

No connection lives in module globals. Whoever hosts the core (an API
process, the CLI, a test) builds one LogQueueService and owns its lifecycle::

    service = LogQueueService.from_settings(load_settings())
    async with service:
        handle = await service.submit("/uploads/abc.log", "app.log", 2048, "user-1")
        ...
"""
from __future__ import annotations

import logging
import uuid
from typing import Any

from .config import Settings
from .events.channel import EventChannel
from .events.sinks import EventSink, LoggingSink, RedisPubSubSink
from .jobs.models import JobHandle, JobPayload, QueueStatus
from .jobs.persistence import JobStore, MemoryJobStore, RedisJobStore
from .jobs.queue import JobQueue
from .pipeline.worker import LogFileProcessor
from .store.stats_store import MemoryStatsStore, RedisStatsStore, StatsRecord, StatsStore

logger = logging.getLogger(__name__)


class LogQueueService:
    """The job queue, its worker pipeline and their collaborators as one unit.

    Args:
        settings:     Immutable process-wide configuration.
        stats_store:  Durable stats record store.
        sink:         Real-time event transport.
        job_store:    Durable job state for the queue.
        redis:        Client to close on shutdown, when the service owns one.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        stats_store: StatsStore,
        sink: EventSink,
        job_store: JobStore | None = None,
        redis: Any = None,
    ) -> None:
        self.settings = settings
        self.stats_store = stats_store
        self.events = EventChannel(sink)
        self._redis = redis
        self.processor = LogFileProcessor(
            stats_store,
            self.events,
            settings.keywords,
            progress_every=settings.progress_every,
            bytes_per_line=settings.bytes_per_line,
            delete_failed_files=settings.delete_failed_files,
        )
        self.queue = JobQueue(
            self.processor,
            concurrency=settings.max_concurrent_jobs,
            max_attempts=settings.max_retries,
            store=job_store if job_store is not None else MemoryJobStore(),
            retry_delay=settings.retry_delay,
            keep_completed=settings.keep_completed,
            keep_failed=settings.keep_failed,
        )
        self.processor.on_progress = self.queue.update_progress

    @classmethod
    def from_settings(cls, settings: Settings, sink: EventSink | None = None) -> "LogQueueService":
        """Build the service on the configured backend.

        ``memory`` keeps everything in process. ``redis`` persists jobs and
        stats records in Redis and publishes events on Redis pub/sub.
        """
        if settings.backend == "redis":
            import redis.asyncio as aioredis

            client = aioredis.Redis.from_url(settings.redis_url, decode_responses=True)
            logger.info("Using redis backend at %s", settings.redis_url)
            return cls(
                settings,
                stats_store=RedisStatsStore(client),
                sink=sink if sink is not None else RedisPubSubSink(client),
                job_store=RedisJobStore(client),
                redis=client,
            )
        return cls(
            settings,
            stats_store=MemoryStatsStore(),
            sink=sink if sink is not None else LoggingSink(),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._redis is not None:
            await self._redis.ping()
        await self.queue.start()
        logger.info(
            "logqueue ready: concurrency=%d max_attempts=%d keywords=%s",
            self.settings.max_concurrent_jobs, self.settings.max_retries,
            ",".join(self.settings.keywords),
        )

    async def stop(self) -> None:
        await self.queue.stop()
        if self._redis is not None:
            await self._redis.aclose()

    async def __aenter__(self) -> "LogQueueService":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def submit(
        self,
        file_path: str,
        file_name: str,
        file_size: int,
        user_id: str,
        file_id: str | None = None,
    ) -> JobHandle:
        """Queue an uploaded file. ``file_id`` doubles as job id and idempotency key."""
        payload = JobPayload(
            file_path=file_path, file_name=file_name, file_size=file_size, user_id=user_id
        )
        return await self.queue.enqueue(payload, job_id=file_id or str(uuid.uuid4()))

    def status(self) -> QueueStatus:
        return self.queue.status()

    async def get_stats(self, job_id: str) -> StatsRecord | None:
        """Stats record for ``job_id``; None when the job has not started (or never will)."""
        return await self.stats_store.get(job_id)

    async def list_stats(self, user_id: str) -> list[StatsRecord]:
        return await self.stats_store.list_for_user(user_id)

    async def drain(self) -> None:
        await self.queue.drain()
