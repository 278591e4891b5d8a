"""Durable per-job statistics records.

One record per job id: the worker creates it (status ``processing``, zeroed
counters) before it touches the file, updates it as lines are consumed and
finalises it as ``completed`` or ``failed``. Everything else only reads.

Key schema (Redis)::

    logqueue:stats:{job_id}          StatsRecord JSON
    logqueue:user-stats:{user_id}    sorted set of job ids, scored by creation time
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from ..errors import StatsRecordNotFound

STATS_KEY_PREFIX = "logqueue:stats:"
USER_INDEX_PREFIX = "logqueue:user-stats:"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatsStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class StatsRecord(BaseModel):
    """Queryable projection of a job's run statistics."""
    id: str
    job_id: str
    file_id: str
    file_name: str
    file_size: int
    user_id: str
    status: StatsStatus = StatsStatus.PROCESSING
    total_lines: int = 0
    error_count: int = 0
    warning_count: int = 0
    keyword_matches: dict[str, int] = Field(default_factory=dict)
    ip_addresses: dict[str, int] = Field(default_factory=dict)
    processing_time: int = 0
    progress: int = 0
    attempt: int = 1
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


@runtime_checkable
class StatsStore(Protocol):
    """Contract every stats backend satisfies."""

    async def create(self, record: StatsRecord) -> None:
        """Store ``record``, replacing any record with the same job id."""
        ...

    async def update(self, job_id: str, fields: Mapping[str, Any]) -> StatsRecord:
        """Apply a partial update. Raises StatsRecordNotFound for unknown ids."""
        ...

    async def get(self, job_id: str) -> StatsRecord | None: ...

    async def list_for_user(self, user_id: str) -> list[StatsRecord]:
        """All records owned by ``user_id``, newest first."""
        ...


def _apply(record: StatsRecord, fields: Mapping[str, Any]) -> StatsRecord:
    unknown = set(fields) - set(StatsRecord.model_fields)
    if unknown:
        raise ValueError(f"unknown stats fields: {sorted(unknown)}")
    merged = record.model_dump()
    merged.update(fields)
    merged["updated_at"] = _utcnow()
    return StatsRecord.model_validate(merged)


class MemoryStatsStore:
    """Dict-backed store for tests, the CLI and single-process deployments."""

    def __init__(self) -> None:
        self._records: dict[str, StatsRecord] = {}

    async def create(self, record: StatsRecord) -> None:
        self._records[record.job_id] = record.model_copy(deep=True)

    async def update(self, job_id: str, fields: Mapping[str, Any]) -> StatsRecord:
        record = self._records.get(job_id)
        if record is None:
            raise StatsRecordNotFound(job_id)
        updated = _apply(record, fields)
        self._records[job_id] = updated
        return updated.model_copy(deep=True)

    async def get(self, job_id: str) -> StatsRecord | None:
        record = self._records.get(job_id)
        return record.model_copy(deep=True) if record is not None else None

    async def list_for_user(self, user_id: str) -> list[StatsRecord]:
        owned = [r for r in self._records.values() if r.user_id == user_id]
        owned.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in owned]

    def __len__(self) -> int:
        return len(self._records)


class RedisStatsStore:
    """Stats records as JSON strings in Redis, indexed per user.

    Writes do not degrade silently the way a cache would:
    a failed write is a processing error and must reach the worker.

    Args:
        client:  A ``redis.asyncio.Redis`` client created with
                 ``decode_responses=True``.
        prefix:  Key prefix for record keys.
    """

    def __init__(self, client: Any, prefix: str = STATS_KEY_PREFIX) -> None:
        self._client = client
        self._prefix = prefix

    def _key(self, job_id: str) -> str:
        return f"{self._prefix}{job_id}"

    async def create(self, record: StatsRecord) -> None:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.set(self._key(record.job_id), record.model_dump_json())
            pipe.zadd(
                f"{USER_INDEX_PREFIX}{record.user_id}",
                {record.job_id: record.created_at.timestamp()},
            )
            await pipe.execute()

    async def update(self, job_id: str, fields: Mapping[str, Any]) -> StatsRecord:
        record = await self.get(job_id)
        if record is None:
            raise StatsRecordNotFound(job_id)
        updated = _apply(record, fields)
        await self._client.set(self._key(job_id), updated.model_dump_json())
        return updated

    async def get(self, job_id: str) -> StatsRecord | None:
        raw = await self._client.get(self._key(job_id))
        if raw is None:
            return None
        return StatsRecord.model_validate_json(raw)

    async def list_for_user(self, user_id: str) -> list[StatsRecord]:
        job_ids = await self._client.zrevrange(f"{USER_INDEX_PREFIX}{user_id}", 0, -1)
        if not job_ids:
            return []
        raws = await self._client.mget([self._key(job_id) for job_id in job_ids])
        return [StatsRecord.model_validate_json(raw) for raw in raws if raw is not None]
