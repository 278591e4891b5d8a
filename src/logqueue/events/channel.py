"""Best-effort progress and completion events, addressed to the job owner.

Events are a convenience signal for live dashboards; the stats record is the
source of truth. Publishing therefore never raises into the pipeline: sink
errors are logged and dropped, and nothing is retried.

Event shapes::

    {"type": "job-progress",  "jobId": ..., "progress": 42, "stats": {...}}
    {"type": "job-completed", "jobId": ..., "fileId": ..., "fileName": ..., "stats": {...}}
    {"type": "job-failed",    "jobId": ..., "fileId": ..., "fileName": ..., "error": "...",
                              "attempt": 2, "final": false}
"""
from __future__ import annotations

import logging
from typing import Any, Literal

from ..jobs.models import Job
from .sinks import EventSink

logger = logging.getLogger(__name__)

EventKind = Literal["progress", "completed", "failed"]
EVENT_KINDS: tuple[str, ...] = ("progress", "completed", "failed")


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


class EventChannel:
    """Publish job events to the owning user's topic."""

    def __init__(self, sink: EventSink) -> None:
        self._sink = sink

    async def publish(self, job: Job, kind: EventKind, payload: dict[str, Any]) -> bool:
        """Send one event. Returns False if the sink failed."""
        if kind not in EVENT_KINDS:
            raise ValueError(f"unknown event kind: {kind!r}")
        event = {"type": f"job-{kind}", "jobId": job.id, **payload}
        try:
            await self._sink.publish(user_topic(job.payload.user_id), event)
        except Exception as exc:
            logger.warning("Failed to publish %s event for job %s: %s", kind, job.id, exc)
            return False
        return True
